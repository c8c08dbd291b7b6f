"""
Op kernels for the staticllm IR: shape inference plus torch implementations.
"""

from .registry import KernelRegistry, KernelSpec, get_registry, register_kernel

__all__ = [
    'KernelRegistry',
    'KernelSpec',
    'get_registry',
    'register_kernel',
]
