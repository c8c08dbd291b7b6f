"""Kernel registry mapping IR op kinds to shape inference and torch kernels."""

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import torch

from ..errors import GraphShapeError
from ..ir import Op, TensorTy

InferFn = Callable[[Op, List[TensorTy]], List[TensorTy]]
RunFn = Callable[[Op, List[torch.Tensor]], List[torch.Tensor]]


@dataclass
class KernelSpec:
    """Specification for one op kind."""
    name: str  # op kind, e.g. 'matmul'
    infer: InferFn
    run: RunFn
    min_inputs: int = 1
    max_inputs: Optional[int] = None  # None means variadic

    def accepts_arity(self, count: int) -> bool:
        """Check if the kernel accepts the given number of inputs."""
        if count < self.min_inputs:
            return False
        return self.max_inputs is None or count <= self.max_inputs


class KernelRegistry:
    """
    Registry for op kernels.
    Used by the IR for type inference and by the reference engine for execution.
    """

    def __init__(self):
        """Initialize kernel registry."""
        self.kernels: Dict[str, KernelSpec] = {}
        self._register_default_kernels()

    def _register_default_kernels(self):
        """Register default kernel implementations."""
        from .ops import default_kernels

        for kernel in default_kernels():
            self.register(kernel)

    def register(self, kernel: KernelSpec):
        """
        Register a kernel implementation.

        Args:
            kernel: Kernel specification to register; replaces any previous
                kernel for the same op kind
        """
        self.kernels[kernel.name] = kernel

    def find_kernel(self, kind: str) -> Optional[KernelSpec]:
        """Find the kernel for an op kind."""
        return self.kernels.get(kind)

    def _lookup(self, op: Op, arity: int) -> KernelSpec:
        kernel = self.find_kernel(op.kind)
        if kernel is None:
            raise GraphShapeError(f"No kernel registered for op kind {op.kind!r} ({op.id})")
        if not kernel.accepts_arity(arity):
            raise GraphShapeError(f"{op.kind} {op.id}: unexpected number of inputs {arity}")
        return kernel

    def infer(self, op: Op, input_types: List[TensorTy]) -> List[TensorTy]:
        """Infer output types of an op from its input types."""
        return self._lookup(op, len(input_types)).infer(op, input_types)

    def run(self, op: Op, inputs: List[torch.Tensor]) -> List[torch.Tensor]:
        """Execute an op on concrete tensors."""
        return self._lookup(op, len(inputs)).run(op, inputs)

    def list_kernels(self) -> List[str]:
        """List all registered op kinds."""
        return sorted(self.kernels)


# Global registry instance
_global_registry: Optional[KernelRegistry] = None


def get_registry() -> KernelRegistry:
    """Get the global kernel registry."""
    global _global_registry
    if _global_registry is None:
        _global_registry = KernelRegistry()
    return _global_registry


def register_kernel(kernel: KernelSpec):
    """Register a kernel in the global registry."""
    get_registry().register(kernel)
