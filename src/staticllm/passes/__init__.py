"""
Graph passes preparing a dynamic LLM graph for static-shape compilation.
"""

from .rewrite import (
    RewriteResult,
    align_u4_zp_constants,
    cvt_kvcache_to_fp16,
    decompose_sdpa,
    is_cw_compressed,
    optimize_value_tensors,
    transpose_value_tensors,
)
from .static import (
    KVAxesPosition,
    StaticVariants,
    add_slices_to_kvcache_inputs,
    get_kv_axes_pos,
    make_static_variants,
    redirect_new_kv_to_output,
    reshape_to_static,
)

__all__ = [
    'RewriteResult',
    'align_u4_zp_constants',
    'cvt_kvcache_to_fp16',
    'decompose_sdpa',
    'is_cw_compressed',
    'optimize_value_tensors',
    'transpose_value_tensors',
    'KVAxesPosition',
    'StaticVariants',
    'add_slices_to_kvcache_inputs',
    'get_kv_axes_pos',
    'make_static_variants',
    'redirect_new_kv_to_output',
    'reshape_to_static',
]
