"""Reshaping dynamic LLM graphs into fixed-shape prefill and generate variants."""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from ..errors import GraphShapeError
from ..ir import IR, Dim, TensorTy
from .rewrite import align_u4_zp_constants, cvt_kvcache_to_fp16, optimize_value_tensors

logger = logging.getLogger(__name__)

KV_CACHE_INPUT = "past_key_values"
KV_CACHE_OUTPUT = "present"


@dataclass(frozen=True)
class KVAxesPosition:
    """Batch and sequence axes of the cache tensors."""
    batch: int = 0
    seq_len: int = 2


def get_kv_axes_pos(ir: IR) -> KVAxesPosition:
    """Locate batch and seq axes from the first two dynamic dims of a cache input."""
    for tid in ir.params:
        ty = ir.tensors[tid]
        if KV_CACHE_INPUT not in (ty.any_name or tid):
            continue
        dynamic = [axis for axis, d in enumerate(ty.shape) if isinstance(d, str)]
        if len(dynamic) >= 2:
            return KVAxesPosition(batch=dynamic[0], seq_len=dynamic[1])
        break
    return KVAxesPosition()


def seq_axis_for(name: str, kv_axes: KVAxesPosition, transposed: Iterable[str] = ()) -> int:
    """Sequence axis of a cache tensor, honouring the swapped value layout."""
    if name in set(transposed):
        return {2: 3, 3: 2}.get(kv_axes.seq_len, kv_axes.seq_len)
    return kv_axes.seq_len


def reshape_to_static(ir: IR,
                      input_size: int,
                      kvcache_size: int,
                      kv_axes_position: KVAxesPosition,
                      transposed: Iterable[str] = ()) -> None:
    """
    Fix every graph input to a static shape.

    Args:
        ir: Graph to reshape in place
        input_size: Tokens per inference (max prompt length, or 1 to generate)
        kvcache_size: Total cache capacity
        kv_axes_position: Batch and seq axes of cache inputs
        transposed: Cache inputs stored as [batch, heads, head_dim, seq_len]
    """
    if kvcache_size < input_size:
        raise GraphShapeError(
            f"Cache capacity {kvcache_size} is smaller than input size {input_size}")
    transposed = set(transposed)
    new_shapes = {}
    for tid in ir.params:
        ty = ir.tensors[tid]
        name = ty.any_name or tid
        if "input_ids" in name or "position_ids" in name:
            shape: List[Dim] = [1, input_size]
        elif "attention_mask" in name:
            shape = [1, kvcache_size]
        else:
            shape = list(ty.shape)
            shape[kv_axes_position.batch] = 1
            shape[seq_axis_for(name, kv_axes_position, transposed)] = kvcache_size - input_size
        new_shapes[name] = tuple(shape)
    ir.reshape(new_shapes)


def redirect_new_kv_to_output(ir: IR) -> List[str]:
    """Expose only the newly computed cache entries on each ``present`` output."""
    redirected = []
    for index, tid in enumerate(list(ir.results)):
        ty = ir.tensors[tid]
        name = ty.any_name or tid
        if KV_CACHE_OUTPUT not in name:
            continue
        concat = ir.producer(tid)
        if concat is None or concat.kind != "concat" or len(concat.inputs) != 2:
            raise GraphShapeError(f"Cache output {name} is not produced by a two-way concat")
        new_kv = concat.inputs[1]
        ir.results[index] = new_kv
        ir.set_names(new_kv, ty.names)
        ir.set_names(tid, ())
        redirected.append(name)
    ir.validate()
    return redirected


def _grow(dim: Dim) -> Dim:
    return dim + 1 if isinstance(dim, int) else f"{dim}+1"


def add_slices_to_kvcache_inputs(ir: IR,
                                 kv_axes_position: KVAxesPosition = KVAxesPosition(),
                                 transposed: Iterable[str] = ()) -> List[str]:
    """
    Grow each cache input by one position and slice that position off the front.

    A caller can then shift one fixed-size buffer by a single slot per decode
    step instead of reallocating it.
    """
    windowed = []
    for tid in list(ir.params):
        ty = ir.tensors[tid]
        name = ty.any_name or tid
        if KV_CACHE_INPUT not in name:
            continue
        axis = seq_axis_for(name, kv_axes_position, transposed)
        shape = list(ty.shape)
        shape[axis] = _grow(shape[axis])
        new_param = ir.new_id(f"{tid}/window")
        ir.tensors[new_param] = TensorTy(tuple(shape), ty.dtype, ty.names)
        sliced = ir.add_op("slice", [new_param],
                           {'start': 1, 'stop': None, 'step': 1, 'axis': axis},
                           name=f"{name}_Slice")
        ir.replace_tensor(tid, sliced, move_names=False)
        ir.params[ir.params.index(tid)] = new_param
        del ir.tensors[tid]
        windowed.append(name)
    ir.validate()
    return windowed


@dataclass
class StaticVariants:
    """Prefill and generate graphs derived from one dynamic graph."""
    prefill: IR
    generate: IR
    kv_axes: KVAxesPosition
    transposed_inputs: Tuple[str, ...] = ()


def make_static_variants(ir: IR,
                         max_prompt_len: int,
                         kvcache_total: int,
                         kv_axes: Optional[KVAxesPosition] = None,
                         optimize_v_tensors: bool = True,
                         kvcache_fp16: bool = True) -> StaticVariants:
    """
    Build the static prefill ([1, P] tokens) and generate ([1, 1] token) graphs.

    The source graph is left untouched; each variant is rewritten on a clone.
    """
    kv_axes = kv_axes or get_kv_axes_pos(ir)
    graphs = {}
    transposed: Tuple[str, ...] = ()
    for phase, input_size in (("prefill", max_prompt_len), ("generate", 1)):
        graph = ir.clone()
        if optimize_v_tensors:
            rewrite = optimize_value_tensors(graph)
            transposed = tuple(rewrite.transposed_inputs)
        redirect_new_kv_to_output(graph)
        if kvcache_fp16:
            cvt_kvcache_to_fp16(graph)
        align_u4_zp_constants(graph)
        reshape_to_static(graph, input_size, kvcache_total, kv_axes, transposed)
        graphs[phase] = graph
        logger.debug("Built static %s graph with %d ops", phase, len(graph.ops))
    return StaticVariants(prefill=graphs["prefill"], generate=graphs["generate"],
                          kv_axes=kv_axes, transposed_inputs=transposed)
