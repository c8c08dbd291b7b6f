"""Graph rewrites: attention decomposition, value-cache layout and precision fixups."""

import logging
from dataclasses import dataclass, field, replace
from typing import List, Tuple

import torch

from ..errors import GraphShapeError
from ..ir import IR, Op, TensorId, TensorTy, torch_dtype

logger = logging.getLogger(__name__)

CW_GROUP_SIZE_PATH = ("nncf", "weight_compression", "group_size")


@dataclass
class RewriteResult:
    """What :func:`optimize_value_tensors` changed in a graph."""
    decomposed: List[str] = field(default_factory=list)  # sdpa friendly names
    new_params: List[TensorId] = field(default_factory=list)
    old_params: List[TensorId] = field(default_factory=list)
    transposed_inputs: List[str] = field(default_factory=list)  # external names

    @property
    def applied(self) -> bool:
        """True if the value-cache layout transform fired."""
        return bool(self.new_params)


def _scalar(ir: IR, value, dtype: str) -> TensorId:
    return ir.add_constant(torch.tensor(value, dtype=torch_dtype(dtype)), dtype)


def _decompose(ir: IR, node: Op) -> None:
    query, key, value = node.inputs[:3]
    dtype = ir.tensors[query].dtype
    name = node.id
    ir.ops.remove(node)

    zero_f = _scalar(ir, 0.0, dtype)
    minus_inf = _scalar(ir, float("-inf"), dtype)

    if len(node.inputs) < 5:
        head_dim = ir.add_op("dim_size", [key], {'axis': -1, 'dtype': "i64"})
        head_dim = ir.add_op("convert", [head_dim], {'dtype': dtype})
        scale = ir.add_op("divide", [_scalar(ir, 1.0, dtype), ir.add_op("sqrt", [head_dim])])
    else:
        scale = node.inputs[4]

    q_scaled = ir.add_op("multiply", [query, scale])
    scores = ir.add_op("matmul", [q_scaled, key], {'transpose_b': True})

    atten_mask = None
    if node.attrs.get('causal'):
        # -inf where column > row
        rows = ir.add_op("arange", [query], {'axis': -2, 'dtype': "i64"})
        rows = ir.add_op("add", [rows, _scalar(ir, 1, "i64")])
        rows = ir.add_op("unsqueeze", [rows], {'axes': (1,)})
        cols = ir.add_op("arange", [key], {'axis': -2, 'dtype': "i64"})
        cols = ir.add_op("unsqueeze", [cols], {'axes': (0,)})
        triu = ir.add_op("greater_equal", [cols, rows])
        atten_mask = ir.add_op("select", [triu, minus_inf, zero_f])
    elif len(node.inputs) > 3:
        mask = node.inputs[3]
        if ir.tensors[mask].dtype == "bool":
            # True takes part in attention
            inv_mask = ir.add_op("logical_not", [mask])
            atten_mask = ir.add_op("select", [inv_mask, minus_inf, zero_f])
        else:
            atten_mask = mask
    if atten_mask is not None:
        scores = ir.add_op("add", [scores, atten_mask])

    probs = ir.add_op("softmax", [scores], {'axis': -1})
    result = ir.add_op("matmul", [probs, value], name=name)
    ir.replace_tensor(node.outputs[0], result)


def decompose_sdpa(ir: IR) -> List[str]:
    """Replace every fused ``sdpa`` op with explicit scale/mask/softmax/matmul ops."""
    decomposed = []
    for node in [op for op in ir.ops if op.kind == "sdpa"]:
        _decompose(ir, node)
        decomposed.append(node.id)
    if decomposed:
        ir.validate()
    return decomposed


def transpose_value_tensors(ir: IR) -> Tuple[List[TensorId], List[TensorId]]:
    """
    Store value-cache inputs as [batch, heads, head_dim, seq_len].

    Matches ``Parameter -> Concat <- Transpose`` feeding the second operand of
    ``MatMul(Softmax(...), Concat)``. The parameter is replaced by one with its
    last two dims swapped, the transpose and concat are rebuilt for the new
    layout and the matmul consumes its second operand pre-transposed.

    Returns:
        (new_params, old_params); the caller owns the parameter list surgery.
    """
    new_params: List[TensorId] = []
    old_params: List[TensorId] = []
    for matmul in [op for op in ir.ops if op.kind == "matmul"]:
        if matmul.attrs.get('transpose_a') or matmul.attrs.get('transpose_b'):
            continue
        softmax = ir.producer(matmul.inputs[0])
        concat = ir.producer(matmul.inputs[1])
        if softmax is None or softmax.kind != "softmax":
            continue
        if concat is None or concat.kind != "concat" or len(concat.inputs) != 2:
            continue
        param, new_kv = concat.inputs
        if param not in ir.params or param in old_params:
            continue
        transpose = ir.producer(new_kv)
        if transpose is None or transpose.kind != "transpose":
            continue
        if len(ir.consumers(param)) != 1 or len(ir.consumers(new_kv)) != 1:
            continue

        param_ty = ir.tensors[param]
        if param_ty.rank != 4:
            raise GraphShapeError(
                f"Value cache input {param_ty.any_name or param} must have rank 4, "
                f"got shape {param_ty.shape}")
        if tuple(transpose.attrs['order']) != (0, 2, 1, 3):
            continue
        shape = list(param_ty.shape)
        shape[2], shape[3] = shape[3], shape[2]
        new_param = ir.new_id(f"{param}/bhes")
        ir.tensors[new_param] = TensorTy(tuple(shape), param_ty.dtype, param_ty.names)
        ir.replace_tensor(param, new_param, move_names=False)
        new_params.append(new_param)
        old_params.append(param)

        ir.ops.remove(transpose)
        new_transpose = ir.add_op("transpose", [transpose.inputs[0]],
                                  {'order': (0, 2, 3, 1)}, name=transpose.id)
        ir.ops.remove(concat)
        new_concat = ir.add_op("concat", [new_param, new_transpose], {'axis': 3},
                               name=concat.id)
        ir.replace_tensor(concat.outputs[0], new_concat)

        matmul.attrs['transpose_b'] = True
    return new_params, old_params


def optimize_value_tensors(ir: IR) -> RewriteResult:
    """Decompose attention and transpose value-cache tensors in place."""
    result = RewriteResult(decomposed=decompose_sdpa(ir))
    new_params, old_params = transpose_value_tensors(ir)
    ir.add_parameters(new_params)
    for param in old_params:
        ir.remove_parameter(param)
    ir.validate()

    result.new_params = new_params
    result.old_params = old_params
    result.transposed_inputs = [ir.tensors[t].any_name or t for t in new_params]
    logger.debug("Decomposed %d attention ops, transposed %d value tensors",
                 len(result.decomposed), len(new_params))
    return result


def cvt_kvcache_to_fp16(ir: IR) -> List[str]:
    """
    Make past cache inputs and present outputs f16 at the graph boundary.

    Internal compute keeps its precision: converts are inserted right after
    the inputs and right before the outputs.
    """
    converted = []
    for tid in list(ir.params):
        ty = ir.tensors[tid]
        name = ty.any_name or tid
        if "past_key" not in name or ty.dtype == "f16":
            continue
        ir.tensors[tid] = replace(ty, dtype="f16")
        cvt = ir.add_op("convert", [tid], {'dtype': ty.dtype})
        ir.replace_tensor(tid, cvt, exclude=[ir.producer(cvt)], move_names=False)
        converted.append(name)

    for index, tid in enumerate(list(ir.results)):
        ty = ir.tensors[tid]
        name = ty.any_name or tid
        if "present" not in name or ty.dtype == "f16":
            continue
        cvt = ir.add_op("convert", [tid], {'dtype': "f16"})
        ir.results[index] = cvt
        ir.set_names(cvt, ty.names)
        ir.set_names(tid, ())
        converted.append(name)

    if converted:
        ir.validate()
    return converted


def align_u4_zp_constants(ir: IR) -> int:
    """Mask single-element u4 constants (packed zero points) to their low nibble."""
    aligned = 0
    for tid, value in list(ir.constants.items()):
        if ir.tensors[tid].dtype != "u4" or value.numel() != 1:
            continue
        new_cst = ir.add_constant(value & 0x0F, "u4")
        ir.replace_tensor(tid, new_cst, move_names=False)
        aligned += 1
    if aligned:
        ir.validate()
    return aligned


def is_cw_compressed(ir: IR) -> bool:
    """True for weights compressed per channel (group size -1)."""
    group_size = ir.get_rt_info(CW_GROUP_SIZE_PATH)
    if group_size is None:
        # Not a compressed model
        return False
    return int(group_size) == -1
