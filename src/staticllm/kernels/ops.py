"""Shape inference and torch implementations of the IR op set."""

import math
from typing import List, Optional, Sequence

import torch
import torch.nn.functional as F

from ..errors import GraphShapeError
from ..ir import Dim, Op, Shape, TensorTy, torch_dtype


def _fail(op: Op, message: str) -> GraphShapeError:
    return GraphShapeError(f"{op.kind} {op.id}: {message}")


def _axis(op: Op, axis: int, rank: int) -> int:
    if not -rank <= axis < max(rank, 1):
        raise _fail(op, f"axis {axis} out of range for rank {rank}")
    return axis % rank if rank else 0


def _merge_dims(op: Op, dims: Sequence[Dim]) -> Dim:
    result: Dim = 1
    for d in dims:
        if d == 1:
            continue
        if result == 1:
            result = d
        elif isinstance(result, int) and isinstance(d, int):
            if result != d:
                raise _fail(op, f"incompatible dimensions {result} and {d}")
        elif isinstance(result, str) and isinstance(d, int):
            result = d
    return result


def broadcast(op: Op, *shapes: Shape) -> Shape:
    rank = max(len(s) for s in shapes)
    out = []
    for i in range(rank):
        dims = [s[len(s) - rank + i] for s in shapes if len(s) - rank + i >= 0]
        out.append(_merge_dims(op, dims))
    return tuple(out)


def _add_dims(a: Dim, b: Dim) -> Dim:
    if isinstance(a, int) and isinstance(b, int):
        return a + b
    return f"{a}+{b}"


# ----------------------------------------------------------------------
# Shape inference

def _same(op: Op, tys: List[TensorTy]) -> List[TensorTy]:
    return [TensorTy(tys[0].shape, tys[0].dtype)]


def _softmax_infer(op: Op, tys: List[TensorTy]) -> List[TensorTy]:
    _axis(op, op.attrs.get('axis', -1), tys[0].rank)
    return _same(op, tys)


def _logical_infer(op: Op, tys: List[TensorTy]) -> List[TensorTy]:
    return [TensorTy(broadcast(op, *(t.shape for t in tys)), "bool")]


def _binary_infer(op: Op, tys: List[TensorTy]) -> List[TensorTy]:
    return [TensorTy(broadcast(op, tys[0].shape, tys[1].shape), tys[0].dtype)]


def _select_infer(op: Op, tys: List[TensorTy]) -> List[TensorTy]:
    return [TensorTy(broadcast(op, *(t.shape for t in tys)), tys[1].dtype)]


def _convert_infer(op: Op, tys: List[TensorTy]) -> List[TensorTy]:
    torch_dtype(op.attrs['dtype'])
    return [TensorTy(tys[0].shape, op.attrs['dtype'])]


def _matmul_infer(op: Op, tys: List[TensorTy]) -> List[TensorTy]:
    a, b = tys
    if a.rank < 2 or b.rank < 2:
        raise _fail(op, "operands must have rank >= 2")
    m, k_a = a.shape[-2:]
    if op.attrs.get('transpose_a'):
        m, k_a = k_a, m
    k_b, n = b.shape[-2:]
    if op.attrs.get('transpose_b'):
        k_b, n = n, k_b
    if isinstance(k_a, int) and isinstance(k_b, int) and k_a != k_b:
        raise _fail(op, f"contraction dimensions differ: {k_a} vs {k_b}")
    batch = broadcast(op, a.shape[:-2], b.shape[:-2])
    return [TensorTy(batch + (m, n), a.dtype)]


def _transpose_infer(op: Op, tys: List[TensorTy]) -> List[TensorTy]:
    order = tuple(op.attrs['order'])
    if sorted(order) != list(range(tys[0].rank)):
        raise _fail(op, f"order {order} is not a permutation of rank {tys[0].rank}")
    return [TensorTy(tuple(tys[0].shape[i] for i in order), tys[0].dtype)]


def _concat_infer(op: Op, tys: List[TensorTy]) -> List[TensorTy]:
    rank = tys[0].rank
    if any(t.rank != rank for t in tys):
        raise _fail(op, "inputs differ in rank")
    axis = _axis(op, op.attrs['axis'], rank)
    shape = []
    for i in range(rank):
        dims = [t.shape[i] for t in tys]
        if i == axis:
            total = dims[0]
            for d in dims[1:]:
                total = _add_dims(total, d)
            shape.append(total)
        else:
            merged = dims[0]
            for d in dims[1:]:
                if isinstance(merged, int) and isinstance(d, int) and merged != d:
                    raise _fail(op, f"axis {i} differs: {merged} vs {d}")
                if isinstance(merged, str):
                    merged = d
            shape.append(merged)
    return [TensorTy(tuple(shape), tys[0].dtype)]


def _slice_infer(op: Op, tys: List[TensorTy]) -> List[TensorTy]:
    shape = list(tys[0].shape)
    axis = _axis(op, op.attrs['axis'], len(shape))
    start, stop, step = op.attrs.get('start', 0), op.attrs.get('stop'), op.attrs.get('step', 1)
    dim = shape[axis]
    if isinstance(dim, int):
        shape[axis] = len(range(*slice(start, stop, step).indices(dim)))
    elif stop is None and step == 1:
        shape[axis] = f"{dim}-{start}" if start else dim
    elif stop is not None and stop >= 0 and start >= 0:
        shape[axis] = max(0, math.ceil((stop - start) / step))
    else:
        raise _fail(op, f"cannot slice symbolic axis {dim}")
    return [TensorTy(tuple(shape), tys[0].dtype)]


def _gather_infer(op: Op, tys: List[TensorTy]) -> List[TensorTy]:
    data, indices = tys
    axis = _axis(op, op.attrs.get('axis', 0), data.rank)
    return [TensorTy(data.shape[:axis] + indices.shape + data.shape[axis + 1:], data.dtype)]


def _reshape_infer(op: Op, tys: List[TensorTy]) -> List[TensorTy]:
    src = tys[0].shape
    target = list(op.attrs['shape'])
    out: List[Dim] = []
    for i, d in enumerate(target):
        if d == 0:
            if i >= len(src):
                raise _fail(op, "special zero beyond input rank")
            out.append(src[i])
        else:
            out.append(d)
    if -1 in out:
        known = [d for d in out if d != -1]
        if tys[0].is_static and all(isinstance(d, int) for d in known):
            numel = math.prod(src)
            rest = math.prod(known)
            if rest == 0 or numel % rest:
                raise _fail(op, f"cannot reshape {src} to {tuple(target)}")
            out[out.index(-1)] = numel // rest
        else:
            out[out.index(-1)] = f"{op.id}:inferred"
    elif tys[0].is_static and all(isinstance(d, int) for d in out):
        if math.prod(src) != math.prod(out):
            raise _fail(op, f"cannot reshape {src} to {tuple(out)}")
    return [TensorTy(tuple(out), tys[0].dtype)]


def _unsqueeze_axes(op: Op, rank: int) -> List[int]:
    out_rank = rank + len(op.attrs['axes'])
    return sorted(_axis(op, a, out_rank) for a in op.attrs['axes'])


def _unsqueeze_infer(op: Op, tys: List[TensorTy]) -> List[TensorTy]:
    shape = list(tys[0].shape)
    for axis in _unsqueeze_axes(op, len(shape)):
        shape.insert(axis, 1)
    return [TensorTy(tuple(shape), tys[0].dtype)]


def _arange_infer(op: Op, tys: List[TensorTy]) -> List[TensorTy]:
    axis = _axis(op, op.attrs['axis'], tys[0].rank)
    return [TensorTy((tys[0].shape[axis],), op.attrs.get('dtype', "i64"))]


def _dim_size_infer(op: Op, tys: List[TensorTy]) -> List[TensorTy]:
    _axis(op, op.attrs['axis'], tys[0].rank)
    return [TensorTy((), op.attrs.get('dtype', "i64"))]


def _sdpa_infer(op: Op, tys: List[TensorTy]) -> List[TensorTy]:
    q, k, v = tys[:3]
    if q.rank < 2 or k.rank != q.rank or v.rank != q.rank:
        raise _fail(op, "query, key and value must share a rank >= 2")
    if isinstance(q.shape[-1], int) and isinstance(k.shape[-1], int) and q.shape[-1] != k.shape[-1]:
        raise _fail(op, "query and key embedding sizes differ")
    return [TensorTy(q.shape[:-1] + (v.shape[-1],), q.dtype)]


# ----------------------------------------------------------------------
# Torch implementations

def _matmul_run(op: Op, xs: List[torch.Tensor]) -> List[torch.Tensor]:
    a, b = xs
    if op.attrs.get('transpose_a'):
        a = a.transpose(-1, -2)
    if op.attrs.get('transpose_b'):
        b = b.transpose(-1, -2)
    return [torch.matmul(a, b)]


def _slice_run(op: Op, xs: List[torch.Tensor]) -> List[torch.Tensor]:
    x = xs[0]
    index = [slice(None)] * x.dim()
    index[op.attrs['axis']] = slice(op.attrs.get('start', 0), op.attrs.get('stop'),
                                    op.attrs.get('step', 1))
    return [x[tuple(index)]]


def _gather_run(op: Op, xs: List[torch.Tensor]) -> List[torch.Tensor]:
    data, indices = xs
    axis = op.attrs.get('axis', 0) % data.dim()
    picked = torch.index_select(data, axis, indices.reshape(-1).long())
    shape = data.shape[:axis] + indices.shape + data.shape[axis + 1:]
    return [picked.reshape(shape)]


def _reshape_run(op: Op, xs: List[torch.Tensor]) -> List[torch.Tensor]:
    x = xs[0]
    target = [x.shape[i] if d == 0 else d for i, d in enumerate(op.attrs['shape'])]
    return [x.reshape(target)]


def _unsqueeze_run(op: Op, xs: List[torch.Tensor]) -> List[torch.Tensor]:
    x = xs[0]
    for axis in _unsqueeze_axes(op, x.dim()):
        x = x.unsqueeze(axis)
    return [x]


def _sdpa_run(op: Op, xs: List[torch.Tensor]) -> List[torch.Tensor]:
    q, k, v = xs[:3]
    causal = bool(op.attrs.get('causal', False))
    mask: Optional[torch.Tensor] = xs[3] if len(xs) > 3 and not causal else None
    scale = float(xs[4].item()) if len(xs) > 4 else None
    out = F.scaled_dot_product_attention(q, k, v, attn_mask=mask, is_causal=causal, scale=scale)
    return [out]


def _wrap(fn):
    return lambda op, xs: [fn(op, *xs)]


def _dtype_attr(op: Op) -> torch.dtype:
    return torch_dtype(op.attrs.get('dtype', "i64"))


def default_kernels():
    """Build the default kernel specs for the IR op set."""
    from .registry import KernelSpec

    return [
        KernelSpec("sdpa", _sdpa_infer, _sdpa_run, 3, 5),
        KernelSpec("matmul", _matmul_infer, _matmul_run, 2, 2),
        KernelSpec("transpose", _transpose_infer,
                   _wrap(lambda op, x: x.permute(*op.attrs['order'])), 1, 1),
        KernelSpec("concat", _concat_infer,
                   lambda op, xs: [torch.cat(xs, dim=op.attrs['axis'])], 1),
        KernelSpec("softmax", _softmax_infer,
                   _wrap(lambda op, x: torch.softmax(x, dim=op.attrs.get('axis', -1))), 1, 1),
        KernelSpec("add", _binary_infer, _wrap(lambda op, a, b: a + b), 2, 2),
        KernelSpec("subtract", _binary_infer, _wrap(lambda op, a, b: a - b), 2, 2),
        KernelSpec("multiply", _binary_infer, _wrap(lambda op, a, b: a * b), 2, 2),
        KernelSpec("divide", _binary_infer, _wrap(lambda op, a, b: a / b), 2, 2),
        KernelSpec("sqrt", _same, _wrap(lambda op, x: torch.sqrt(x)), 1, 1),
        KernelSpec("relu", _same, _wrap(lambda op, x: torch.relu(x)), 1, 1),
        KernelSpec("logical_not", _logical_infer,
                   _wrap(lambda op, x: torch.logical_not(x)), 1, 1),
        KernelSpec("greater_equal", _logical_infer, _wrap(lambda op, a, b: a >= b), 2, 2),
        KernelSpec("select", _select_infer,
                   _wrap(lambda op, c, a, b: torch.where(c.bool(), a, b)), 3, 3),
        KernelSpec("convert", _convert_infer,
                   _wrap(lambda op, x: x.to(torch_dtype(op.attrs['dtype']))), 1, 1),
        KernelSpec("slice", _slice_infer, _slice_run, 1, 1),
        KernelSpec("gather", _gather_infer, _gather_run, 2, 2),
        KernelSpec("reshape", _reshape_infer, _reshape_run, 1, 1),
        KernelSpec("unsqueeze", _unsqueeze_infer, _unsqueeze_run, 1, 1),
        KernelSpec("arange", _arange_infer,
                   _wrap(lambda op, x: torch.arange(x.shape[op.attrs['axis']],
                                                    dtype=_dtype_attr(op))), 1, 1),
        KernelSpec("dim_size", _dim_size_infer,
                   _wrap(lambda op, x: torch.tensor(x.shape[op.attrs['axis']],
                                                    dtype=_dtype_attr(op))), 1, 1),
    ]
