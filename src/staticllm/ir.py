"""Graph intermediate representation consumed by the rewrite passes and engines."""

import copy
from collections import deque
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

import torch

from .errors import GraphShapeError

TensorId = str
DType = str  # "f32", "f16", "bf16", "i64", "i32", "u8", "u4", "bool"
Dim = Union[int, str]  # str dims are symbolic (dynamic)
Shape = Tuple[Dim, ...]

_TORCH_DTYPES = {
    "f32": torch.float32,
    "f16": torch.float16,
    "bf16": torch.bfloat16,
    "i64": torch.int64,
    "i32": torch.int32,
    "u8": torch.uint8,
    "u4": torch.uint8,  # stored unpacked, one value per byte
    "bool": torch.bool,
}


def torch_dtype(dtype: DType) -> torch.dtype:
    """Map an IR element type to the torch dtype used to hold it."""
    try:
        return _TORCH_DTYPES[dtype]
    except KeyError:
        raise GraphShapeError(f"Unsupported element type: {dtype}") from None


def dtype_of(tensor: torch.Tensor) -> DType:
    """Infer the IR element type of a torch tensor."""
    for name, tdtype in _TORCH_DTYPES.items():
        if tensor.dtype == tdtype:
            return name
    raise GraphShapeError(f"Unsupported tensor dtype: {tensor.dtype}")


@dataclass(frozen=True)
class TensorTy:
    shape: Shape
    dtype: DType
    names: Tuple[str, ...] = ()  # external tensor names

    @property
    def rank(self) -> int:
        return len(self.shape)

    @property
    def is_static(self) -> bool:
        return all(isinstance(d, int) for d in self.shape)

    @property
    def any_name(self) -> Optional[str]:
        return self.names[0] if self.names else None


@dataclass
class Op:
    id: str  # friendly name
    kind: str
    inputs: List[TensorId]
    outputs: List[TensorId]
    attrs: Dict[str, Any] = field(default_factory=dict)


@dataclass
class IR:
    """
    Mutable dataflow graph.

    ``params`` are the graph inputs and ``results`` the graph outputs, both
    addressed by tensor id; external tensor names live on ``TensorTy.names``.
    Passes mutate the graph in place and finish with :meth:`validate`.
    """
    tensors: Dict[TensorId, TensorTy] = field(default_factory=dict)
    params: List[TensorId] = field(default_factory=list)
    ops: List[Op] = field(default_factory=list)
    results: List[TensorId] = field(default_factory=list)
    constants: Dict[TensorId, torch.Tensor] = field(default_factory=dict)
    rt_info: Dict[str, Any] = field(default_factory=dict)

    # ------------------------------------------------------------------
    # Lookup

    def new_id(self, prefix: str) -> str:
        """Return an id that is neither a tensor id nor an op id yet."""
        taken = set(self.tensors)
        taken.update(op.id for op in self.ops)
        i = 0
        while f"{prefix}_{i}" in taken:
            i += 1
        return f"{prefix}_{i}"

    def input(self, name: str) -> TensorId:
        for tid in self.params:
            if tid == name or name in self.tensors[tid].names:
                return tid
        raise KeyError(f"Graph has no input named {name!r}")

    def output(self, name: str) -> TensorId:
        for tid in self.results:
            if tid == name or name in self.tensors[tid].names:
                return tid
        raise KeyError(f"Graph has no output named {name!r}")

    def input_names(self) -> List[str]:
        return [self.tensors[tid].any_name or tid for tid in self.params]

    def output_names(self) -> List[str]:
        return [self.tensors[tid].any_name or tid for tid in self.results]

    def producer(self, tid: TensorId) -> Optional[Op]:
        for op in self.ops:
            if tid in op.outputs:
                return op
        return None

    def consumers(self, tid: TensorId) -> List[Op]:
        return [op for op in self.ops if tid in op.inputs]

    def get_rt_info(self, path: Iterable[str], default: Any = None) -> Any:
        node = self.rt_info
        for key in path:
            if not isinstance(node, dict) or key not in node:
                return default
            node = node[key]
        return node

    @property
    def is_static(self) -> bool:
        return all(self.tensors[tid].is_static for tid in self.params)

    # ------------------------------------------------------------------
    # Construction and surgery

    def add_parameter(self, ty: TensorTy, tid: Optional[TensorId] = None) -> TensorId:
        tid = tid or self.new_id("param")
        self.tensors[tid] = ty
        self.params.append(tid)
        return tid

    def add_constant(self, value: torch.Tensor, dtype: Optional[DType] = None) -> TensorId:
        tid = self.new_id("const")
        self.tensors[tid] = TensorTy(tuple(value.shape), dtype or dtype_of(value))
        self.constants[tid] = value
        return tid

    def add_op(self, kind: str, inputs: List[TensorId],
               attrs: Optional[Dict[str, Any]] = None,
               name: Optional[str] = None) -> TensorId:
        """Append an op, infer its output type and return its output tensor id."""
        from .kernels.registry import get_registry

        op = Op(id=name or self.new_id(kind), kind=kind, inputs=list(inputs),
                outputs=[], attrs=dict(attrs or {}))
        out_types = get_registry().infer(op, [self.tensors[t] for t in op.inputs])
        for ty in out_types:
            tid = self.new_id(f"{op.id}/out")
            self.tensors[tid] = ty
            op.outputs.append(tid)
        self.ops.append(op)
        return op.outputs[0]

    def set_names(self, tid: TensorId, names: Iterable[str]) -> None:
        self.tensors[tid] = replace(self.tensors[tid], names=tuple(names))

    def replace_tensor(self, old: TensorId, new: TensorId,
                       exclude: Iterable[Op] = (), move_names: bool = True) -> None:
        """Rewire every consumer and result slot of ``old`` to ``new``."""
        skip = {id(op) for op in exclude}
        for op in self.ops:
            if id(op) in skip:
                continue
            op.inputs = [new if t == old else t for t in op.inputs]
        self.results = [new if t == old else t for t in self.results]
        if move_names and self.tensors[old].names:
            self.set_names(new, self.tensors[old].names)
            self.set_names(old, ())

    def add_parameters(self, tids: Iterable[TensorId]) -> None:
        for tid in tids:
            if tid not in self.params:
                self.params.append(tid)

    def remove_parameter(self, tid: TensorId) -> None:
        self.params.remove(tid)
        if not self.consumers(tid) and tid not in self.results:
            del self.tensors[tid]

    def prune(self) -> None:
        """Drop ops, constants and tensors that no result depends on."""
        needed = set(self.results)
        producers = {t: op for op in self.ops for t in op.outputs}
        queue = deque(self.results)
        live_ops = set()
        while queue:
            op = producers.get(queue.popleft())
            if op is None or id(op) in live_ops:
                continue
            live_ops.add(id(op))
            for t in op.inputs:
                if t not in needed:
                    needed.add(t)
                    queue.append(t)
        self.ops = [op for op in self.ops if id(op) in live_ops]
        for op in self.ops:
            needed.update(op.outputs)
        self.constants = {t: v for t, v in self.constants.items() if t in needed}
        keep = needed | set(self.params)
        self.tensors = {t: ty for t, ty in self.tensors.items() if t in keep}

    def sort(self) -> None:
        """Order ops topologically; dangling inputs and cycles are fatal."""
        available = set(self.params) | set(self.constants)
        producers = {t: op for op in self.ops for t in op.outputs}
        for op in self.ops:
            for t in op.inputs:
                if t not in available and t not in producers:
                    raise GraphShapeError(f"Op {op.id} consumes unknown tensor {t}")
        pending = {id(op): sum(1 for t in op.inputs if t in producers) for op in self.ops}
        users: Dict[TensorId, List[Op]] = {}
        for op in self.ops:
            for t in op.inputs:
                if t in producers:
                    users.setdefault(t, []).append(op)
        queue = deque(op for op in self.ops if pending[id(op)] == 0)
        ordered = []
        while queue:
            op = queue.popleft()
            ordered.append(op)
            for t in op.outputs:
                for user in users.get(t, []):
                    pending[id(user)] -= 1
                    if pending[id(user)] == 0:
                        queue.append(user)
        if len(ordered) != len(self.ops):
            raise GraphShapeError("Graph contains a cycle")
        self.ops = ordered

    def validate(self) -> None:
        """Prune, sort and re-run type inference over the whole graph."""
        from .kernels.registry import get_registry

        registry = get_registry()
        for tid in self.results:
            if tid not in self.tensors:
                raise GraphShapeError(f"Result {tid} is not a graph tensor")
        self.prune()
        self.sort()
        for op in self.ops:
            out_types = registry.infer(op, [self.tensors[t] for t in op.inputs])
            if len(out_types) != len(op.outputs):
                raise GraphShapeError(f"Op {op.id} produces {len(out_types)} outputs, "
                                      f"graph expects {len(op.outputs)}")
            for tid, ty in zip(op.outputs, out_types):
                self.tensors[tid] = replace(ty, names=self.tensors[tid].names)

    def reshape(self, new_shapes: Dict[str, Shape]) -> None:
        """Set input shapes by external name, then re-infer the graph."""
        for name, shape in new_shapes.items():
            tid = self.input(name)
            current = self.tensors[tid]
            shape = tuple(shape)
            if len(shape) != current.rank:
                raise GraphShapeError(
                    f"Cannot reshape input {name} of rank {current.rank} to {shape}")
            for axis, (old, new) in enumerate(zip(current.shape, shape)):
                if isinstance(old, int) and old != new:
                    raise GraphShapeError(
                        f"Axis {axis} of input {name} is fixed to {old}, cannot set {new}")
            self.tensors[tid] = replace(current, shape=shape)
        self.validate()

    def clone(self) -> "IR":
        return copy.deepcopy(self)

    # ------------------------------------------------------------------
    # Serialization

    def to_dict(self) -> Dict[str, Any]:
        """Convert to primitives and tensors, loadable with ``weights_only``."""
        return {
            'tensors': {
                tid: {'shape': list(ty.shape), 'dtype': ty.dtype, 'names': list(ty.names)}
                for tid, ty in self.tensors.items()
            },
            'params': list(self.params),
            'ops': [
                {
                    'id': op.id,
                    'kind': op.kind,
                    'inputs': list(op.inputs),
                    'outputs': list(op.outputs),
                    'attrs': {k: list(v) if isinstance(v, tuple) else v
                              for k, v in op.attrs.items()},
                }
                for op in self.ops
            ],
            'results': list(self.results),
            'constants': dict(self.constants),
            'rt_info': copy.deepcopy(self.rt_info),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IR":
        return cls(
            tensors={
                tid: TensorTy(tuple(t['shape']), t['dtype'], tuple(t['names']))
                for tid, t in data['tensors'].items()
            },
            params=list(data['params']),
            ops=[
                Op(id=o['id'], kind=o['kind'], inputs=list(o['inputs']),
                   outputs=list(o['outputs']),
                   attrs={k: tuple(v) if isinstance(v, list) else v
                          for k, v in o['attrs'].items()})
                for o in data['ops']
            ],
            results=list(data['results']),
            constants=dict(data['constants']),
            rt_info=copy.deepcopy(data.get('rt_info', {})),
        )

    def save(self, path: Union[str, Path]) -> None:
        torch.save(self.to_dict(), path)

    @classmethod
    def load(cls, path: Union[str, Path]) -> "IR":
        return cls.from_dict(torch.load(path, weights_only=True))


def print_ir(ir: IR) -> None:
    """Pretty print the IR for debugging."""
    print("=" * 60)
    print("Model IR")
    print("=" * 60)

    print(f"\nInputs: {len(ir.params)}")
    for tid in ir.params:
        ty = ir.tensors[tid]
        print(f"  {ty.any_name or tid}: shape={ty.shape}, dtype={ty.dtype}")

    print(f"\nOutputs: {len(ir.results)}")
    for tid in ir.results:
        ty = ir.tensors[tid]
        print(f"  {ty.any_name or tid}: shape={ty.shape}, dtype={ty.dtype}")

    print(f"\nConstants: {len(ir.constants)}")

    print(f"\nOperations: {len(ir.ops)}")
    for op in ir.ops[:10]:
        print(f"  [{op.id}] {op.kind}:")
        print(f"    inputs: {op.inputs}")
        print(f"    outputs: {op.outputs}")
    if len(ir.ops) > 10:
        print(f"  ... and {len(ir.ops) - 10} more")

    print("=" * 60)
