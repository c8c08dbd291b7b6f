"""Device engine boundary and the torch reference engine."""

import atexit
import logging
from abc import ABC, abstractmethod
from typing import Any, BinaryIO, Dict, List, Mapping, Optional

import torch

from .errors import ConfigurationError, GraphShapeError, PreconditionError
from .ir import IR, TensorId, TensorTy, torch_dtype
from .kernels import get_registry

logger = logging.getLogger(__name__)

EXPORT_FORMAT = "staticllm-executable/1"

DEFAULT_DEVICE_PROPERTIES = {
    "NPU": {
        'DEVICE_ARCHITECTURE': "3720",
        'NPU_MAX_TILES': 2,
        'SUPPORTED_PROPERTIES': ["DEVICE_ARCHITECTURE", "NPU_MAX_TILES"],
    },
}


class Executable(ABC):
    """Compiled graph with named tensor slots."""

    @property
    @abstractmethod
    def input_names(self) -> List[str]:
        ...

    @property
    @abstractmethod
    def output_names(self) -> List[str]:
        ...

    @abstractmethod
    def input_type(self, name: str) -> TensorTy:
        ...

    @abstractmethod
    def set_tensor(self, name: str, tensor: torch.Tensor):
        ...

    @abstractmethod
    def get_tensor(self, name: str) -> torch.Tensor:
        ...

    @abstractmethod
    def infer(self):
        ...

    @abstractmethod
    def export(self, stream: BinaryIO):
        ...

    @abstractmethod
    def get_property(self, name: str) -> Any:
        ...


class Engine(ABC):
    """Compiler and runtime for one or more devices."""

    @property
    @abstractmethod
    def available_devices(self) -> List[str]:
        ...

    @abstractmethod
    def get_property(self, device: str, name: str) -> Any:
        ...

    @abstractmethod
    def compile(self, ir: IR, device: str, properties: Mapping[str, Any]) -> Executable:
        ...

    @abstractmethod
    def import_model(self, stream: BinaryIO, device: str,
                     properties: Mapping[str, Any]) -> Executable:
        ...

    def close(self):
        """Release device resources."""


class TorchExecutable(Executable):
    """
    Executes a static graph op by op with the registered torch kernels.

    Bound input tensors are kept by reference: mutating a bound tensor in
    place changes what the next ``infer`` reads.
    """

    def __init__(self, ir: IR, device: str, properties: Mapping[str, Any]):
        if not ir.is_static:
            dynamic = [n for n, t in zip(ir.input_names(), ir.params) if not ir.tensors[t].is_static]
            raise GraphShapeError(f"Cannot compile graph with dynamic inputs: {dynamic}")
        self.ir = ir
        self.device = device
        self.properties = dict(properties)
        self.infer_count = 0
        self._bound: Dict[TensorId, torch.Tensor] = {}
        self._outputs: Dict[TensorId, torch.Tensor] = {}

    @property
    def input_names(self) -> List[str]:
        return self.ir.input_names()

    @property
    def output_names(self) -> List[str]:
        return self.ir.output_names()

    def input_type(self, name: str) -> TensorTy:
        return self.ir.tensors[self.ir.input(name)]

    def set_tensor(self, name: str, tensor: torch.Tensor):
        tid = self.ir.input(name)
        ty = self.ir.tensors[tid]
        if tuple(tensor.shape) != ty.shape:
            raise GraphShapeError(f"Input {name} expects shape {ty.shape}, got {tuple(tensor.shape)}")
        if tensor.dtype != torch_dtype(ty.dtype):
            raise GraphShapeError(f"Input {name} expects {ty.dtype}, got {tensor.dtype}")
        self._bound[tid] = tensor

    def get_tensor(self, name: str) -> torch.Tensor:
        if name in self.input_names:
            return self._bound[self.ir.input(name)]
        tid = self.ir.output(name)
        if tid not in self._outputs:
            raise PreconditionError(f"Output {name} is not available before infer()")
        return self._outputs[tid]

    def infer(self):
        missing = [self.ir.tensors[t].any_name or t for t in self.ir.params if t not in self._bound]
        if missing:
            raise PreconditionError(f"Inputs not set: {missing}")

        registry = get_registry()
        values: Dict[TensorId, torch.Tensor] = dict(self.ir.constants)
        values.update(self._bound)
        with torch.no_grad():
            for op in self.ir.ops:
                outputs = registry.run(op, [values[t] for t in op.inputs])
                values.update(zip(op.outputs, outputs))
        self._outputs = {tid: values[tid] for tid in self.ir.results}
        self.infer_count += 1

    def export(self, stream: BinaryIO):
        torch.save({
            'format': EXPORT_FORMAT,
            'device': self.device,
            'properties': self.properties,
            'graph': self.ir.to_dict(),
        }, stream)

    def get_property(self, name: str) -> Any:
        return self.properties[name]


class TorchEngine(Engine):
    """Reference engine running static graphs with torch on the host."""

    def __init__(self, devices: Optional[Dict[str, Dict[str, Any]]] = None):
        self.devices = devices if devices is not None else {
            name: dict(props) for name, props in DEFAULT_DEVICE_PROPERTIES.items()}

    @property
    def available_devices(self) -> List[str]:
        return list(self.devices)

    def get_property(self, device: str, name: str) -> Any:
        return self._device(device)[name]

    def _device(self, device: str) -> Dict[str, Any]:
        if device not in self.devices:
            raise ConfigurationError(f"Device {device} is not available, "
                                     f"available devices: {self.available_devices}")
        return self.devices[device]

    def compile(self, ir: IR, device: str, properties: Mapping[str, Any]) -> TorchExecutable:
        self._device(device)
        logger.debug("Compiling graph with %d ops for %s", len(ir.ops), device)
        return TorchExecutable(ir, device, properties)

    def import_model(self, stream: BinaryIO, device: str,
                     properties: Mapping[str, Any]) -> TorchExecutable:
        self._device(device)
        data = torch.load(stream, weights_only=True)
        if not isinstance(data, dict) or data.get('format') != EXPORT_FORMAT:
            raise ConfigurationError("Stream does not contain an exported executable")
        merged = dict(data['properties'])
        merged.update(properties)
        return TorchExecutable(IR.from_dict(data['graph']), device, merged)


# Global engine instance
_global_engine: Optional[Engine] = None


def get_engine() -> Engine:
    """Get the process-wide engine, creating the reference engine on first use."""
    global _global_engine
    if _global_engine is None:
        _global_engine = TorchEngine()
    return _global_engine


def set_engine(engine: Optional[Engine]) -> Optional[Engine]:
    """Install a process-wide engine and return the previous one."""
    global _global_engine
    previous = _global_engine
    _global_engine = engine
    return previous


def shutdown():
    """Close the process-wide engine."""
    global _global_engine
    if _global_engine is not None:
        _global_engine.close()
        _global_engine = None


atexit.register(shutdown)
