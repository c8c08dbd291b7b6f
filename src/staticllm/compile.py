"""Compilation of LLM graphs into static prefill/generate artifacts."""

import io
import logging
import warnings
from pathlib import Path
from typing import Any, BinaryIO, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import numpy as np
import torch

from .config import PipelineOptions, Phase, ModelQuantization, phase_configs, stateful_config
from .engine import Engine, Executable, get_engine
from .errors import CapacityError, ConfigurationError, GraphShapeError
from .ir import IR, torch_dtype
from .passes.static import (
    KV_CACHE_INPUT,
    KV_CACHE_OUTPUT,
    KVAxesPosition,
    get_kv_axes_pos,
    make_static_variants,
    seq_axis_for,
)
from .probe import probe

logger = logging.getLogger(__name__)

ARTIFACT_FORMAT = "staticllm-artifact/1"

MAX_PROMPT_LEN_PROPERTY = "NPUW_LLM_MAX_PROMPT_LEN"
MIN_RESPONSE_LEN_PROPERTY = "NPUW_LLM_MIN_RESPONSE_LEN"


def _to_bytes(executable: Executable) -> torch.Tensor:
    buffer = io.BytesIO()
    executable.export(buffer)
    return torch.from_numpy(np.frombuffer(buffer.getvalue(), dtype=np.uint8).copy())


def _from_bytes(blob: torch.Tensor) -> io.BytesIO:
    return io.BytesIO(blob.numpy().tobytes())


class StaticLLMArtifact:
    """
    Compiled static LLM: one prefill and one generate executable.

    Exposes the slots ``input_ids``, ``attention_mask``, ``position_ids`` and
    ``logits``. A call with more than one token, or starting at position 0,
    runs prefill; anything else runs one generate step. The KV cache lives in
    buffers owned by the artifact and bound once to both executables.
    """

    def __init__(self,
                 prefill: Executable,
                 generate: Executable,
                 max_prompt_len: int,
                 min_response_len: int,
                 kv_axes: KVAxesPosition = KVAxesPosition(),
                 transposed_inputs: Iterable[str] = (),
                 slice_out: bool = True,
                 properties: Optional[Mapping[str, Any]] = None):
        self.prefill = prefill
        self.generate = generate
        self.max_prompt_len = max_prompt_len
        self.min_response_len = min_response_len
        self.kvcache_total = max_prompt_len + min_response_len
        self.kv_axes = kv_axes
        self.transposed_inputs = tuple(transposed_inputs)
        self.slice_out = slice_out
        self.properties = dict(properties or {})
        self.properties[MAX_PROMPT_LEN_PROPERTY] = max_prompt_len
        self.properties[MIN_RESPONSE_LEN_PROPERTY] = min_response_len

        self.kv_len = 0  # cache entries held by the generate buffers
        self.infer_count = 0
        self._slots: Dict[str, torch.Tensor] = {}
        self._logits: Optional[torch.Tensor] = None
        self._init_buffers()

    def _buffer(self, executable: Executable, name: str) -> torch.Tensor:
        ty = executable.input_type(name)
        return torch.zeros(ty.shape, dtype=torch_dtype(ty.dtype))

    def _init_buffers(self):
        # past input name -> (present output name, seq axis)
        self.kv_pairs: Dict[str, Tuple[str, int]] = {}
        for name in self.generate.input_names:
            if KV_CACHE_INPUT not in name:
                continue
            present = name.replace(KV_CACHE_INPUT, KV_CACHE_OUTPUT)
            if present not in self.generate.output_names or present not in self.prefill.output_names:
                raise GraphShapeError(f"Cache input {name} has no matching output {present}")
            self.kv_pairs[name] = (present, seq_axis_for(name, self.kv_axes, self.transposed_inputs))

        self.prefill_kv = {name: self._buffer(self.prefill, name) for name in self.kv_pairs}
        self.generate_kv = {name: self._buffer(self.generate, name) for name in self.kv_pairs}
        for name in self.kv_pairs:
            self.prefill.set_tensor(name, self.prefill_kv[name])
            self.generate.set_tensor(name, self.generate_kv[name])

        P, C = self.max_prompt_len, self.kvcache_total
        self._prefill_ids = torch.zeros((1, P), dtype=torch.int64)
        self._prefill_pos = torch.zeros((1, P), dtype=torch.int64)
        self._prefill_mask = torch.zeros((1, C), dtype=torch.int64)
        self._generate_mask = torch.zeros((1, C), dtype=torch.int64)

    @property
    def input_names(self) -> List[str]:
        return ["input_ids", "attention_mask", "position_ids"]

    @property
    def output_names(self) -> List[str]:
        return ["logits"]

    def set_tensor(self, name: str, tensor: torch.Tensor):
        if name not in self.input_names:
            raise KeyError(f"Unknown input {name!r}")
        self._slots[name] = tensor

    def get_tensor(self, name: str) -> torch.Tensor:
        if name == "logits":
            if self._logits is None:
                raise KeyError("logits are not available before infer()")
            return self._logits
        return self._slots[name]

    def get_property(self, name: str) -> Any:
        return self.properties[name]

    def infer(self):
        input_ids = self._slots["input_ids"]
        position_ids = self._slots["position_ids"]
        if input_ids.shape[-1] > 1 or int(position_ids.reshape(-1)[0]) == 0:
            self._infer_prefill(input_ids, self._slots["attention_mask"], position_ids)
        else:
            self._infer_generate(input_ids, self._slots["attention_mask"], position_ids)
        self.infer_count += 1

    def _infer_prefill(self, input_ids, attention_mask, position_ids):
        n = input_ids.shape[-1]
        P, C = self.max_prompt_len, self.kvcache_total
        if n > P:
            raise CapacityError(f"Prompt of {n} tokens exceeds the compiled limit of {P}")

        # Left padding: the prompt occupies the last n slots
        pad = P - n
        self._prefill_ids.zero_()
        self._prefill_ids[0, pad:] = input_ids.reshape(-1)
        self._prefill_pos.zero_()
        self._prefill_pos[0, pad:] = position_ids.reshape(-1)
        self._prefill_mask.zero_()
        self._prefill_mask[0, C - n:] = attention_mask.reshape(-1)[-n:]

        self.prefill.set_tensor("input_ids", self._prefill_ids)
        self.prefill.set_tensor("position_ids", self._prefill_pos)
        self.prefill.set_tensor("attention_mask", self._prefill_mask)
        self.prefill.infer()

        logits = self.prefill.get_tensor("logits")
        self._logits = logits[:, -1:, :] if self.slice_out else logits

        keep = min(n, C - 1)
        for name, (present, axis) in self.kv_pairs.items():
            new_kv = self.prefill.get_tensor(present).narrow(axis, P - keep, keep)
            buffer = self.generate_kv[name]
            buffer.zero_()
            buffer.narrow(axis, 0, keep).copy_(new_kv)
        self.kv_len = keep

    def _infer_generate(self, input_ids, attention_mask, position_ids):
        C = self.kvcache_total
        mask = attention_mask.reshape(-1)
        past = min(mask.shape[0] - 1, C - 1)
        self._generate_mask.zero_()
        self._generate_mask[0, :past] = mask[:past]
        self._generate_mask[0, C - 1] = mask[-1]

        self.generate.set_tensor("input_ids", input_ids)
        self.generate.set_tensor("position_ids", position_ids)
        self.generate.set_tensor("attention_mask", self._generate_mask)
        self.generate.infer()
        self._logits = self.generate.get_tensor("logits")

        if self.kv_len < C - 1:
            for name, (present, axis) in self.kv_pairs.items():
                self.generate_kv[name].narrow(axis, self.kv_len, 1).copy_(
                    self.generate.get_tensor(present))
            self.kv_len += 1

    def validate(self) -> List[str]:
        """Validate the compiled artifact."""
        issues = []
        if not self.kv_pairs:
            issues.append("Model has no KV cache inputs")
        for name in self.input_names:
            if name not in self.prefill.input_names or name not in self.generate.input_names:
                issues.append(f"Model has no {name} input")
        return issues

    def export(self, stream: BinaryIO):
        torch.save({
            'format': ARTIFACT_FORMAT,
            'kv_axes': [self.kv_axes.batch, self.kv_axes.seq_len],
            'transposed_inputs': list(self.transposed_inputs),
            'slice_out': self.slice_out,
            'properties': self.properties,
            'prefill': _to_bytes(self.prefill),
            'generate': _to_bytes(self.generate),
        }, stream)

    @classmethod
    def import_from(cls, stream: BinaryIO, engine: Engine, device: str,
                    properties: Optional[Mapping[str, Any]] = None) -> "StaticLLMArtifact":
        """Restore an exported artifact; capacities come from its metadata."""
        data = torch.load(stream, weights_only=True)
        if not isinstance(data, dict) or data.get('format') != ARTIFACT_FORMAT:
            raise ConfigurationError("Blob does not contain a static LLM artifact")
        properties = dict(properties or {})
        meta = data['properties']
        return cls(
            prefill=engine.import_model(_from_bytes(data['prefill']), device, properties),
            generate=engine.import_model(_from_bytes(data['generate']), device, properties),
            max_prompt_len=int(meta[MAX_PROMPT_LEN_PROPERTY]),
            min_response_len=int(meta[MIN_RESPONSE_LEN_PROPERTY]),
            kv_axes=KVAxesPosition(*data['kv_axes']),
            transposed_inputs=data['transposed_inputs'],
            slice_out=bool(data['slice_out']),
            properties={**meta, **properties},
        )


class Compiler:
    """
    Compiles a dynamic LLM graph into a StaticLLMArtifact.
    """

    def __init__(self, engine: Optional[Engine] = None, device: str = "NPU"):
        """
        Initialize compiler.

        Args:
            engine: Device engine (default: the process-wide engine)
            device: Target device
        """
        self.engine = engine or get_engine()
        self.device = device

    def compile(self, ir: IR, options: PipelineOptions,
                env: Optional[Mapping[str, str]] = None) -> StaticLLMArtifact:
        """
        Compile a graph.

        Args:
            ir: Dynamic-shape LLM graph; left untouched
            options: Pipeline options
            env: Environment for config switches (default: os.environ)

        Returns:
            Compiled artifact
        """
        desc = probe(self.engine, self.device)
        quantization = ModelQuantization.from_ir(ir)
        kv_axes = get_kv_axes_pos(ir)
        configs = phase_configs(options, desc, quantization, kv_axes, env)

        variants = make_static_variants(
            ir, options.max_prompt_len, options.kvcache_total, kv_axes,
            optimize_v_tensors=options.optimize_v_tensors,
            kvcache_fp16=options.kvcache_fp16)
        if options.optimize_v_tensors and not variants.transposed_inputs:
            warnings.warn("Value tensor layout optimization did not match any cache input")

        artifact = StaticLLMArtifact(
            prefill=self.engine.compile(variants.prefill, self.device,
                                        configs[Phase.PREFILL].to_properties()),
            generate=self.engine.compile(variants.generate, self.device,
                                         configs[Phase.GENERATE].to_properties()),
            max_prompt_len=options.max_prompt_len,
            min_response_len=options.min_response_len,
            kv_axes=kv_axes,
            transposed_inputs=variants.transposed_inputs,
            slice_out=configs[Phase.PREFILL].slice_out is not False,
            properties=stateful_config(options, kv_axes).to_properties(),
        )
        for issue in artifact.validate():
            warnings.warn(issue)
        logger.info("Compiled static LLM for %s: max prompt %d, cache capacity %d",
                    self.device, options.max_prompt_len, options.kvcache_total)
        return artifact

    def import_model(self, stream: BinaryIO,
                     properties: Optional[Mapping[str, Any]] = None) -> StaticLLMArtifact:
        artifact = StaticLLMArtifact.import_from(stream, self.engine, self.device, properties)
        logger.info("Imported static LLM for %s: max prompt %d, cache capacity %d",
                    self.device, artifact.max_prompt_len, artifact.kvcache_total)
        return artifact


def _options(config) -> PipelineOptions:
    if isinstance(config, PipelineOptions):
        return config
    return PipelineOptions.from_properties(config)


def compile(graph_or_path: Union[IR, str, Path],
            device: str = "NPU",
            config: Union[PipelineOptions, Mapping[str, Any], None] = None,
            engine: Optional[Engine] = None) -> StaticLLMArtifact:
    """
    Main compilation interface.

    Args:
        graph_or_path: Graph, or path to a graph saved with IR.save
        device: Target device
        config: PipelineOptions or user properties
        engine: Device engine (default: the process-wide engine)

    Returns:
        Compiled artifact
    """
    ir = graph_or_path if isinstance(graph_or_path, IR) else IR.load(graph_or_path)
    return Compiler(engine, device).compile(ir, _options(config))


def import_model(stream: BinaryIO,
                 device: str = "NPU",
                 config: Union[PipelineOptions, Mapping[str, Any], None] = None,
                 engine: Optional[Engine] = None) -> StaticLLMArtifact:
    """Import an artifact previously written with StaticLLMArtifact.export."""
    return Compiler(engine, device).import_model(stream, _options(config).extra)
