"""
Pipeline configuration: user options and per-phase device configuration.

Device configuration is derived in layers, later layers overriding earlier
ones: baseline, compiler-side quantization, common additions, then the
prefill or generate specific options.
"""

import os
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

from .errors import ConfigurationError

DISABLE_NPU_L0_ENV = "STATICLLM_DISABLE_NPU_L0"

COMPILATION_MODE_PARAMS = (
    "compute-layers-with-higher-precision=Sqrt,Power,ReduceMean,Add_RMSNorm")

DEFAULT_MAX_PROMPT_LEN = 1024
DEFAULT_MIN_RESPONSE_LEN = 128


class GenerateHint(Enum):
    FAST_COMPILE = "FAST_COMPILE"
    BEST_PERF = "BEST_PERF"

    @classmethod
    def from_string(cls, value: Union[str, "GenerateHint"]) -> "GenerateHint":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).upper())
        except ValueError:
            raise ConfigurationError(
                f"Unsupported generate hint {value!r}, "
                f"expected one of {[h.value for h in cls]}") from None


class CacheMode(Enum):
    OPTIMIZE_SPEED = "OPTIMIZE_SPEED"
    OPTIMIZE_SIZE = "OPTIMIZE_SIZE"  # weightless cache


class PipelineKind(Enum):
    STATEFUL = "STATEFUL"


class Phase(Enum):
    PREFILL = "prefill"
    GENERATE = "generate"


def _opt(key: str, default=None):
    return field(default=default, metadata={'key': key})


def _parse_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.upper() in ("YES", "TRUE", "1"):
        return True
    if isinstance(value, str) and value.upper() in ("NO", "FALSE", "0"):
        return False
    raise ConfigurationError(f"{key}: expected a boolean (YES/NO), got {value!r}")


def _parse_uint(key: str, value: Any) -> int:
    # bool is an int subclass but never a valid count
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigurationError(f"{key}: expected an integer, got {value!r}")
    if value < 0:
        raise ConfigurationError(f"{key} cannot be negative")
    return value


@dataclass(frozen=True)
class PipelineConfig:
    """
    Typed device option set.

    Every field maps to one device property key; ``None`` means unset.
    Unknown keys are carried verbatim in ``extra``.
    """
    compilation_mode_params: Optional[str] = _opt("NPU_COMPILATION_MODE_PARAMS")
    devices: Optional[str] = _opt("NPUW_DEVICES")
    use_npuw: Optional[bool] = _opt("NPU_USE_NPUW")
    fold: Optional[bool] = _opt("NPUW_FOLD")
    dcoff_type: Optional[str] = _opt("NPUW_DCOFF_TYPE")
    dcoff_scale: Optional[bool] = _opt("NPUW_DCOFF_SCALE")
    weights_bank: Optional[str] = _opt("NPUW_WEIGHTS_BANK")
    weights_bank_alloc: Optional[str] = _opt("NPUW_WEIGHTS_BANK_ALLOC")
    slice_out: Optional[bool] = _opt("NPUW_SLICE_OUT")
    funcall_async: Optional[bool] = _opt("NPUW_FUNCALL_ASYNC")
    funcall_for_all: Optional[bool] = _opt("NPUW_FUNCALL_FOR_ALL")
    dq: Optional[bool] = _opt("NPUW_DQ")
    dq_full: Optional[bool] = _opt("NPUW_DQ_FULL")
    compiler_dq: Optional[bool] = _opt("NPU_COMPILER_DYNAMIC_QUANTIZATION")
    pmm: Optional[bool] = _opt("NPUW_PMM")
    dpu_groups: Optional[int] = _opt("NPU_DPU_GROUPS")
    online_pipeline: Optional[str] = _opt("NPUW_ONLINE_PIPELINE")
    unfold_ireqs: Optional[bool] = _opt("NPUW_UNFOLD_IREQS")
    llm: Optional[bool] = _opt("NPUW_LLM")
    llm_batch_dim: Optional[int] = _opt("NPUW_LLM_BATCH_DIM")
    llm_seq_len_dim: Optional[int] = _opt("NPUW_LLM_SEQ_LEN_DIM")
    llm_max_prompt_len: Optional[int] = _opt("NPUW_LLM_MAX_PROMPT_LEN")
    llm_min_response_len: Optional[int] = _opt("NPUW_LLM_MIN_RESPONSE_LEN")
    llm_generate_hint: Optional[str] = _opt("NPUW_LLM_GENERATE_HINT")
    cache_dir: Optional[str] = _opt("NPUW_CACHE_DIR")
    cache_mode: Optional[str] = _opt("CACHE_MODE")
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def _options(cls):
        return [f for f in fields(cls) if 'key' in f.metadata]

    def merged_with(self, other: Optional["PipelineConfig"]) -> "PipelineConfig":
        """Overlay ``other`` on top of this config, last writer wins."""
        if other is None:
            return self
        updates = {f.name: getattr(other, f.name) for f in self._options()
                   if getattr(other, f.name) is not None}
        return replace(self, extra={**self.extra, **other.extra}, **updates)

    def without(self, *keys: str) -> "PipelineConfig":
        """Unset options by device key or field name."""
        updates = {f.name: None for f in self._options()
                   if f.metadata['key'] in keys or f.name in keys}
        extra = {k: v for k, v in self.extra.items() if k not in keys}
        return replace(self, extra=extra, **updates)

    def to_properties(self) -> Dict[str, Any]:
        """Flatten to device property keys; booleans become YES/NO."""
        props: Dict[str, Any] = {}
        for f in self._options():
            value = getattr(self, f.name)
            if value is None:
                continue
            props[f.metadata['key']] = ("YES" if value else "NO") if isinstance(value, bool) else value
        props.update(self.extra)
        return props

    @classmethod
    def from_properties(cls, props: Mapping[str, Any]) -> "PipelineConfig":
        by_key = {f.metadata['key']: f for f in cls._options()}
        values: Dict[str, Any] = {}
        extra: Dict[str, Any] = {}
        for key, value in props.items():
            f = by_key.get(key)
            if f is None:
                extra[key] = value
            elif f.type == Optional[bool]:
                values[f.name] = _parse_bool(key, value)
            elif f.type == Optional[int]:
                if isinstance(value, str) and value.lstrip("-").isdigit():
                    value = int(value)
                values[f.name] = _parse_uint(key, value)
            else:
                values[f.name] = str(value)
        return cls(extra=extra, **values)

    def to_dict(self) -> Dict[str, Any]:
        return self.to_properties()


@dataclass(frozen=True)
class ModelQuantization:
    """Weight compression metadata of a model."""
    group_size: Optional[int] = None

    @property
    def is_channel_wise(self) -> bool:
        return self.group_size == -1

    @classmethod
    def from_ir(cls, ir) -> "ModelQuantization":
        from .passes.rewrite import CW_GROUP_SIZE_PATH

        group_size = ir.get_rt_info(CW_GROUP_SIZE_PATH)
        return cls(None if group_size is None else int(group_size))


def baseline_config(desc=None) -> PipelineConfig:
    config = PipelineConfig(
        compilation_mode_params=COMPILATION_MODE_PARAMS,
        devices="NPU",
        use_npuw=True,
        fold=True,
        dcoff_type="f16",
        dcoff_scale=True,
        weights_bank="shared",
        slice_out=True,
        funcall_async=True,
    )
    if desc is not None and desc.compiler_dq:
        # Decompression offload conflicts with compiler-side quantization
        config = config.merged_with(PipelineConfig(dq=True, dq_full=False, compiler_dq=True))
        config = config.without("NPUW_DCOFF_TYPE", "NPUW_DCOFF_SCALE")
    return config


def common_config(desc=None, env: Optional[Mapping[str, str]] = None) -> PipelineConfig:
    env = os.environ if env is None else env
    config = baseline_config(desc)
    if env.get(DISABLE_NPU_L0_ENV, "").strip() == "1":
        return config.merged_with(PipelineConfig(weights_bank_alloc="CPU"))
    return config.merged_with(PipelineConfig(funcall_for_all=True))


def prefill_config(desc=None, quantization: Optional[ModelQuantization] = None,
                   env: Optional[Mapping[str, str]] = None) -> PipelineConfig:
    config = common_config(desc, env)
    if desc is not None and desc.arch == "4000" and desc.max_tiles != -1:
        config = config.merged_with(PipelineConfig(dpu_groups=desc.max_tiles))
    if desc is None or not desc.compiler_dq:
        if quantization is not None and quantization.is_channel_wise:
            config = config.merged_with(PipelineConfig(dq=True))
        else:
            config = config.merged_with(PipelineConfig(pmm=False))
    return config


def generate_config(desc=None, hint: GenerateHint = GenerateHint.FAST_COMPILE,
                    env: Optional[Mapping[str, str]] = None) -> PipelineConfig:
    config = common_config(desc, env)
    if hint == GenerateHint.BEST_PERF:
        config = config.merged_with(PipelineConfig(online_pipeline="NONE"))
    if desc is not None and desc.arch == "4000":
        config = config.merged_with(PipelineConfig(dpu_groups=4))
    if hint == GenerateHint.FAST_COMPILE:
        config = config.merged_with(PipelineConfig(unfold_ireqs=True))
    if desc is None or not desc.compiler_dq:
        config = config.merged_with(PipelineConfig(dq=True))
    return config


def derive_config(desc, quantization: Optional[ModelQuantization], phase: Phase,
                  hint: GenerateHint = GenerateHint.FAST_COMPILE,
                  env: Optional[Mapping[str, str]] = None) -> PipelineConfig:
    """
    Derive the device configuration for one pipeline phase.

    Args:
        desc: HardwareDescriptor, or None if the device could not be probed
        quantization: Weight compression metadata of the model
        phase: Phase.PREFILL or Phase.GENERATE
        hint: Generate-phase compile/performance trade-off
        env: Environment to read switches from (default: os.environ)

    Returns:
        PipelineConfig for the phase
    """
    if phase == Phase.PREFILL:
        return prefill_config(desc, quantization, env)
    return generate_config(desc, hint, env)


def _phase_config(key: str, value: Any) -> Optional[PipelineConfig]:
    if value is None or isinstance(value, PipelineConfig):
        return value
    if isinstance(value, Mapping):
        return PipelineConfig.from_properties(value)
    raise ConfigurationError(f"{key}: expected a mapping of device options, got {type(value).__name__}")


@dataclass
class PipelineOptions:
    """User-facing pipeline options."""
    max_prompt_len: int = DEFAULT_MAX_PROMPT_LEN
    min_response_len: int = DEFAULT_MIN_RESPONSE_LEN
    generate_hint: GenerateHint = GenerateHint.FAST_COMPILE
    blob_path: Optional[Path] = None
    export_blob: bool = False
    cache_mode: Optional[CacheMode] = None
    cache_dir: Optional[str] = None
    pipeline: PipelineKind = PipelineKind.STATEFUL
    prefill_config: Optional[PipelineConfig] = None  # replaces derived defaults
    generate_config: Optional[PipelineConfig] = None
    prefill_config_additions: Optional[PipelineConfig] = None  # merged on top
    generate_config_additions: Optional[PipelineConfig] = None
    optimize_v_tensors: bool = True
    kvcache_fp16: bool = True
    extra: Dict[str, Any] = field(default_factory=dict)  # device passthrough

    @property
    def kvcache_total(self) -> int:
        return self.max_prompt_len + self.min_response_len

    @classmethod
    def from_properties(cls, props: Optional[Mapping[str, Any]] = None) -> "PipelineOptions":
        """
        Parse user properties.

        Raises:
            ConfigurationError: on malformed or out-of-range values
        """
        props = dict(props or {})
        options = cls()

        def pop(key, parse):
            if key in props:
                return parse(props.pop(key))
            return None

        value = pop("MAX_PROMPT_LEN", lambda v: _parse_uint("MAX_PROMPT_LEN", v))
        if value is not None:
            options.max_prompt_len = value
        value = pop("MIN_RESPONSE_LEN", lambda v: _parse_uint("MIN_RESPONSE_LEN", v))
        if value is not None:
            options.min_response_len = value
        if options.max_prompt_len == 0:
            raise ConfigurationError("MAX_PROMPT_LEN must be positive")

        value = pop("GENERATE_HINT", GenerateHint.from_string)
        if value is not None:
            options.generate_hint = value

        blob_path = props.pop("BLOB_PATH", None)
        if blob_path:
            options.blob_path = Path(blob_path)
        value = pop("EXPORT_BLOB", lambda v: _parse_bool("EXPORT_BLOB", v))
        if value is not None:
            options.export_blob = value

        value = pop("CACHE_MODE", lambda v: _enum(CacheMode, "CACHE_MODE", v))
        if value is not None:
            options.cache_mode = value
        value = pop("CACHE_DIR", str)
        if value:
            options.cache_dir = value

        value = pop("STATIC_PIPELINE", lambda v: _enum(PipelineKind, "STATIC_PIPELINE", v))
        if value is not None:
            options.pipeline = value

        options.prefill_config = _phase_config("PREFILL_CONFIG", props.pop("PREFILL_CONFIG", None))
        options.generate_config = _phase_config("GENERATE_CONFIG", props.pop("GENERATE_CONFIG", None))
        options.prefill_config_additions = _phase_config(
            "++PREFILL_CONFIG", props.pop("++PREFILL_CONFIG", None))
        options.generate_config_additions = _phase_config(
            "++GENERATE_CONFIG", props.pop("++GENERATE_CONFIG", None))

        value = pop("OPTIMIZE_V_TENSORS", lambda v: _parse_bool("OPTIMIZE_V_TENSORS", v))
        if value is not None:
            options.optimize_v_tensors = value
        value = pop("KVCACHE_FP16", lambda v: _parse_bool("KVCACHE_FP16", v))
        if value is not None:
            options.kvcache_fp16 = value

        options.extra = props
        return options


def _enum(enum_cls, key: str, value: Any):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).upper())
    except ValueError:
        raise ConfigurationError(
            f"Unsupported {key} {value!r}, expected one of "
            f"{[e.value for e in enum_cls]}") from None


def stateful_config(options: PipelineOptions, kv_axes) -> PipelineConfig:
    """
    Pipeline-wide device options for the static LLM mode.

    Capacity, axes and hint are rehomed to their device keys; device options
    the user passed explicitly take precedence over these defaults.
    """
    defaults = PipelineConfig(
        use_npuw=True,
        llm=True,
        llm_batch_dim=kv_axes.batch,
        llm_seq_len_dim=kv_axes.seq_len,
        llm_max_prompt_len=options.max_prompt_len,
        llm_min_response_len=options.min_response_len,
        llm_generate_hint=options.generate_hint.value,
        cache_dir=options.cache_dir,
        cache_mode=options.cache_mode.value if options.cache_mode else None,
    )
    return defaults.merged_with(PipelineConfig.from_properties(options.extra))


def phase_configs(options: PipelineOptions, desc, quantization: ModelQuantization,
                  kv_axes, env: Optional[Mapping[str, str]] = None) -> Dict[Phase, PipelineConfig]:
    """Final prefill and generate configs: phase defaults, pipeline options, user additions."""
    pipeline = stateful_config(options, kv_axes)
    prefill = options.prefill_config or derive_config(
        desc, quantization, Phase.PREFILL, options.generate_hint, env)
    generate = options.generate_config or derive_config(
        desc, quantization, Phase.GENERATE, options.generate_hint, env)
    return {
        Phase.PREFILL: prefill.merged_with(pipeline).merged_with(options.prefill_config_additions),
        Phase.GENERATE: generate.merged_with(pipeline).merged_with(options.generate_config_additions),
    }
