"""
StaticLLM - Autoregressive LLM serving on static-shape accelerators.

Rewrites dynamic LLM graphs into fixed-shape prefill/generate variants,
derives device configuration from hardware capabilities and drives
token-by-token decoding under fixed KV cache capacity.
"""

__version__ = "0.1.0"

# Core imports
from .errors import (
    CapacityError,
    ConfigurationError,
    GraphShapeError,
    PreconditionError,
    StaticLLMError,
)
from .ir import IR, Op, TensorTy, print_ir
from .probe import probe, print_hardware_info, HardwareDescriptor
from .capture import capture, ModelTracer
from .models import CausalLM, CausalLMConfig
from .config import (
    CacheMode,
    GenerateHint,
    ModelQuantization,
    Phase,
    PipelineConfig,
    PipelineKind,
    PipelineOptions,
    derive_config,
)
from .engine import Engine, Executable, TorchEngine, get_engine, set_engine, shutdown
from .compile import compile, import_model, Compiler, StaticLLMArtifact

# Graph passes
from .passes import (
    KVAxesPosition,
    RewriteResult,
    add_slices_to_kvcache_inputs,
    cvt_kvcache_to_fp16,
    get_kv_axes_pos,
    make_static_variants,
    optimize_value_tensors,
    redirect_new_kv_to_output,
    reshape_to_static,
)

# Kernel management
from .kernels.registry import KernelRegistry, KernelSpec, get_registry

# Generation
from .generation import (
    DecodedResults,
    EncodedResults,
    GenerationConfig,
    GenerationEngine,
    GenerationStatus,
    Sampler,
    SequenceState,
    StaticLLMPipeline,
    StreamerBase,
    StreamingStatus,
)

__all__ = [
    # Errors
    'StaticLLMError',
    'ConfigurationError',
    'CapacityError',
    'PreconditionError',
    'GraphShapeError',

    # Core functions
    'probe',
    'capture',
    'compile',
    'import_model',
    'derive_config',
    'get_engine',
    'set_engine',
    'shutdown',
    'print_ir',
    'print_hardware_info',

    # Graph passes
    'optimize_value_tensors',
    'cvt_kvcache_to_fp16',
    'get_kv_axes_pos',
    'reshape_to_static',
    'redirect_new_kv_to_output',
    'add_slices_to_kvcache_inputs',
    'make_static_variants',

    # Classes
    'IR',
    'Op',
    'TensorTy',
    'HardwareDescriptor',
    'ModelTracer',
    'CausalLM',
    'CausalLMConfig',
    'CacheMode',
    'GenerateHint',
    'ModelQuantization',
    'Phase',
    'PipelineConfig',
    'PipelineKind',
    'PipelineOptions',
    'Engine',
    'Executable',
    'TorchEngine',
    'Compiler',
    'StaticLLMArtifact',
    'KVAxesPosition',
    'RewriteResult',
    'KernelRegistry',
    'KernelSpec',
    'get_registry',
    'DecodedResults',
    'EncodedResults',
    'GenerationConfig',
    'GenerationEngine',
    'GenerationStatus',
    'Sampler',
    'SequenceState',
    'StaticLLMPipeline',
    'StreamerBase',
    'StreamingStatus',

    # Version
    '__version__',
]
