"""
Autoregressive generation over a compiled static LLM.
"""

from .config import GenerationConfig
from .pipeline import (
    DecodedResults,
    EncodedResults,
    GenerationEngine,
    PerfMetrics,
    StaticLLMPipeline,
    initialize_position_ids,
    load_graph,
)
from .sampler import GenerationStatus, Sampler, SamplerOutput, SequenceState
from .streamer import (
    NullStreamer,
    StreamerBase,
    StreamingStatus,
    TextCallbackStreamer,
    TokenCallbackStreamer,
    create_streamer,
)

__all__ = [
    'GenerationConfig',
    'DecodedResults',
    'EncodedResults',
    'GenerationEngine',
    'PerfMetrics',
    'StaticLLMPipeline',
    'initialize_position_ids',
    'load_graph',
    'GenerationStatus',
    'Sampler',
    'SamplerOutput',
    'SequenceState',
    'NullStreamer',
    'StreamerBase',
    'StreamingStatus',
    'TextCallbackStreamer',
    'TokenCallbackStreamer',
    'create_streamer',
]
