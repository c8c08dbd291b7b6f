"""Exception taxonomy for static-shape LLM compilation and generation."""


class StaticLLMError(Exception):
    """Base class for all staticllm errors."""


class ConfigurationError(StaticLLMError, ValueError):
    """Malformed option, missing blob, unsupported hint or pipeline kind."""


class CapacityError(StaticLLMError, RuntimeError):
    """A request does not fit into the compiled prompt or cache capacity."""


class PreconditionError(StaticLLMError, AssertionError):
    """Unsupported batch size, decoding strategy or number of sequences."""


class GraphShapeError(StaticLLMError, ValueError):
    """The graph cannot be rewritten or reshaped; the model is incompatible."""
