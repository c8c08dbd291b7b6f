"""Generation parameters."""

import sys
from dataclasses import dataclass, field
from typing import Optional, Set

from ..errors import ConfigurationError


@dataclass
class GenerationConfig:
    """Decoding parameters for one generate call."""
    max_new_tokens: Optional[int] = None
    max_length: Optional[int] = None  # prompt + generated
    min_new_tokens: int = 0
    eos_token_id: int = -1
    stop_token_ids: Set[int] = field(default_factory=set)
    ignore_eos: bool = False

    # Multinomial sampling
    do_sample: bool = False
    temperature: float = 1.0
    top_k: int = 0  # 0 disables top-k filtering
    top_p: float = 1.0
    rng_seed: int = 0

    # Not supported by the static pipeline, checked at generate time
    num_beams: int = 1
    num_return_sequences: int = 1

    apply_chat_template: bool = True

    def set_eos_token_id(self, eos_token_id: int):
        self.eos_token_id = eos_token_id
        if eos_token_id >= 0:
            self.stop_token_ids.add(eos_token_id)

    def get_max_new_tokens(self, prompt_len: int = 0) -> int:
        if self.max_new_tokens is not None:
            return self.max_new_tokens
        if self.max_length is not None:
            return max(self.max_length - prompt_len, 0)
        return sys.maxsize

    def is_greedy_decoding(self) -> bool:
        return not self.do_sample and self.num_beams == 1

    def is_beam_search(self) -> bool:
        return self.num_beams > 1

    def is_multinomial(self) -> bool:
        return self.do_sample and self.num_beams == 1

    def validate(self):
        """
        Check parameter consistency.

        Raises:
            ConfigurationError: for inconsistent or out-of-range values
        """
        if self.max_new_tokens is not None and self.max_new_tokens < 1:
            raise ConfigurationError("max_new_tokens must be at least 1")
        if self.max_length is not None and self.max_length < 1:
            raise ConfigurationError("max_length must be at least 1")
        if self.min_new_tokens < 0:
            raise ConfigurationError("min_new_tokens cannot be negative")
        if self.num_beams < 1 or self.num_return_sequences < 1:
            raise ConfigurationError("num_beams and num_return_sequences must be at least 1")
        if self.do_sample:
            if self.temperature <= 0:
                raise ConfigurationError("temperature must be positive when sampling")
            if not 0 < self.top_p <= 1:
                raise ConfigurationError("top_p must be in (0, 1]")
            if self.top_k < 0:
                raise ConfigurationError("top_k cannot be negative")
        has_limit = self.max_new_tokens is not None or self.max_length is not None
        if self.ignore_eos and not has_limit:
            raise ConfigurationError(
                "ignore_eos is set, so max_new_tokens or max_length must be defined")
        if self.eos_token_id < 0 and not self.stop_token_ids and not has_limit:
            raise ConfigurationError(
                "Either eos_token_id, stop_token_ids, max_new_tokens or max_length must be defined")
