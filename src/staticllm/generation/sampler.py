"""Token selection and per-sequence generation state."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence

import torch

from .config import GenerationConfig


class GenerationStatus(Enum):
    RUNNING = "running"
    FINISHED = "finished"  # EOS, stop token or length limit
    STOPPED = "stopped"  # streamer asked to stop
    CANCELLED = "cancelled"  # streamer asked to cancel
    OUT_OF_MEMORY = "out_of_memory"  # KV cache exhausted


@dataclass
class SequenceState:
    """One sequence being generated."""
    prompt_ids: List[int]
    generated_ids: List[int] = field(default_factory=list)
    log_probs: List[float] = field(default_factory=list)
    position: int = 0  # next free KV cache slot
    status: GenerationStatus = GenerationStatus.RUNNING

    @property
    def cumulative_log_prob(self) -> float:
        return float(sum(self.log_probs))

    @property
    def is_running(self) -> bool:
        return self.status == GenerationStatus.RUNNING

    @property
    def last_token(self) -> int:
        return self.generated_ids[-1]

    def append_token(self, token: int, log_prob: float):
        self.generated_ids.append(token)
        self.log_probs.append(log_prob)

    def finish(self):
        self.status = GenerationStatus.FINISHED

    def stop(self):
        if self.is_running:
            self.status = GenerationStatus.STOPPED

    def cancel(self):
        """Cancel and drop the token generated last."""
        if self.generated_ids:
            self.generated_ids.pop()
            self.log_probs.pop()
        self.status = GenerationStatus.CANCELLED

    def set_out_of_memory(self):
        self.status = GenerationStatus.OUT_OF_MEMORY


@dataclass
class SamplerOutput:
    tokens: Dict[int, int] = field(default_factory=dict)  # sequence index -> token
    finished: List[int] = field(default_factory=list)


def _filter_top_k(logits: torch.Tensor, top_k: int) -> torch.Tensor:
    if top_k <= 0 or top_k >= logits.shape[-1]:
        return logits
    threshold = torch.topk(logits, top_k).values[-1]
    return logits.masked_fill(logits < threshold, float("-inf"))


def _filter_top_p(logits: torch.Tensor, top_p: float) -> torch.Tensor:
    if top_p >= 1.0:
        return logits
    sorted_logits, order = torch.sort(logits, descending=True)
    cumulative = torch.softmax(sorted_logits, dim=-1).cumsum(dim=-1)
    # Keep the smallest prefix whose mass reaches top_p
    drop = cumulative - torch.softmax(sorted_logits, dim=-1) >= top_p
    sorted_logits = sorted_logits.masked_fill(drop, float("-inf"))
    return torch.empty_like(logits).scatter_(0, order, sorted_logits)


class Sampler:
    """
    Greedy and multinomial token selection.

    Multinomial draws use a private torch.Generator, so results are
    reproducible for a given seed.
    """

    def __init__(self, seed: int = 0):
        self.generator = torch.Generator()
        self.set_seed(seed)

    def set_seed(self, seed: int):
        self.generator.manual_seed(seed)

    def _stop_ids(self, config: GenerationConfig) -> set:
        ids = set(config.stop_token_ids)
        if config.eos_token_id >= 0:
            ids.add(config.eos_token_id)
        return ids

    def _select(self, logits: torch.Tensor, config: GenerationConfig):
        if config.is_multinomial():
            logits = logits / config.temperature
            logits = _filter_top_p(_filter_top_k(logits, config.top_k), config.top_p)
            log_probs = torch.log_softmax(logits, dim=-1)
            token = int(torch.multinomial(log_probs.exp(), 1, generator=self.generator).item())
        else:
            log_probs = torch.log_softmax(logits, dim=-1)
            token = int(torch.argmax(logits).item())
        return token, float(log_probs[token].item())

    def sample(self,
               sequences: Sequence[SequenceState],
               logits: torch.Tensor,
               config: Optional[GenerationConfig] = None) -> SamplerOutput:
        """
        Pick the next token of every running sequence.

        Args:
            sequences: Sequence states, one per batch row of ``logits``
            logits: [num_sequences, seq_len, vocab]; the last position is used
            config: Decoding parameters

        Returns:
            Chosen tokens and the sequences that finished with them
        """
        config = config or GenerationConfig()
        stop_ids = self._stop_ids(config)
        output = SamplerOutput()
        for index, seq in enumerate(sequences):
            if not seq.is_running:
                continue
            step_logits = logits[index, -1].float().clone()
            if len(seq.generated_ids) < config.min_new_tokens:
                for token in stop_ids:
                    step_logits[token] = float("-inf")

            token, log_prob = self._select(step_logits, config)
            seq.append_token(token, log_prob)
            output.tokens[index] = token

            hit_stop = not config.ignore_eos and token in stop_ids
            max_new = config.get_max_new_tokens(len(seq.prompt_ids))
            if hit_stop or len(seq.generated_ids) >= max_new:
                seq.finish()
                output.finished.append(index)
        return output
