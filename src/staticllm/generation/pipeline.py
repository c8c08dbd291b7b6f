"""Prefill and decode loop over a static LLM artifact, and the user-facing pipeline."""

import dataclasses
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import numpy as np
import torch
import torch.nn as nn

from ..compile import MAX_PROMPT_LEN_PROPERTY, MIN_RESPONSE_LEN_PROPERTY, Compiler
from ..config import PipelineOptions
from ..errors import CapacityError, ConfigurationError, PreconditionError
from ..ir import IR
from .config import GenerationConfig
from .sampler import GenerationStatus, Sampler, SequenceState
from .streamer import StreamerLike, StreamingStatus, create_streamer

logger = logging.getLogger(__name__)

MODEL_FILE = "model.graph"
BLOB_FILE = "model.blob"


def _ms(seconds: float) -> float:
    return seconds * 1000.0


@dataclass
class PerfMetrics:
    """Timing of one generate call, in milliseconds."""
    load_time: float = 0.0
    num_input_tokens: int = 0
    num_generated_tokens: int = 0
    generate_duration: float = 0.0
    tokenization_duration: float = 0.0
    detokenization_duration: float = 0.0
    ttft: float = 0.0  # time to first token
    token_times: List[float] = field(default_factory=list)  # since generate start

    @property
    def tpot(self) -> float:
        """Mean time per output token after the first."""
        if len(self.token_times) < 2:
            return 0.0
        return (self.token_times[-1] - self.token_times[0]) / (len(self.token_times) - 1)

    @property
    def throughput(self) -> float:
        """Generated tokens per second."""
        return 1000.0 / self.tpot if self.tpot > 0 else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'load_time': self.load_time,
            'num_input_tokens': self.num_input_tokens,
            'num_generated_tokens': self.num_generated_tokens,
            'generate_duration': self.generate_duration,
            'tokenization_duration': self.tokenization_duration,
            'detokenization_duration': self.detokenization_duration,
            'ttft': self.ttft,
            'tpot': self.tpot,
            'throughput': self.throughput,
        }


@dataclass
class EncodedResults:
    tokens: List[List[int]]
    scores: List[float]
    status: GenerationStatus
    perf_metrics: PerfMetrics = field(default_factory=PerfMetrics)


@dataclass
class DecodedResults:
    texts: List[str]
    scores: List[float]
    status: GenerationStatus
    perf_metrics: PerfMetrics = field(default_factory=PerfMetrics)

    def __str__(self) -> str:
        return self.texts[0] if len(self.texts) == 1 else "\n".join(self.texts)


def as_input_ids(inputs) -> torch.Tensor:
    """Token ids as an int64 [batch, seq] tensor."""
    if isinstance(inputs, torch.Tensor):
        ids = inputs
    else:
        ids = torch.from_numpy(np.asarray(inputs, dtype=np.int64))
    ids = ids.to(torch.int64)
    if ids.dim() == 1:
        ids = ids.unsqueeze(0)
    if ids.dim() != 2:
        raise PreconditionError(f"Token ids must be 1D or 2D, got shape {tuple(ids.shape)}")
    return ids


def initialize_position_ids(attention_mask: torch.Tensor, start: int = 0) -> torch.Tensor:
    """Position of every token counting only attended ones; padding gets ``start``."""
    positions = attention_mask.to(torch.int64).cumsum(dim=-1) - 1
    return positions.clamp(min=0) + start


class GenerationEngine:
    """
    Runs prefill and decode steps for a single sequence.

    The single-token id and position buffers are bound to the artifact once
    per call and updated in place every step; the mask is a growing view of
    one buffer sized to the cache capacity. All three stay valid until the
    next call.
    """

    def __init__(self, artifact, sampler: Optional[Sampler] = None):
        self.artifact = artifact
        self.max_prompt_len = int(artifact.get_property(MAX_PROMPT_LEN_PROPERTY))
        self.kvcache_total = self.max_prompt_len + int(artifact.get_property(MIN_RESPONSE_LEN_PROPERTY))
        self.sampler = sampler or Sampler()

        self._input_ids = torch.zeros((1, 1), dtype=torch.int64)
        self._position_ids = torch.zeros((1, 1), dtype=torch.int64)
        self._attention_mask = torch.ones((1, self.kvcache_total), dtype=torch.int64)

    def _stream(self, streamer, state: SequenceState) -> StreamingStatus:
        status = streamer.write(state.last_token)
        if status == StreamingStatus.CANCEL:
            state.cancel()
        elif status == StreamingStatus.STOP:
            state.stop()
        return status

    def generate(self,
                 input_ids,
                 attention_mask: Optional[torch.Tensor] = None,
                 config: Optional[GenerationConfig] = None,
                 streamer: StreamerLike = None,
                 tokenizer=None) -> EncodedResults:
        """
        Generate tokens for one prompt.

        Args:
            input_ids: Prompt token ids, [1, seq] or [seq]
            attention_mask: [1, seq] mask, all ones if None
            config: Decoding parameters
            streamer: StreamerBase or callable receiving each new token
            tokenizer: Used to decode text for callable streamers

        Returns:
            EncodedResults with the generated tokens and their cumulative log-probability

        Raises:
            PreconditionError: batch size other than 1 or unsupported decoding
            CapacityError: prompt longer than the compiled maximum
        """
        start = time.perf_counter()
        input_ids = as_input_ids(input_ids)
        if input_ids.shape[0] != 1:
            raise PreconditionError("Currently only batch size=1 is supported")
        config = config or GenerationConfig()
        config.validate()
        if not (config.is_greedy_decoding() or config.is_multinomial()):
            raise PreconditionError("Currently only greedy and multinomial decoding are supported")
        if config.num_return_sequences != 1:
            raise PreconditionError("Currently only num_return_sequences equal to 1 is supported")

        prompt_len = input_ids.shape[1]
        if prompt_len > self.max_prompt_len:
            raise CapacityError(
                f"Static LLM pipeline may only process prompts up to {self.max_prompt_len} "
                f"tokens, got {prompt_len}. Set the MAX_PROMPT_LEN option to increase the limit.")

        streamer = create_streamer(streamer, tokenizer)
        if attention_mask is None:
            attention_mask = torch.ones_like(input_ids)
        attention_mask = as_input_ids(attention_mask)
        position_ids = initialize_position_ids(attention_mask)
        metrics = PerfMetrics(num_input_tokens=prompt_len)

        state = SequenceState(prompt_ids=input_ids[0].tolist(), position=prompt_len)
        try:
            # Prefill
            self.artifact.set_tensor("input_ids", input_ids)
            self.artifact.set_tensor("attention_mask", attention_mask)
            self.artifact.set_tensor("position_ids", position_ids)
            self.artifact.infer()

            logits = self.artifact.get_tensor("logits")
            if logits.shape[1] > 1:
                # Prefill returned the whole padded window: keep the prompt rows
                logits = logits[:, -prompt_len:, :]
            self.sampler.sample([state], logits, config)
            metrics.token_times.append(_ms(time.perf_counter() - start))
            self._stream(streamer, state)

            # Decode
            self._attention_mask.fill_(1)
            self._attention_mask[0, :prompt_len] = attention_mask[0]
            position = prompt_len - 1
            self.artifact.set_tensor("input_ids", self._input_ids)
            self.artifact.set_tensor("position_ids", self._position_ids)
            while state.is_running:
                if position + 1 == self.kvcache_total:
                    state.set_out_of_memory()
                    break
                self._input_ids[0, 0] = state.last_token
                position += 1
                self._position_ids[0, 0] = position
                self.artifact.set_tensor("attention_mask",
                                         self._attention_mask.narrow(1, 0, position + 1))
                self.artifact.infer()
                state.position = position + 1

                self.sampler.sample([state], self.artifact.get_tensor("logits"), config)
                metrics.token_times.append(_ms(time.perf_counter() - start))
                self._stream(streamer, state)
        finally:
            streamer.end()

        metrics.num_generated_tokens = len(state.generated_ids)
        metrics.ttft = metrics.token_times[0]
        metrics.generate_duration = _ms(time.perf_counter() - start)
        logger.debug("Generated %d tokens, status %s", len(state.generated_ids), state.status.value)
        return EncodedResults(
            tokens=[list(state.generated_ids)],
            scores=[state.cumulative_log_prob],
            status=state.status,
            perf_metrics=metrics,
        )


def load_graph(model: Union[IR, nn.Module, str, Path]) -> IR:
    """Resolve a graph, a CausalLM, a graph file or a model directory to an IR."""
    if isinstance(model, IR):
        return model
    if isinstance(model, nn.Module):
        from ..capture import capture
        return capture(model)
    path = Path(model)
    if path.is_dir():
        path = path / MODEL_FILE
    if not path.exists():
        raise ConfigurationError(f"Model graph is not found at: {path}")
    return IR.load(path)


class StaticLLMPipeline:
    """
    Text generation on a static-shape device.

    The model is compiled at construction, or imported from ``BLOB_PATH``
    when that is set without ``EXPORT_BLOB``. The tokenizer is duck-typed:
    ``encode(text) -> ids``, ``decode(ids) -> str`` and optionally
    ``apply_chat_template(history, add_generation_prompt)``.
    """

    def __init__(self,
                 model: Union[IR, nn.Module, str, Path, None] = None,
                 tokenizer=None,
                 device: str = "NPU",
                 config: Optional[Mapping[str, Any]] = None,
                 generation_config: Optional[GenerationConfig] = None,
                 engine=None):
        start = time.perf_counter()
        self.tokenizer = tokenizer
        self.generation_config = generation_config or GenerationConfig()
        self.options = PipelineOptions.from_properties(config)
        self.history: List[Dict[str, str]] = []
        self.is_chat_conversation = False

        compiler = Compiler(engine, device)
        options = self.options
        if options.blob_path is not None and not options.export_blob:
            blob_path = options.blob_path
            if not blob_path.exists():
                raise ConfigurationError(f"Blob file is not found at: {blob_path}")
            with open(blob_path, "rb") as stream:
                self.artifact = compiler.import_model(stream, options.extra)
        else:
            if model is None:
                raise ConfigurationError("A model is required unless BLOB_PATH points to a blob to import")
            self.artifact = compiler.compile(load_graph(model), options)
            if options.export_blob:
                self._export(model)

        self.engine = GenerationEngine(self.artifact, Sampler(self.generation_config.rng_seed))
        self.load_time = _ms(time.perf_counter() - start)

    def _export(self, model):
        blob_path = self.options.blob_path
        if blob_path is None:
            if not isinstance(model, (str, Path)):
                raise ConfigurationError("BLOB_PATH is required to export a model not loaded from disk")
            model_dir = Path(model) if Path(model).is_dir() else Path(model).parent
            blob_path = model_dir / BLOB_FILE
        if len(str(blob_path)) < len(".blob") or not str(blob_path).endswith(".blob"):
            raise ConfigurationError(f"Please provide a full path to blob file in BLOB_PATH: {blob_path}")
        with open(blob_path, "wb") as stream:
            self.artifact.export(stream)
        logger.info("Exported compiled model to %s", blob_path)

    def get_generation_config(self) -> GenerationConfig:
        return dataclasses.replace(self.generation_config,
                                   stop_token_ids=set(self.generation_config.stop_token_ids))

    def set_generation_config(self, config: GenerationConfig):
        self.generation_config = config
        self.engine.sampler.set_seed(config.rng_seed)

    def start_chat(self, system_message: str = ""):
        if system_message:
            self.history.append({'role': "system", 'content': system_message})
        self.is_chat_conversation = True

    def finish_chat(self):
        self.is_chat_conversation = False
        self.history.clear()

    def _resolve_config(self, config: Optional[GenerationConfig], **kwargs) -> GenerationConfig:
        config = dataclasses.replace(config or self.generation_config, **kwargs)
        config.stop_token_ids = set(config.stop_token_ids)
        if not config.stop_token_ids:
            config.stop_token_ids = set(self.generation_config.stop_token_ids)
        if config.eos_token_id == -1:
            config.set_eos_token_id(self.generation_config.eos_token_id)
        return config

    def _require_tokenizer(self):
        if self.tokenizer is None:
            raise ConfigurationError("Text input requires a tokenizer")
        return self.tokenizer

    def _encode_prompt(self, prompt: str, config: GenerationConfig) -> torch.Tensor:
        tokenizer = self._require_tokenizer()
        has_template = hasattr(tokenizer, "apply_chat_template")
        if self.is_chat_conversation and has_template:
            self.history.append({'role': "user", 'content': prompt})
            prompt = tokenizer.apply_chat_template(self.history, add_generation_prompt=True)
        elif self.is_chat_conversation:
            self.history.append({'role': "user", 'content': prompt})
        elif config.apply_chat_template and has_template:
            prompt = tokenizer.apply_chat_template([{'role': "user", 'content': prompt}],
                                                   add_generation_prompt=True)
        return as_input_ids(tokenizer.encode(prompt))

    def generate(self, inputs, generation_config: Optional[GenerationConfig] = None,
                 streamer: StreamerLike = None, **kwargs):
        """
        Generate a continuation.

        Args:
            inputs: Prompt text (str, or a one-element list of str) or token ids
            generation_config: Decoding parameters (default: the pipeline's)
            streamer: StreamerBase, or a callable receiving text (with a
                tokenizer) or token ids
            **kwargs: GenerationConfig fields overriding ``generation_config``

        Returns:
            DecodedResults for text input, EncodedResults for token ids
        """
        config = self._resolve_config(generation_config, **kwargs)
        if isinstance(inputs, list) and inputs and isinstance(inputs[0], str):
            if len(inputs) != 1:
                raise PreconditionError("Currently only batch size=1 is supported")
            inputs = inputs[0]
        if not isinstance(inputs, str):
            results = self.engine.generate(inputs, config=config, streamer=streamer,
                                           tokenizer=self.tokenizer)
            results.perf_metrics.load_time = self.load_time
            return results

        start = time.perf_counter()
        history_len = len(self.history)
        try:
            input_ids = self._encode_prompt(inputs, config)
            encoded_at = time.perf_counter()
            encoded = self.engine.generate(input_ids, config=config, streamer=streamer,
                                           tokenizer=self.tokenizer)
        except Exception:
            # A rejected turn must not stay in the chat history
            del self.history[history_len:]
            raise
        decode_start = time.perf_counter()
        texts = [self.tokenizer.decode(tokens) for tokens in encoded.tokens]
        decode_stop = time.perf_counter()

        if self.is_chat_conversation:
            if encoded.status == GenerationStatus.CANCELLED:
                # Roll back the user turn of a cancelled exchange
                self.history.pop()
            else:
                self.history.append({'role': "assistant", 'content': texts[0]})

        metrics = encoded.perf_metrics
        metrics.load_time = self.load_time
        metrics.tokenization_duration = _ms(encoded_at - start)
        metrics.detokenization_duration = _ms(decode_stop - decode_start)
        metrics.generate_duration = _ms(decode_stop - start)
        return DecodedResults(texts=texts, scores=encoded.scores, status=encoded.status,
                              perf_metrics=metrics)

    __call__ = generate
