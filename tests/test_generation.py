"""
Tests for the sampler, sequence state, streamers and generation parameters
"""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

import math

import pytest
import torch

from staticllm import ConfigurationError, GenerationConfig, PreconditionError
from staticllm.generation import (
    GenerationStatus,
    NullStreamer,
    Sampler,
    SequenceState,
    StreamingStatus,
    TextCallbackStreamer,
    TokenCallbackStreamer,
    create_streamer,
    initialize_position_ids,
)
from staticllm.generation.pipeline import PerfMetrics, as_input_ids


def _logits(*values):
    return torch.tensor([[list(values)]])


def test_greedy_picks_argmax():
    seq = SequenceState(prompt_ids=[1, 2])
    output = Sampler().sample([seq], _logits(0.1, 2.0, 0.5), GenerationConfig(max_new_tokens=4))

    assert output.tokens == {0: 1}
    assert seq.generated_ids == [1]
    expected = torch.log_softmax(torch.tensor([0.1, 2.0, 0.5]), dim=-1)[1].item()
    assert math.isclose(seq.log_probs[0], expected, rel_tol=1e-6)
    assert seq.is_running


def test_sampler_uses_last_position():
    seq = SequenceState(prompt_ids=[1])
    logits = torch.tensor([[[5.0, 0.0, 0.0], [0.0, 0.0, 5.0]]])
    Sampler().sample([seq], logits, GenerationConfig(max_new_tokens=4))
    assert seq.last_token == 2


def test_eos_finishes_sequence():
    seq = SequenceState(prompt_ids=[1])
    config = GenerationConfig(max_new_tokens=4, eos_token_id=1)
    output = Sampler().sample([seq], _logits(0.0, 3.0, 1.0), config)
    assert output.finished == [0]
    assert seq.status == GenerationStatus.FINISHED
    assert seq.generated_ids == [1]


def test_min_new_tokens_suppresses_eos():
    seq = SequenceState(prompt_ids=[1])
    config = GenerationConfig(max_new_tokens=4, eos_token_id=1, min_new_tokens=1)
    Sampler().sample([seq], _logits(0.0, 3.0, 1.0), config)
    assert seq.generated_ids == [2]
    assert seq.is_running


def test_max_new_tokens_finishes():
    seq = SequenceState(prompt_ids=[1])
    sampler = Sampler()
    config = GenerationConfig(max_new_tokens=2)
    sampler.sample([seq], _logits(1.0, 0.0), config)
    assert seq.is_running
    sampler.sample([seq], _logits(1.0, 0.0), config)
    assert seq.status == GenerationStatus.FINISHED


def test_max_length_counts_prompt():
    seq = SequenceState(prompt_ids=[1, 2, 3])
    Sampler().sample([seq], _logits(1.0, 0.0), GenerationConfig(max_length=4))
    assert seq.status == GenerationStatus.FINISHED


def test_finished_sequences_are_skipped():
    seq = SequenceState(prompt_ids=[1], status=GenerationStatus.FINISHED)
    output = Sampler().sample([seq], _logits(1.0, 0.0), GenerationConfig(max_new_tokens=2))
    assert output.tokens == {}
    assert seq.generated_ids == []


def test_multinomial_seeded():
    torch.manual_seed(0)
    logits = torch.randn(1, 1, 50)
    config = GenerationConfig(max_new_tokens=100, do_sample=True)

    def draw(seed):
        sampler = Sampler(seed)
        seq = SequenceState(prompt_ids=[0])
        for _ in range(10):
            sampler.sample([seq], logits, config)
        return seq.generated_ids

    assert draw(7) == draw(7)


def test_top_k_one_is_greedy():
    config = GenerationConfig(max_new_tokens=10, do_sample=True, top_k=1)
    sampler = Sampler(3)
    seq = SequenceState(prompt_ids=[0])
    for _ in range(5):
        sampler.sample([seq], _logits(0.5, 0.2, 0.9, 0.1), config)
    assert seq.generated_ids == [2] * 5


def test_small_top_p_is_greedy():
    config = GenerationConfig(max_new_tokens=10, do_sample=True, top_p=0.01)
    sampler = Sampler(3)
    seq = SequenceState(prompt_ids=[0])
    for _ in range(5):
        sampler.sample([seq], _logits(0.5, 0.2, 0.9, 0.1), config)
    assert seq.generated_ids == [2] * 5


def test_sequence_state_transitions():
    seq = SequenceState(prompt_ids=[1])
    seq.append_token(4, -0.5)
    seq.append_token(5, -1.0)
    assert seq.cumulative_log_prob == -1.5

    seq.cancel()
    assert seq.generated_ids == [4]
    assert seq.log_probs == [-0.5]
    assert seq.status == GenerationStatus.CANCELLED

    finished = SequenceState(prompt_ids=[1], status=GenerationStatus.FINISHED)
    finished.stop()
    assert finished.status == GenerationStatus.FINISHED

    running = SequenceState(prompt_ids=[1])
    running.stop()
    assert running.status == GenerationStatus.STOPPED

    running.set_out_of_memory()
    assert running.status == GenerationStatus.OUT_OF_MEMORY


def test_token_callback_streamer():
    assert TokenCallbackStreamer(lambda t: None).write(1) == StreamingStatus.RUNNING
    assert TokenCallbackStreamer(lambda t: False).write(1) == StreamingStatus.RUNNING
    assert TokenCallbackStreamer(lambda t: True).write(1) == StreamingStatus.STOP
    assert TokenCallbackStreamer(lambda t: StreamingStatus.CANCEL).write(1) == StreamingStatus.CANCEL
    assert NullStreamer().write(1) == StreamingStatus.RUNNING


class ByteTokenizer:
    """Decodes ids as UTF-8 bytes."""

    def decode(self, ids):
        return bytes(ids).decode("utf-8", errors="replace")


def test_text_streamer_holds_incomplete_characters():
    chunks = []
    streamer = TextCallbackStreamer(ByteTokenizer(), chunks.append)
    for byte in "aé".encode("utf-8"):
        streamer.write(byte)
    assert chunks == ["a", "é"]

    streamer.write(0xC3)
    assert chunks == ["a", "é"]
    streamer.end()
    assert chunks[-1] == "\ufffd"
    assert streamer.tokens == []


def test_create_streamer():
    assert isinstance(create_streamer(None), NullStreamer)
    assert isinstance(create_streamer(print), TokenCallbackStreamer)
    assert isinstance(create_streamer(print, ByteTokenizer()), TextCallbackStreamer)
    streamer = NullStreamer()
    assert create_streamer(streamer) is streamer
    with pytest.raises(TypeError):
        create_streamer(42)


@pytest.mark.parametrize("kwargs", [
    {},
    {'max_new_tokens': 0},
    {'max_length': 0},
    {'max_new_tokens': 4, 'min_new_tokens': -1},
    {'max_new_tokens': 4, 'num_beams': 0},
    {'max_new_tokens': 4, 'do_sample': True, 'temperature': 0.0},
    {'max_new_tokens': 4, 'do_sample': True, 'top_p': 1.5},
    {'max_new_tokens': 4, 'do_sample': True, 'top_k': -1},
    {'eos_token_id': 2, 'ignore_eos': True},
])
def test_generation_config_rejects(kwargs):
    with pytest.raises(ConfigurationError):
        GenerationConfig(**kwargs).validate()


def test_generation_config_helpers():
    config = GenerationConfig(max_length=10)
    assert config.get_max_new_tokens(4) == 6
    assert config.is_greedy_decoding()
    assert not config.is_multinomial()
    config.set_eos_token_id(3)
    assert 3 in config.stop_token_ids
    config.validate()

    sampling = GenerationConfig(max_new_tokens=2, do_sample=True)
    assert sampling.is_multinomial()
    assert GenerationConfig(num_beams=3).is_beam_search()


def test_position_ids_skip_padding():
    mask = torch.tensor([[0, 0, 1, 1, 1]])
    assert initialize_position_ids(mask).tolist() == [[0, 0, 0, 1, 2]]
    assert initialize_position_ids(mask, start=3).tolist() == [[3, 3, 3, 4, 5]]


def test_as_input_ids():
    assert as_input_ids([1, 2]).shape == (1, 2)
    assert as_input_ids(torch.tensor([[1, 2]], dtype=torch.int32)).dtype == torch.int64
    with pytest.raises(PreconditionError):
        as_input_ids([[[1]]])


def test_perf_metrics():
    metrics = PerfMetrics(token_times=[10.0, 20.0, 40.0])
    assert metrics.tpot == 15.0
    assert math.isclose(metrics.throughput, 1000.0 / 15.0)
    assert metrics.to_dict()['tpot'] == 15.0
    assert PerfMetrics().throughput == 0.0
