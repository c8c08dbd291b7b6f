"""Shared fixtures: a tiny decoder, its captured graph and a counting engine."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

import pytest
import torch

from staticllm import CausalLM, CausalLMConfig, TorchEngine, capture, set_engine


class CountingEngine(TorchEngine):
    """Reference engine that records compiled executables."""

    def __init__(self, devices=None):
        super().__init__(devices)
        self.compiled = []  # device properties per compile call
        self.executables = []

    def compile(self, ir, device, properties):
        executable = super().compile(ir, device, properties)
        self.compiled.append(dict(properties))
        self.executables.append(executable)
        return executable

    def import_model(self, stream, device, properties):
        executable = super().import_model(stream, device, properties)
        self.executables.append(executable)
        return executable

    @property
    def infer_count(self):
        return sum(e.infer_count for e in self.executables)


@pytest.fixture
def model():
    torch.manual_seed(0)
    config = CausalLMConfig(vocab_size=32, hidden_dim=16, num_heads=2,
                            num_layers=2, mlp_dim=32)
    return CausalLM(config).eval()


@pytest.fixture
def graph(model):
    return capture(model)


@pytest.fixture
def engine():
    engine = CountingEngine()
    previous = set_engine(engine)
    yield engine
    set_engine(previous)


@pytest.fixture
def run_graph():
    """Run a static graph once and return its outputs by name."""
    def run(ir, inputs):
        executable = TorchEngine().compile(ir, "NPU", {})
        for name, tensor in inputs.items():
            executable.set_tensor(name, tensor)
        executable.infer()
        return {name: executable.get_tensor(name) for name in executable.output_names}
    return run


def greedy_reference(model, prompt, max_new_tokens):
    """Greedy decoding with the eager model and a growing cache."""
    ids = torch.tensor([prompt], dtype=torch.int64)
    tokens = []
    with torch.no_grad():
        logits, cache = model(ids)
        for _ in range(max_new_tokens):
            token = int(torch.argmax(logits[0, -1]))
            tokens.append(token)
            logits, cache = model(torch.tensor([[token]]), past_key_values=cache)
    return tokens


@pytest.fixture
def reference():
    return greedy_reference
