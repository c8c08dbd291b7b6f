"""
Tests for the reference engine and compiled static LLM artifacts
"""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

import io

import pytest
import torch

import staticllm
from staticllm import (
    CapacityError,
    ConfigurationError,
    GraphShapeError,
    PreconditionError,
    TorchEngine,
    get_engine,
    set_engine,
)
from staticllm.compile import MAX_PROMPT_LEN_PROPERTY, MIN_RESPONSE_LEN_PROPERTY
from staticllm.passes import KVAxesPosition, reshape_to_static

CONFIG = {"MAX_PROMPT_LEN": 8, "MIN_RESPONSE_LEN": 4, "KVCACHE_FP16": "NO"}


def _prefill(artifact, prompt):
    ids = torch.tensor([prompt])
    artifact.set_tensor("input_ids", ids)
    artifact.set_tensor("attention_mask", torch.ones_like(ids))
    artifact.set_tensor("position_ids", torch.arange(len(prompt)).unsqueeze(0))
    artifact.infer()
    return artifact.get_tensor("logits")


def _decode(artifact, token, position):
    artifact.set_tensor("input_ids", torch.tensor([[token]]))
    artifact.set_tensor("attention_mask", torch.ones(1, position + 1, dtype=torch.int64))
    artifact.set_tensor("position_ids", torch.tensor([[position]]))
    artifact.infer()
    return artifact.get_tensor("logits")


def test_engine_rejects_dynamic_graph(graph):
    with pytest.raises(GraphShapeError, match="dynamic"):
        TorchEngine().compile(graph, "NPU", {})


def test_engine_rejects_unknown_device(graph):
    with pytest.raises(ConfigurationError, match="not available"):
        TorchEngine().compile(graph, "GPU", {})


def test_executable_checks_tensors(graph):
    ir = graph.clone()
    reshape_to_static(ir, 4, 8, KVAxesPosition())
    executable = TorchEngine().compile(ir, "NPU", {"NPUW_FOLD": "YES"})

    assert executable.get_property("NPUW_FOLD") == "YES"
    assert executable.input_type("input_ids").shape == (1, 4)
    with pytest.raises(GraphShapeError, match="shape"):
        executable.set_tensor("input_ids", torch.zeros(1, 5, dtype=torch.int64))
    with pytest.raises(GraphShapeError, match="expects i64"):
        executable.set_tensor("input_ids", torch.zeros(1, 4, dtype=torch.int32))
    with pytest.raises(PreconditionError, match="not set"):
        executable.infer()


def test_global_engine():
    previous = set_engine(None)
    try:
        first = get_engine()
        assert isinstance(first, TorchEngine)
        assert get_engine() is first
        mine = TorchEngine()
        assert set_engine(mine) is first
        assert get_engine() is mine
    finally:
        set_engine(previous)


def test_artifact_prefill_matches_model(model, graph, engine):
    artifact = staticllm.compile(graph, config=CONFIG)
    prompt = [3, 1, 4, 1, 5]
    logits = _prefill(artifact, prompt)

    with torch.no_grad():
        expected, _ = model(torch.tensor([prompt]))
    assert logits.shape == (1, 1, model.config.vocab_size)
    assert torch.allclose(logits, expected[:, -1:], atol=1e-4)
    assert artifact.kv_len == len(prompt)
    assert len(engine.compiled) == 2


def test_artifact_decode_matches_model(model, graph, engine):
    artifact = staticllm.compile(graph, config=CONFIG)
    prompt = [3, 1, 4, 1, 5]
    _prefill(artifact, prompt)
    logits = _decode(artifact, 9, len(prompt))
    logits = _decode(artifact, 2, len(prompt) + 1)

    with torch.no_grad():
        expected, _ = model(torch.tensor([prompt + [9, 2]]))
    assert logits.shape == (1, 1, model.config.vocab_size)
    assert torch.allclose(logits, expected[:, -1:], atol=1e-4)
    assert artifact.kv_len == len(prompt) + 2
    assert artifact.prefill.infer_count == 1
    assert artifact.generate.infer_count == 2


def test_artifact_fp16_cache(model, graph, engine):
    artifact = staticllm.compile(graph, config={"MAX_PROMPT_LEN": 8, "MIN_RESPONSE_LEN": 4})
    prompt = [3, 1, 4, 1, 5]
    _prefill(artifact, prompt)
    logits = _decode(artifact, 9, len(prompt))

    with torch.no_grad():
        expected, _ = model(torch.tensor([prompt + [9]]))
    assert artifact.generate_kv["past_key_values.0.key"].dtype == torch.float16
    assert torch.allclose(logits, expected[:, -1:], atol=1e-2)


def test_artifact_full_prefill_logits(model, graph, engine):
    config = dict(CONFIG, **{"++PREFILL_CONFIG": {"NPUW_SLICE_OUT": "NO"}})
    artifact = staticllm.compile(graph, config=config)
    prompt = [7, 7, 2]
    logits = _prefill(artifact, prompt)

    with torch.no_grad():
        expected, _ = model(torch.tensor([prompt]))
    assert logits.shape == (1, 8, model.config.vocab_size)
    assert torch.allclose(logits[:, -3:], expected, atol=1e-4)


def test_artifact_rejects_long_prompt(graph, engine):
    artifact = staticllm.compile(graph, config=CONFIG)
    with pytest.raises(CapacityError):
        _prefill(artifact, list(range(9)))
    assert artifact.prefill.infer_count == 0


def test_artifact_properties(graph, engine):
    artifact = staticllm.compile(graph, config=dict(CONFIG, CACHE_DIR="/tmp/cache"))
    assert artifact.get_property(MAX_PROMPT_LEN_PROPERTY) == 8
    assert artifact.get_property(MIN_RESPONSE_LEN_PROPERTY) == 4
    assert artifact.get_property("NPUW_CACHE_DIR") == "/tmp/cache"
    assert artifact.validate() == []

    prefill_props, generate_props = engine.compiled
    assert prefill_props["NPUW_LLM"] == "YES"
    assert prefill_props["NPUW_PMM"] == "NO"
    assert generate_props["NPUW_UNFOLD_IREQS"] == "YES"


def test_compile_channel_wise_model(model, engine):
    graph = staticllm.capture(model, group_size=-1)
    staticllm.compile(graph, config=CONFIG)
    prefill_props = engine.compiled[0]
    assert prefill_props["NPUW_DQ"] == "YES"
    assert "NPUW_PMM" not in prefill_props


def test_compile_from_file(graph, engine, tmp_path):
    path = tmp_path / "model.graph"
    graph.save(path)
    artifact = staticllm.compile(path, config=CONFIG)
    assert artifact.kvcache_total == 12


def test_export_import(model, graph, engine):
    artifact = staticllm.compile(graph, config=CONFIG)
    stream = io.BytesIO()
    artifact.export(stream)
    stream.seek(0)

    restored = staticllm.import_model(stream)
    assert restored.max_prompt_len == 8
    assert restored.kvcache_total == 12
    assert restored.transposed_inputs == artifact.transposed_inputs

    prompt = [3, 1, 4]
    assert torch.allclose(_prefill(restored, prompt), _prefill(artifact, prompt))


def test_import_rejects_foreign_stream(engine):
    stream = io.BytesIO()
    torch.save({"format": "something-else"}, stream)
    stream.seek(0)
    with pytest.raises(ConfigurationError):
        staticllm.import_model(stream)


def test_compile_warns_when_values_not_transposed(graph, engine):
    ir = graph.clone()
    # An op between each value input and its concat hides the pattern
    for index in range(2):
        param = ir.input(f"past_key_values.{index}.value")
        cvt = ir.add_op("convert", [param], {'dtype': "f32"})
        ir.replace_tensor(param, cvt, exclude=[ir.producer(cvt)], move_names=False)
    ir.validate()

    with pytest.warns(UserWarning, match="did not match"):
        artifact = staticllm.compile(ir, config=CONFIG)
    assert artifact.transposed_inputs == ()
