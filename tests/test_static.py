"""
Tests for static reshaping and the prefill/generate graph variants
"""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

import pytest
import torch

from staticllm import GraphShapeError, IR, TensorTy
from staticllm.passes import (
    KVAxesPosition,
    add_slices_to_kvcache_inputs,
    get_kv_axes_pos,
    make_static_variants,
    optimize_value_tensors,
    redirect_new_kv_to_output,
    reshape_to_static,
)


def _shape(ir, name):
    return ir.tensors[ir.input(name)].shape


def test_kv_axes_from_captured_graph(graph):
    assert get_kv_axes_pos(graph) == KVAxesPosition(batch=0, seq_len=2)


def test_kv_axes_from_other_layout():
    ir = IR()
    ir.add_parameter(TensorTy((4, "batch", "past", 8), "f32", ("past_key_values.0.key",)))
    assert get_kv_axes_pos(ir) == KVAxesPosition(batch=1, seq_len=2)


def test_kv_axes_default_without_cache():
    ir = IR()
    ir.add_parameter(TensorTy(("batch", "seq"), "i64", ("input_ids",)))
    assert get_kv_axes_pos(ir) == KVAxesPosition()


def test_reshape_prefill(graph, model):
    cfg = model.config
    ir = graph.clone()
    reshape_to_static(ir, 128, 256, KVAxesPosition())

    assert ir.is_static
    assert _shape(ir, "input_ids") == (1, 128)
    assert _shape(ir, "position_ids") == (1, 128)
    assert _shape(ir, "attention_mask") == (1, 256)
    assert _shape(ir, "past_key_values.0.key") == (1, cfg.num_heads, 128, cfg.head_dim)
    assert ir.tensors[ir.output("logits")].shape == (1, 128, cfg.vocab_size)
    # Source graph is untouched
    assert not graph.is_static


def test_reshape_transposed_values(graph, model):
    cfg = model.config
    ir = graph.clone()
    result = optimize_value_tensors(ir)
    reshape_to_static(ir, 1, 256, KVAxesPosition(), result.transposed_inputs)

    assert _shape(ir, "input_ids") == (1, 1)
    assert _shape(ir, "past_key_values.1.key") == (1, cfg.num_heads, 255, cfg.head_dim)
    assert _shape(ir, "past_key_values.1.value") == (1, cfg.num_heads, cfg.head_dim, 255)


def test_reshape_rejects_capacity_below_input(graph):
    with pytest.raises(GraphShapeError, match="smaller than input size"):
        reshape_to_static(graph.clone(), 16, 8, KVAxesPosition())


def test_reshape_rejects_wrong_axes(graph):
    with pytest.raises(GraphShapeError, match="fixed"):
        reshape_to_static(graph.clone(), 4, 8, KVAxesPosition(batch=0, seq_len=1))


def test_redirect_new_kv_to_output(graph, model):
    cfg = model.config
    ir = graph.clone()
    redirected = redirect_new_kv_to_output(ir)

    assert len(redirected) == 2 * cfg.num_layers
    assert ir.output_names()[0] == "logits"
    present = ir.producer(ir.output("present.0.key"))
    assert present.kind == "transpose"
    reshape_to_static(ir, 8, 32, KVAxesPosition())
    assert ir.tensors[ir.output("present.0.key")].shape == (1, cfg.num_heads, 8, cfg.head_dim)


def test_redirect_requires_concat(graph):
    ir = graph.clone()
    redirect_new_kv_to_output(ir)
    with pytest.raises(GraphShapeError, match="two-way concat"):
        redirect_new_kv_to_output(ir)


def test_add_slices_to_kvcache_inputs(graph, model, run_graph):
    cfg = model.config
    T, S = 2, 5
    reference = graph.clone()
    windowed = graph.clone()
    names = add_slices_to_kvcache_inputs(windowed)
    assert names == [f"past_key_values.{i}.{kind}"
                     for i in range(cfg.num_layers) for kind in ("key", "value")]
    assert _shape(windowed, "past_key_values.0.key")[2] == "past+1"
    assert windowed.consumers(windowed.input("past_key_values.0.key"))[0].kind == "slice"

    cache_shape = (1, cfg.num_heads, S, cfg.head_dim)
    common = {"input_ids": (1, T), "position_ids": (1, T), "attention_mask": (1, S + T)}
    reference.reshape({**common, **{n: cache_shape for n in names}})
    windowed.reshape({**common, **{n: (1, cfg.num_heads, S + 1, cfg.head_dim) for n in names}})

    torch.manual_seed(2)
    inputs = {
        "input_ids": torch.randint(0, cfg.vocab_size, (1, T)),
        "position_ids": torch.tensor([[S, S + 1]]),
        "attention_mask": torch.ones(1, S + T, dtype=torch.int64),
    }
    caches = {n: torch.randn(1, cfg.num_heads, S + 1, cfg.head_dim) for n in names}
    expected = run_graph(reference, {**inputs, **{n: c[:, :, 1:] for n, c in caches.items()}})
    actual = run_graph(windowed, {**inputs, **caches})
    assert torch.allclose(actual["logits"], expected["logits"], atol=1e-5)


def test_make_static_variants(graph, model):
    cfg = model.config
    variants = make_static_variants(graph, 16, 24)

    assert variants.kv_axes == KVAxesPosition(0, 2)
    assert variants.transposed_inputs == tuple(
        f"past_key_values.{i}.value" for i in range(cfg.num_layers))

    prefill, generate = variants.prefill, variants.generate
    assert _shape(prefill, "input_ids") == (1, 16)
    assert _shape(generate, "input_ids") == (1, 1)
    assert _shape(prefill, "attention_mask") == (1, 24)
    assert _shape(generate, "attention_mask") == (1, 24)
    assert _shape(prefill, "past_key_values.0.key") == (1, cfg.num_heads, 8, cfg.head_dim)
    assert _shape(generate, "past_key_values.0.value") == (1, cfg.num_heads, cfg.head_dim, 23)

    for ir in (prefill, generate):
        assert ir.tensors[ir.input("past_key_values.0.key")].dtype == "f16"
        assert ir.tensors[ir.output("present.0.key")].dtype == "f16"
        assert not any(op.kind == "sdpa" for op in ir.ops)
    assert generate.tensors[generate.output("present.0.value")].shape == (
        1, cfg.num_heads, cfg.head_dim, 1)
    assert prefill.tensors[prefill.output("logits")].shape == (1, 16, cfg.vocab_size)

    # The source graph keeps its dynamic shapes and fused attention
    assert not graph.is_static
    assert any(op.kind == "sdpa" for op in graph.ops)


def test_make_static_variants_plain(graph, model):
    cfg = model.config
    variants = make_static_variants(graph, 16, 24, optimize_v_tensors=False, kvcache_fp16=False)
    generate = variants.generate

    assert variants.transposed_inputs == ()
    assert _shape(generate, "past_key_values.0.value") == (1, cfg.num_heads, 23, cfg.head_dim)
    assert generate.tensors[generate.input("past_key_values.0.value")].dtype == "f32"
    assert any(op.kind == "sdpa" for op in generate.ops)
