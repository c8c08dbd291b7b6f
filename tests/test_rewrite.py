"""
Tests for attention decomposition, value-cache transposition and precision passes
"""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

import pytest
import torch
import torch.nn.functional as F

from staticllm import GraphShapeError, IR, TensorTy, capture
from staticllm.passes import (
    align_u4_zp_constants,
    cvt_kvcache_to_fp16,
    decompose_sdpa,
    is_cw_compressed,
    optimize_value_tensors,
    reshape_to_static,
    KVAxesPosition,
)


def _attention_graph(q_len, kv_len, mask_dtype=None, causal=False, scale=None):
    ir = IR()
    q = ir.add_parameter(TensorTy((2, 3, q_len, 8), "f32", ("q",)))
    k = ir.add_parameter(TensorTy((2, 3, kv_len, 8), "f32", ("k",)))
    v = ir.add_parameter(TensorTy((2, 3, kv_len, 8), "f32", ("v",)))
    inputs = [q, k, v]
    if mask_dtype is not None:
        inputs.append(ir.add_parameter(TensorTy((q_len, kv_len), mask_dtype, ("mask",))))
    if scale is not None:
        inputs.append(ir.add_constant(torch.tensor(scale)))
    out = ir.add_op("sdpa", inputs, {'causal': causal}, name="attn")
    ir.set_names(out, ("out",))
    ir.results.append(out)
    ir.validate()
    return ir


def _qkv(q_len, kv_len):
    torch.manual_seed(0)
    return (torch.randn(2, 3, q_len, 8), torch.randn(2, 3, kv_len, 8),
            torch.randn(2, 3, kv_len, 8))


def test_decompose_boolean_mask(run_graph):
    q, k, v = _qkv(5, 7)
    mask = torch.rand(5, 7) > 0.3
    mask[:, 0] = True
    ir = _attention_graph(5, 7, mask_dtype="bool")

    assert decompose_sdpa(ir) == ["attn"]
    assert not any(op.kind == "sdpa" for op in ir.ops)
    assert ir.producer(ir.output("out")).id == "attn"

    out = run_graph(ir, {"q": q, "k": k, "v": v, "mask": mask})["out"]
    expected = F.scaled_dot_product_attention(q, k, v, attn_mask=mask)
    assert torch.allclose(out, expected, atol=1e-5)


def test_decompose_float_mask_and_scale(run_graph):
    q, k, v = _qkv(4, 6)
    mask = torch.randn(4, 6)
    ir = _attention_graph(4, 6, mask_dtype="f32", scale=0.5)
    decompose_sdpa(ir)

    out = run_graph(ir, {"q": q, "k": k, "v": v, "mask": mask})["out"]
    expected = F.scaled_dot_product_attention(q, k, v, attn_mask=mask, scale=0.5)
    assert torch.allclose(out, expected, atol=1e-5)


def test_decompose_causal(run_graph):
    q, k, v = _qkv(6, 6)
    ir = _attention_graph(6, 6, causal=True)
    decompose_sdpa(ir)
    assert any(op.kind == "arange" for op in ir.ops)

    out = run_graph(ir, {"q": q, "k": k, "v": v})["out"]
    expected = F.scaled_dot_product_attention(q, k, v, is_causal=True)
    assert torch.allclose(out, expected, atol=1e-5)


def test_decompose_is_idempotent(graph):
    ir = graph.clone()
    assert len(decompose_sdpa(ir)) == 2
    assert decompose_sdpa(ir) == []


def test_optimize_value_tensors_layout(graph, model):
    ir = graph.clone()
    result = optimize_value_tensors(ir)
    cfg = model.config

    assert result.applied
    assert result.decomposed == [f"layers.{i}.attn" for i in range(cfg.num_layers)]
    assert result.transposed_inputs == [f"past_key_values.{i}.value" for i in range(cfg.num_layers)]

    value = ir.tensors[ir.input("past_key_values.0.value")]
    key = ir.tensors[ir.input("past_key_values.0.key")]
    assert value.shape == ("batch", cfg.num_heads, cfg.head_dim, "past")
    assert key.shape == ("batch", cfg.num_heads, "past", cfg.head_dim)
    assert ir.tensors[ir.output("present.0.value")].shape[2] == cfg.head_dim

    attention = [op for op in ir.ops if op.id == "layers.0.attn"]
    assert len(attention) == 1
    assert attention[0].kind == "matmul"
    assert attention[0].attrs['transpose_b'] is True


def test_optimize_value_tensors_numerics(graph, model, run_graph):
    P, C = 4, 10
    cfg = model.config
    axes = KVAxesPosition()

    reference = graph.clone()
    reshape_to_static(reference, P, C, axes)
    optimized = graph.clone()
    result = optimize_value_tensors(optimized)
    reshape_to_static(optimized, P, C, axes, result.transposed_inputs)

    torch.manual_seed(1)
    inputs = {
        "input_ids": torch.randint(0, cfg.vocab_size, (1, P)),
        "attention_mask": torch.ones(1, C, dtype=torch.int64),
        "position_ids": torch.arange(C - P, C).unsqueeze(0),
    }
    transposed_inputs = dict(inputs)
    for i in range(cfg.num_layers):
        key = torch.randn(1, cfg.num_heads, C - P, cfg.head_dim)
        value = torch.randn(1, cfg.num_heads, C - P, cfg.head_dim)
        inputs[f"past_key_values.{i}.key"] = key
        inputs[f"past_key_values.{i}.value"] = value
        transposed_inputs[f"past_key_values.{i}.key"] = key
        transposed_inputs[f"past_key_values.{i}.value"] = value.transpose(2, 3).contiguous()

    expected = run_graph(reference, inputs)
    actual = run_graph(optimized, transposed_inputs)
    assert torch.allclose(actual["logits"], expected["logits"], atol=1e-4)
    assert torch.allclose(actual["present.1.value"], expected["present.1.value"].transpose(2, 3),
                          atol=1e-5)


def test_transpose_requires_rank_4_value_cache():
    ir = IR()
    probs = ir.add_parameter(TensorTy((1, 3, 5), "f32", ("probs",)))
    past = ir.add_parameter(TensorTy((1, 2, 8), "f32", ("past_key_values.0.value",)))
    new = ir.add_parameter(TensorTy((1, 8, 3), "f32", ("new",)))
    scores = ir.add_op("softmax", [probs], {'axis': -1})
    new_t = ir.add_op("transpose", [new], {'order': (0, 2, 1)})
    value = ir.add_op("concat", [past, new_t], {'axis': 1})
    out = ir.add_op("matmul", [scores, value])
    ir.set_names(out, ("out",))
    ir.results.append(out)
    ir.validate()

    with pytest.raises(GraphShapeError, match="rank 4"):
        optimize_value_tensors(ir)


def test_cvt_kvcache_to_fp16(graph):
    ir = graph.clone()
    converted = cvt_kvcache_to_fp16(ir)

    assert "past_key_values.0.key" in converted
    assert "present.1.value" in converted
    assert ir.tensors[ir.input("past_key_values.1.value")].dtype == "f16"
    assert ir.tensors[ir.output("present.0.key")].dtype == "f16"
    assert ir.tensors[ir.output("logits")].dtype == "f32"
    assert ir.tensors[ir.input("input_ids")].dtype == "i64"
    # Compute behind the boundary stays f32
    first = ir.consumers(ir.input("past_key_values.0.key"))
    assert [op.kind for op in first] == ["convert"]
    assert first[0].attrs['dtype'] == "f32"

    assert cvt_kvcache_to_fp16(ir) == []


def test_align_u4_zp_constants():
    ir = IR()
    x = ir.add_parameter(TensorTy((4,), "f32", ("x",)))
    zp = ir.add_constant(torch.tensor(0x3A, dtype=torch.uint8), "u4")
    table = ir.add_constant(torch.tensor([0x1F, 0x2F], dtype=torch.uint8), "u4")
    out = ir.add_op("add", [x, ir.add_op("convert", [zp], {'dtype': "f32"})])
    extra = ir.add_op("convert", [table], {'dtype': "f32"})
    ir.set_names(out, ("out",))
    ir.set_names(extra, ("table",))
    ir.results.extend([out, extra])
    ir.validate()

    assert align_u4_zp_constants(ir) == 1
    convert_zp = ir.producer(ir.producer(ir.output("out")).inputs[1])
    assert int(ir.constants[convert_zp.inputs[0]]) == 0x0A
    convert_table = ir.producer(ir.output("table"))
    assert ir.constants[convert_table.inputs[0]].tolist() == [0x1F, 0x2F]


def test_is_cw_compressed(model):
    assert is_cw_compressed(capture(model, group_size=-1))
    assert not is_cw_compressed(capture(model, group_size=128))
    assert not is_cw_compressed(capture(model))
