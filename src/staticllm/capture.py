"""Model capture: lowering a CausalLM into a dynamic-shape graph."""

from typing import Optional

import torch
import torch.nn as nn

from .ir import IR, TensorId, TensorTy
from .models import MASK_VALUE, CausalLM, DecoderLayer


class ModelTracer:
    """Lowers a CausalLM module by module into IR ops."""

    def __init__(self):
        self.ir = IR()

    def _const(self, value: torch.Tensor) -> TensorId:
        return self.ir.add_constant(value.detach().clone())

    def _scalar(self, value: float) -> TensorId:
        return self._const(torch.tensor(value, dtype=torch.float32))

    def _linear(self, x: TensorId, module: nn.Linear, name: str) -> TensorId:
        out = self.ir.add_op("matmul", [x, self._const(module.weight)],
                             {'transpose_b': True}, name=name)
        if module.bias is not None:
            out = self.ir.add_op("add", [out, self._const(module.bias)])
        return out

    def _heads(self, x: TensorId, num_heads: int, head_dim: int) -> TensorId:
        x = self.ir.add_op("reshape", [x], {'shape': (0, 0, num_heads, head_dim)})
        return self.ir.add_op("transpose", [x], {'order': (0, 2, 1, 3)})

    def _attention_mask(self, input_ids: TensorId, attention_mask: TensorId) -> TensorId:
        ir = self.ir
        # Padding part: [batch, 1, 1, keys]
        mask = ir.add_op("convert", [attention_mask], {'dtype': "f32"})
        pad = ir.add_op("subtract", [self._scalar(1.0), mask])
        pad = ir.add_op("multiply", [pad, self._scalar(MASK_VALUE)])
        pad = ir.add_op("unsqueeze", [pad], {'axes': (1, 2)})

        # Causal part: query i sits at key position i + (keys - queries)
        keys = ir.add_op("dim_size", [attention_mask], {'axis': 1})
        queries = ir.add_op("dim_size", [input_ids], {'axis': 1})
        offset = ir.add_op("subtract", [keys, queries])
        q_pos = ir.add_op("arange", [input_ids], {'axis': 1})
        q_pos = ir.add_op("add", [q_pos, offset])
        q_pos = ir.add_op("unsqueeze", [q_pos], {'axes': (1,)})
        k_pos = ir.add_op("arange", [attention_mask], {'axis': 1})
        k_pos = ir.add_op("unsqueeze", [k_pos], {'axes': (0,)})
        allowed = ir.add_op("greater_equal", [q_pos, k_pos])
        causal = ir.add_op("select", [allowed, self._scalar(0.0), self._scalar(MASK_VALUE)])
        return ir.add_op("add", [pad, causal], name="attention_bias")

    def _layer(self, index: int, layer: DecoderLayer, x: TensorId, mask: TensorId,
               batch: str) -> TensorId:
        ir = self.ir
        names = {}
        for kind in ("key", "value"):
            names[kind] = ir.add_parameter(
                TensorTy((batch, layer.num_heads, "past", layer.head_dim), "f32",
                         (f"past_key_values.{index}.{kind}",)),
                tid=f"past_key_values.{index}.{kind}")

        prefix = f"layers.{index}"
        q = self._heads(self._linear(x, layer.q_proj, f"{prefix}.q_proj"),
                        layer.num_heads, layer.head_dim)
        k_new = self._heads(self._linear(x, layer.k_proj, f"{prefix}.k_proj"),
                            layer.num_heads, layer.head_dim)
        v_new = self._heads(self._linear(x, layer.v_proj, f"{prefix}.v_proj"),
                            layer.num_heads, layer.head_dim)
        key = ir.add_op("concat", [names["key"], k_new], {'axis': 2})
        value = ir.add_op("concat", [names["value"], v_new], {'axis': 2})
        ir.set_names(key, (f"present.{index}.key",))
        ir.set_names(value, (f"present.{index}.value",))
        ir.results.extend([key, value])

        attn = ir.add_op("sdpa", [q, key, value, mask], name=f"{prefix}.attn")
        attn = ir.add_op("transpose", [attn], {'order': (0, 2, 1, 3)})
        attn = ir.add_op("reshape", [attn], {'shape': (0, 0, layer.num_heads * layer.head_dim)})
        x = ir.add_op("add", [x, self._linear(attn, layer.o_proj, f"{prefix}.o_proj")])

        hidden = ir.add_op("relu", [self._linear(x, layer.up, f"{prefix}.up")])
        return ir.add_op("add", [x, self._linear(hidden, layer.down, f"{prefix}.down")])

    def trace(self, model: CausalLM, group_size: Optional[int] = None) -> IR:
        """
        Lower a model into IR.

        Args:
            model: Model to lower
            group_size: Weight compression group size recorded in rt_info
                (-1 for channel-wise); None for an uncompressed model

        Returns:
            IR with dynamic batch and sequence dims
        """
        ir = self.ir
        batch = "batch"
        input_ids = ir.add_parameter(TensorTy((batch, "seq"), "i64", ("input_ids",)),
                                     tid="input_ids")
        attention_mask = ir.add_parameter(
            TensorTy((batch, "total"), "i64", ("attention_mask",)), tid="attention_mask")
        position_ids = ir.add_parameter(TensorTy((batch, "seq"), "i64", ("position_ids",)),
                                        tid="position_ids")

        x = ir.add_op("gather", [self._const(model.embed.weight), input_ids], {'axis': 0})
        pos = ir.add_op("gather", [self._const(model.pos_embed.weight), position_ids], {'axis': 0})
        x = ir.add_op("add", [x, pos])
        mask = self._attention_mask(input_ids, attention_mask)

        for index, layer in enumerate(model.layers):
            x = self._layer(index, layer, x, mask, batch)

        logits = self._linear(x, model.lm_head, "lm_head")
        ir.set_names(logits, ("logits",))
        ir.results.insert(0, logits)

        if group_size is not None:
            ir.rt_info['nncf'] = {'weight_compression': {'group_size': group_size}}
        ir.validate()
        return ir


def capture(model: CausalLM, group_size: Optional[int] = None) -> IR:
    """
    Capture a CausalLM as a dynamic-shape graph.

    Inputs are ``input_ids``, ``attention_mask``, ``position_ids`` and
    ``past_key_values.{i}.key|value``; outputs are ``logits`` and
    ``present.{i}.key|value``.
    """
    model.eval()
    with torch.no_grad():
        return ModelTracer().trace(model, group_size)
