"""Reference decoder-only language model."""

from dataclasses import dataclass
from typing import List, Optional, Tuple

import torch
import torch.nn as nn
import torch.nn.functional as F

MASK_VALUE = -1e9  # additive mask for positions that must not be attended

KVCache = List[Tuple[torch.Tensor, torch.Tensor]]


@dataclass
class CausalLMConfig:
    vocab_size: int = 64
    hidden_dim: int = 32
    num_heads: int = 2
    num_layers: int = 2
    mlp_dim: int = 64
    max_positions: int = 2048

    @property
    def head_dim(self) -> int:
        return self.hidden_dim // self.num_heads


def build_attention_mask(attention_mask: torch.Tensor, query_len: int) -> torch.Tensor:
    """Additive [batch, 1, query_len, keys] mask: padding plus causal."""
    keys = attention_mask.shape[-1]
    pad = (1.0 - attention_mask.float()) * MASK_VALUE
    q_pos = torch.arange(query_len) + (keys - query_len)
    allowed = q_pos[:, None] >= torch.arange(keys)[None, :]
    causal = torch.where(allowed, torch.tensor(0.0), torch.tensor(MASK_VALUE))
    return pad[:, None, None, :] + causal


class DecoderLayer(nn.Module):
    def __init__(self, config: CausalLMConfig):
        super().__init__()
        self.num_heads = config.num_heads
        self.head_dim = config.head_dim
        self.q_proj = nn.Linear(config.hidden_dim, config.hidden_dim)
        self.k_proj = nn.Linear(config.hidden_dim, config.hidden_dim)
        self.v_proj = nn.Linear(config.hidden_dim, config.hidden_dim)
        self.o_proj = nn.Linear(config.hidden_dim, config.hidden_dim)
        self.up = nn.Linear(config.hidden_dim, config.mlp_dim)
        self.down = nn.Linear(config.mlp_dim, config.hidden_dim)

    def _heads(self, x: torch.Tensor) -> torch.Tensor:
        b, t, _ = x.shape
        return x.reshape(b, t, self.num_heads, self.head_dim).transpose(1, 2)

    def forward(self, x, mask, past_key, past_value):
        b, t, d = x.shape
        q = self._heads(self.q_proj(x))
        key = torch.cat([past_key, self._heads(self.k_proj(x))], dim=2)
        value = torch.cat([past_value, self._heads(self.v_proj(x))], dim=2)
        attn = F.scaled_dot_product_attention(q, key, value, attn_mask=mask)
        x = x + self.o_proj(attn.transpose(1, 2).reshape(b, t, d))
        x = x + self.down(torch.relu(self.up(x)))
        return x, key, value


class CausalLM(nn.Module):
    """
    Small decoder-only transformer with a key/value cache and no normalization layers.
    """

    def __init__(self, config: Optional[CausalLMConfig] = None, **kwargs):
        super().__init__()
        self.config = config or CausalLMConfig(**kwargs)
        cfg = self.config
        self.embed = nn.Embedding(cfg.vocab_size, cfg.hidden_dim)
        self.pos_embed = nn.Embedding(cfg.max_positions, cfg.hidden_dim)
        self.layers = nn.ModuleList([DecoderLayer(cfg) for _ in range(cfg.num_layers)])
        self.lm_head = nn.Linear(cfg.hidden_dim, cfg.vocab_size)

    def empty_cache(self, batch: int = 1) -> KVCache:
        cfg = self.config
        shape = (batch, cfg.num_heads, 0, cfg.head_dim)
        return [(torch.zeros(shape), torch.zeros(shape)) for _ in range(cfg.num_layers)]

    def forward(self,
                input_ids: torch.Tensor,
                attention_mask: Optional[torch.Tensor] = None,
                position_ids: Optional[torch.Tensor] = None,
                past_key_values: Optional[KVCache] = None) -> Tuple[torch.Tensor, KVCache]:
        """
        Args:
            input_ids: [batch, seq] token ids
            attention_mask: [batch, past + seq], 1 for real tokens
            position_ids: [batch, seq]
            past_key_values: per layer (key, value), each [batch, heads, past, head_dim]

        Returns:
            (logits [batch, seq, vocab], present key/values)
        """
        b, t = input_ids.shape
        if past_key_values is None:
            past_key_values = self.empty_cache(b)
        past_len = past_key_values[0][0].shape[2]
        if attention_mask is None:
            attention_mask = torch.ones(b, past_len + t, dtype=torch.int64)
        if position_ids is None:
            position_ids = torch.arange(past_len, past_len + t).unsqueeze(0).expand(b, -1)

        x = self.embed(input_ids) + self.pos_embed(position_ids)
        mask = build_attention_mask(attention_mask, t)
        presents = []
        for layer, (past_key, past_value) in zip(self.layers, past_key_values):
            x, key, value = layer(x, mask, past_key, past_value)
            presents.append((key, value))
        return self.lm_head(x), presents
