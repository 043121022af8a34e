"""
Transformer encoder layers for the basecall model.

Each layer uses the post-norm deepnorm arrangement:
    x = norm1(self_attn(x) + alpha * x)
    x = norm2(ff(x) + alpha * x)

The stack owns the banded attention mask shared by all of its layers.
"""

from typing import Dict, Tuple

import torch
import torch.nn as nn

from basecall_lite.models.tx.attention import MultiHeadAttention, build_attn_window_mask
from basecall_lite.models.tx.config import ModelConfig
from basecall_lite.models.tx.ffn import GatedMLP
from basecall_lite.models.tx.rmsnorm import RMSNorm


class TxEncoderLayer(nn.Module):
    """Deepnorm transformer encoder layer.

    Attributes:
        self_attn: Windowed multi-head self attention.
        ff: Gated MLP.
        norm1: RMSNorm applied after the attention residual.
        norm2: RMSNorm applied after the MLP residual.
    """

    def __init__(self, config: ModelConfig) -> None:
        super().__init__()
        self.self_attn = MultiHeadAttention(
            config.d_model,
            config.nhead,
            qkv_bias=False,
            out_bias=True,
            rope_theta=config.rope_theta,
        )
        self.ff = GatedMLP(config.d_model, config.dim_feedforward)
        self.norm1 = RMSNorm(config.d_model, eps=config.rms_norm_eps)
        self.norm2 = RMSNorm(config.d_model, eps=config.rms_norm_eps)
        self.register_buffer(
            "deepnorm_alpha", torch.tensor(config.deepnorm_alpha), persistent=False
        )

    def forward(self, x: torch.Tensor, attn_mask: torch.Tensor) -> torch.Tensor:
        alpha = self.deepnorm_alpha.to(x.dtype)
        x = self.norm1(self.self_attn(x, attn_mask) + x * alpha)
        x = self.norm2(self.ff(x) + x * alpha)
        return x


class TxEncoderStack(nn.Module):
    """Stack of ``config.depth`` encoder layers sharing one attention mask."""

    def __init__(self, config: ModelConfig) -> None:
        super().__init__()
        self.attn_window = config.attn_window
        self.layers = nn.ModuleList(TxEncoderLayer(config) for _ in range(config.depth))
        self._masks: Dict[Tuple[int, str], torch.Tensor] = {}

    def attn_mask(self, seq_len: int, device: torch.device) -> torch.Tensor:
        key = (seq_len, str(device))
        if key not in self._masks:
            self._masks[key] = build_attn_window_mask(seq_len, self.attn_window, device)
        return self._masks[key]

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        """
        Args:
            x: Input tensor of shape [batch_size, seq_len, d_model].

        Returns:
            Output tensor of the same shape.
        """
        mask = self.attn_mask(x.shape[1], x.device)
        for layer in self.layers:
            x = layer(x, mask)
        return x
