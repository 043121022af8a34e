"""
Windowed multi-head self attention for the transformer basecall encoder.

The attention layer consists of:
- a fused Q/K/V projection (nn.Linear, d_model -> 3 * d_model)
- rotary position embeddings applied to queries and keys
- scaled dot-product attention restricted to a band around the diagonal
- an output projection

Every chunk in a batch attends only within itself, so rows of a batch never
influence each other.
"""

from typing import Dict, Tuple

import torch
import torch.nn as nn
import torch.nn.functional as F

from basecall_lite.models.tx.rope import apply_rotary_emb, precompute_freqs


def build_attn_window_mask(
    seq_len: int,
    attn_window: Tuple[int, int],
    device: torch.device,
) -> torch.Tensor:
    """Build a banded boolean attention mask.

    Position ``i`` may attend to positions ``[i - upper, i + lower]``.

    Args:
        seq_len: Sequence length.
        attn_window: (upper, lower) window extent.
        device: Device for the mask.

    Returns:
        Boolean tensor of shape [seq_len, seq_len] (True = attend).
    """
    win_upper, win_lower = attn_window
    ones = torch.ones(seq_len, seq_len, dtype=torch.bool, device=device)
    return torch.triu(ones, diagonal=-win_upper) & torch.tril(ones, diagonal=win_lower)


class MultiHeadAttention(nn.Module):
    """Multi-head self attention with a fused QKV projection and RoPE.

    Attributes:
        d_model: Hidden dimension.
        nhead: Number of attention heads.
        head_dim: Dimension of each attention head.
        wqkv: Fused query/key/value projection.
        out_proj: Output projection.
    """

    def __init__(
        self,
        d_model: int,
        nhead: int,
        qkv_bias: bool = False,
        out_bias: bool = True,
        rope_theta: float = 10000.0,
    ) -> None:
        super().__init__()
        self.d_model = d_model
        self.nhead = nhead
        self.head_dim = d_model // nhead
        self.rope_theta = rope_theta

        self.wqkv = nn.Linear(d_model, 3 * d_model, bias=qkv_bias)
        self.out_proj = nn.Linear(d_model, d_model, bias=out_bias)

        # seq_len -> (cos, sin); filled lazily since chunk sizes vary per shape
        self._freqs: Dict[int, Tuple[torch.Tensor, torch.Tensor]] = {}

    def rotary_freqs(self, seq_len: int) -> Tuple[torch.Tensor, torch.Tensor]:
        if seq_len not in self._freqs:
            self._freqs[seq_len] = precompute_freqs(self.head_dim, seq_len, self.rope_theta)
        return self._freqs[seq_len]

    def forward(self, x: torch.Tensor, attn_mask: torch.Tensor) -> torch.Tensor:
        """Forward pass.

        Args:
            x: Input tensor of shape [batch_size, seq_len, d_model].
            attn_mask: Boolean mask of shape [seq_len, seq_len].

        Returns:
            Output tensor of shape [batch_size, seq_len, d_model].
        """
        batch_size, seq_len, _ = x.shape

        qkv = self.wqkv(x).view(batch_size, seq_len, 3, self.nhead, self.head_dim)
        cos, sin = self.rotary_freqs(seq_len)
        qkv = apply_rotary_emb(qkv, cos, sin)

        # [N, T, 3, H, D] -> [N, 3, H, T, D]
        q, k, v = qkv.permute(0, 2, 3, 1, 4).unbind(1)
        attn_output = F.scaled_dot_product_attention(q, k, v, attn_mask=attn_mask)

        # [N, H, T, D] -> [N, T, H * D]
        attn_output = attn_output.transpose(1, 2).reshape(batch_size, seq_len, self.d_model)
        return self.out_proj(attn_output)
