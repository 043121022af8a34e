"""
Rotary position embeddings for the fused QKV projection.

Rotation is applied to the query and key slices of a fused tensor of shape
[batch_size, seq_len, 3, num_heads, head_dim]; the value slice is left
untouched. Pairs are formed from the first and second halves of the head
dimension.

References:
- RoFormer: Enhanced Transformer with Rotary Position Embedding
  https://arxiv.org/abs/2104.09864
"""

from typing import Tuple

import torch


def precompute_freqs(
    dim: int,
    end: int,
    theta: float = 10000.0,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Precompute rotation cosines and sines for all positions up to ``end``.

    Args:
        dim: Dimension of each attention head (must be even)
        end: Maximum sequence length to precompute
        theta: Base value for frequency computation (default: 10000.0)

    Returns:
        Tuple (cos, sin), each of shape [end, 1, 1, dim // 2], in float32
    """
    # theta^(-2i/dim) for i in [0, dim/2)
    inv_freq = 1.0 / (theta ** (torch.arange(0, dim, 2, dtype=torch.float32) / dim))
    positions = torch.arange(end, dtype=torch.float32)
    angles = torch.outer(positions, inv_freq).reshape(end, 1, 1, dim // 2)
    return torch.cos(angles), torch.sin(angles)


def apply_rotary_emb(
    qkv: torch.Tensor,
    cos: torch.Tensor,
    sin: torch.Tensor,
) -> torch.Tensor:
    """
    Apply rotary position embeddings to the q and k slices of a fused tensor.

    Args:
        qkv: Tensor of shape [batch_size, seq_len, 3, num_heads, head_dim]
        cos: Cosines of shape [>= seq_len, 1, 1, head_dim // 2]
        sin: Sines of shape [>= seq_len, 1, 1, head_dim // 2]

    Returns:
        Tensor with the same shape and dtype as ``qkv``
    """
    seq_len = qkv.shape[1]
    half = qkv.shape[-1] // 2
    cos = cos[:seq_len].to(qkv.device)
    sin = sin[:seq_len].to(qkv.device)

    out = qkv.clone()
    qk = qkv[:, :, :2].float()
    evens = qk[..., :half]
    odds = qk[..., half:]
    out[:, :, :2, :, :half] = (cos * evens - sin * odds).to(qkv.dtype)
    out[:, :, :2, :, half:] = (sin * evens + cos * odds).to(qkv.dtype)
    return out
