"""
Convolution stack that turns raw signal into encoder features.

Every layer uses an odd window with symmetric padding, so an input whose
length is a multiple of the total stride maps to exactly
``length // conv_stride`` output steps.
"""

from typing import Tuple

import torch
import torch.nn as nn
import torch.nn.functional as F

from basecall_lite.models.tx.config import ConvParams


def _activate(x: torch.Tensor, activation: str) -> torch.Tensor:
    if activation == "swish":
        return F.silu(x)
    if activation == "tanh":
        return torch.tanh(x)
    return x


class ConvStack(nn.Module):
    """Sequence of Conv1d layers with per-layer activation.

    Input is [batch_size, channels, seq_len]; output is transposed to
    [batch_size, seq_len // conv_stride, d_model] for the encoder.
    """

    def __init__(self, convs: Tuple[ConvParams, ...]) -> None:
        super().__init__()
        self.layers = nn.ModuleList(
            nn.Conv1d(
                conv.insize,
                conv.size,
                kernel_size=conv.winlen,
                stride=conv.stride,
                padding=conv.winlen // 2,
                bias=True,
            )
            for conv in convs
        )
        self.activations = [conv.activation for conv in convs]

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        for layer, activation in zip(self.layers, self.activations):
            x = _activate(layer(x), activation)
        return x.transpose(1, 2)
