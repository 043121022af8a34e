"""
Gated MLP used by the transformer encoder layers.

A single fused projection produces the value and gate halves:
    y, gate = fc1(x).chunk(2)
    out = fc2(silu(gate) * y)
"""

import torch
import torch.nn as nn
import torch.nn.functional as F


class GatedMLP(nn.Module):
    """Feed-forward network with SiLU gating.

    Attributes:
        in_features: Input/output dimension.
        hidden_features: Hidden dimension of the gated activation.
        fc1: Fused value/gate projection (in_features -> 2 * hidden_features).
        fc2: Output projection (hidden_features -> in_features).
    """

    def __init__(self, in_features: int, hidden_features: int) -> None:
        super().__init__()
        self.in_features = in_features
        self.hidden_features = hidden_features
        self.fc1 = nn.Linear(in_features, 2 * hidden_features, bias=False)
        self.fc2 = nn.Linear(hidden_features, in_features, bias=False)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        """Forward pass: fc2(silu(gate) * y).

        Args:
            x: Input tensor of shape [batch_size, seq_len, in_features].

        Returns:
            Output tensor of shape [batch_size, seq_len, in_features].
        """
        y, gate = self.fc1(x).chunk(2, dim=-1)
        return self.fc2(F.silu(gate) * y)
