"""
RMSNorm (Root Mean Square Layer Normalization) implementation.

RMSNorm normalizes using only the root mean square statistic, without
centering. The statistic is always computed in float32 so that half precision
activations on the device do not lose accuracy; the result is cast back to
the input dtype.

Formula: RMSNorm(x) = x * rsqrt(mean(x^2) + eps) * weight
"""

import torch
import torch.nn as nn


class RMSNorm(nn.Module):
    """
    Root Mean Square Layer Normalization.

    Args:
        hidden_size: The size of the hidden dimension (last dimension of input)
        eps: Small constant for numerical stability (default: 1e-5)

    Attributes:
        weight: Learnable scaling parameter of shape (hidden_size,)
        eps: Epsilon value for numerical stability
    """

    def __init__(self, hidden_size: int, eps: float = 1e-5) -> None:
        super().__init__()
        self.eps = eps
        self.weight = nn.Parameter(torch.ones(hidden_size))

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        """
        Apply RMSNorm to input tensor.

        Args:
            x: Input tensor of shape [..., hidden_size]

        Returns:
            Normalized tensor of same shape and dtype as input
        """
        x32 = x.float()
        variance = torch.mean(x32 * x32, dim=-1, keepdim=True)
        x_normalized = x32 * torch.rsqrt(variance + self.eps)
        return (x_normalized * self.weight.float()).to(x.dtype)
