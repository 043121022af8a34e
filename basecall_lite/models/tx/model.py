"""
Transformer basecall model.

Pipeline of the forward pass, for an input batch of shape [N, C, T]:
1. ConvStack: downsample the raw signal by ``conv_stride``
2. TxEncoderStack: windowed-attention transformer encoder
3. LinearUpsample: expand time by ``upsample_scale``
4. LinearScaledCRF: project to CRF transition scores

Output shape is [N, T // stride, outsize].
"""

from typing import Dict, Optional

import torch
import torch.nn as nn

from basecall_lite.errors import ConfigError
from basecall_lite.models.tx.config import BatchShape, ModelConfig
from basecall_lite.models.tx.conv import ConvStack
from basecall_lite.models.tx.encoder import TxEncoderStack
from basecall_lite.models.tx.weight_loader import validate_weight_shapes


class LinearUpsample(nn.Module):
    """Upsample in time by projecting each step to ``scale_factor`` steps."""

    def __init__(self, d_model: int, scale_factor: int) -> None:
        super().__init__()
        self.d_model = d_model
        self.scale_factor = scale_factor
        self.linear = nn.Linear(d_model, scale_factor * d_model, bias=True)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        batch_size, seq_len, _ = x.shape
        return self.linear(x).reshape(batch_size, self.scale_factor * seq_len, self.d_model)


class LinearScaledCRF(nn.Module):
    """Linear projection to CRF scores, multiplied by a fixed scale."""

    def __init__(self, d_model: int, outsize: int, scale: float) -> None:
        super().__init__()
        self.scale = scale
        self.linear = nn.Linear(d_model, outsize, bias=False)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.linear(x) * self.scale


class TxModel(nn.Module):
    """Transformer basecall model.

    Attributes:
        config: Model configuration.
        convs: Convolution stack.
        transformer_encoder: Transformer encoder stack.
        upsample: Linear time upsampling.
        crf: Scaled CRF head.
    """

    def __init__(self, config: ModelConfig) -> None:
        super().__init__()
        self.config = config
        self.convs = ConvStack(config.convs)
        self.transformer_encoder = TxEncoderStack(config)
        self.upsample = LinearUpsample(config.d_model, config.upsample_scale)
        self.crf = LinearScaledCRF(config.d_model, config.outsize, config.crf_scale)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        """Forward pass.

        Args:
            x: Signal batch of shape [batch_size, num_features, chunk_size].

        Returns:
            CRF scores of shape [batch_size, chunk_size // stride, outsize].
        """
        h = self.convs(x)
        h = self.transformer_encoder(h)
        h = self.upsample(h)
        return self.crf(h)


def build_model(
    config: ModelConfig,
    state_dict: Optional[Dict[str, torch.Tensor]] = None,
    seed: int = 0,
) -> TxModel:
    """Build a TxModel in eval mode.

    Parameters are initialised from ``seed`` without disturbing the global RNG,
    then overwritten by ``state_dict`` when given.

    Raises:
        ConfigError: If ``state_dict`` does not match the architecture.
    """
    with torch.random.fork_rng(devices=[]):
        torch.manual_seed(seed)
        model = TxModel(config)

    if state_dict is not None:
        validate_weight_shapes(state_dict, config)
        try:
            model.load_state_dict(state_dict, strict=True)
        except RuntimeError as e:
            raise ConfigError(f"Failed to load weights into {config.name}: {e}") from e

    return model.eval()


def parameter_bytes(model: nn.Module) -> int:
    """Bytes occupied by the model's parameters and buffers."""
    tensors = list(model.parameters()) + list(model.buffers())
    return sum(t.numel() * t.element_size() for t in tensors)


def estimate_workspace_bytes(
    config: ModelConfig,
    shape: BatchShape,
    dtype: torch.dtype = torch.float32,
) -> int:
    """Estimate the activation memory of one forward pass plus decode.

    The estimate is the sum of the convolution activations, the peak of a
    single encoder layer (activations are released between layers in
    inference mode) and the head outputs.
    """
    itemsize = torch.empty((), dtype=dtype).element_size()
    seq_len = shape.chunk_size

    conv_elems = seq_len * config.num_features
    for conv in config.convs:
        seq_len //= conv.stride
        conv_elems += 2 * seq_len * conv.size

    enc_len = seq_len
    d = config.d_model
    layer_elems = (
        6 * enc_len * d  # fused qkv plus its rotary copy
        + config.nhead * enc_len * enc_len  # attention scores
        + 3 * enc_len * config.dim_feedforward  # gated mlp
        + 3 * enc_len * d  # residuals and norms
    )

    out_len = config.output_length(shape.chunk_size)
    head_elems = out_len * d + 2 * out_len * config.outsize

    return shape.batch_size * itemsize * (conv_elems + layer_elems + head_elems)
