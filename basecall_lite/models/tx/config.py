"""
Transformer basecall model configuration.

This module defines the ModelConfig class which stores the chunking parameters
the engine needs (chunk size, stride, supported batch shapes, batch timeout)
together with the hyperparameters of the transformer basecall network:
convolution stack, encoder dimensions, attention window, upsampling and CRF
head settings.

A ModelConfig is immutable once constructed and is shared by reference across
every Caller and ModelRunner of a run.
"""

import json
import math
import os
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Dict, Tuple

from basecall_lite.errors import ConfigError

CONFIG_FILENAME = "config.json"

_ACTIVATIONS = ("swish", "tanh", "identity")


@dataclass(frozen=True)
class ConvParams:
    """One layer of the convolution stack."""

    insize: int
    size: int
    winlen: int
    stride: int = 1
    activation: str = "swish"


@dataclass(frozen=True)
class BatchShape:
    """A fixed (batch_size, chunk_size) shape supported by a Caller."""

    batch_size: int
    chunk_size: int


def _default_convs() -> Tuple[ConvParams, ...]:
    return (
        ConvParams(insize=1, size=64, winlen=5, stride=1),
        ConvParams(insize=64, size=64, winlen=5, stride=1),
        ConvParams(insize=64, size=128, winlen=9, stride=3),
        ConvParams(insize=128, size=128, winlen=9, stride=2),
        ConvParams(insize=128, size=512, winlen=5, stride=2),
    )


@dataclass(frozen=True)
class ModelConfig:
    """Configuration for the transformer basecall model.

    Attributes:
        convs: Convolution stack, applied in order to the raw signal.
        d_model: Transformer hidden dimension.
        nhead: Number of attention heads.
        depth: Number of transformer encoder layers.
        dim_feedforward: Hidden dimension of the gated MLP.
        attn_window: (upper, lower) extent of the banded attention mask.
        deepnorm_alpha: Residual scaling of the deepnorm encoder layers.
        upsample_scale: Time upsampling factor applied after the encoder.
        state_len: CRF state length (number of bases in a state).
        n_base: Alphabet size.
        crf_scale: Scale applied to the CRF head output.
        rope_theta: Base frequency for rotary position embeddings.
        rms_norm_eps: Epsilon value for RMSNorm stability.
        chunk_size: Default number of samples per chunk.
        batch_shapes: Supported (batch_size, chunk_size) shapes. Empty means
            a single shape chosen by the Caller.
        batch_size: Default batch size used when no batch shapes are given.
        batch_timeout_ms: How long a pipeline waits before flushing a
            partial batch.
        batch_granularity: Batch sizes chosen automatically are multiples
            of this value.
        max_batch_size: Upper bound for automatic batch size selection.
        qscale: Quality score calibration scale.
        qbias: Quality score calibration offset.
        name: Model name used in diagnostics.
    """

    convs: Tuple[ConvParams, ...] = field(default_factory=_default_convs)
    d_model: int = 512
    nhead: int = 8
    depth: int = 18
    dim_feedforward: int = 2048
    attn_window: Tuple[int, int] = (127, 128)
    deepnorm_alpha: float = 2.4494897
    upsample_scale: int = 2
    state_len: int = 5
    n_base: int = 4
    crf_scale: float = 5.0
    rope_theta: float = 10000.0
    rms_norm_eps: float = 1e-5
    chunk_size: int = 12288
    batch_shapes: Tuple[BatchShape, ...] = ()
    batch_size: int = 64
    batch_timeout_ms: int = 100
    batch_granularity: int = 32
    max_batch_size: int = 512
    qscale: float = 1.0
    qbias: float = 0.0
    name: str = "tx"

    def __post_init__(self) -> None:
        # Normalise list inputs (e.g. from JSON) into hashable tuples.
        object.__setattr__(
            self,
            "convs",
            tuple(c if isinstance(c, ConvParams) else ConvParams(**c) for c in self.convs),
        )
        object.__setattr__(self, "attn_window", tuple(self.attn_window))
        object.__setattr__(
            self,
            "batch_shapes",
            tuple(_as_batch_shape(s) for s in self.batch_shapes),
        )
        self._validate()

    def _validate(self) -> None:
        """Validate configuration parameters.

        Raises:
            ConfigError: If configuration parameters are invalid.
        """
        if not self.convs:
            raise ConfigError("convs must contain at least one layer")

        prev_size = self.convs[0].insize
        for i, conv in enumerate(self.convs):
            if conv.insize != prev_size:
                raise ConfigError(
                    f"conv {i} insize ({conv.insize}) does not match previous "
                    f"layer size ({prev_size})"
                )
            if conv.size <= 0 or conv.insize <= 0:
                raise ConfigError(f"conv {i} sizes must be positive")
            if conv.winlen <= 0 or conv.winlen % 2 == 0:
                raise ConfigError(f"conv {i} winlen must be odd and positive, got {conv.winlen}")
            if conv.stride <= 0:
                raise ConfigError(f"conv {i} stride must be positive, got {conv.stride}")
            if conv.activation not in _ACTIVATIONS:
                raise ConfigError(
                    f"conv {i} activation must be one of {_ACTIVATIONS}, got '{conv.activation}'"
                )
            prev_size = conv.size

        if self.convs[-1].size != self.d_model:
            raise ConfigError(
                f"last conv size ({self.convs[-1].size}) must equal d_model ({self.d_model})"
            )
        if self.d_model <= 0 or self.nhead <= 0:
            raise ConfigError("d_model and nhead must be positive")
        if self.d_model % self.nhead != 0:
            raise ConfigError(
                f"d_model ({self.d_model}) must be divisible by nhead ({self.nhead})"
            )
        if self.head_dim % 2 != 0:
            raise ConfigError(f"head_dim ({self.head_dim}) must be even for rotary embeddings")
        if self.depth < 0:
            raise ConfigError(f"depth must be non-negative, got {self.depth}")
        if self.dim_feedforward <= 0:
            raise ConfigError(f"dim_feedforward must be positive, got {self.dim_feedforward}")
        if len(self.attn_window) != 2 or min(self.attn_window) < 0:
            raise ConfigError(f"attn_window must be two non-negative ints, got {self.attn_window}")
        if self.upsample_scale <= 0:
            raise ConfigError(f"upsample_scale must be positive, got {self.upsample_scale}")
        if self.conv_stride % self.upsample_scale != 0:
            raise ConfigError(
                f"conv stride ({self.conv_stride}) must be divisible by "
                f"upsample_scale ({self.upsample_scale})"
            )
        if self.state_len <= 0 or self.n_base <= 0:
            raise ConfigError("state_len and n_base must be positive")
        if self.chunk_size <= 0 or self.chunk_size % self.conv_stride != 0:
            raise ConfigError(
                f"chunk_size ({self.chunk_size}) must be a positive multiple of "
                f"{self.conv_stride}"
            )
        for shape in self.batch_shapes:
            if shape.batch_size <= 0:
                raise ConfigError(f"batch shape {shape} has non-positive batch_size")
            if shape.chunk_size <= 0 or shape.chunk_size % self.conv_stride != 0:
                raise ConfigError(
                    f"batch shape {shape} chunk_size must be a positive multiple of "
                    f"{self.conv_stride}"
                )
        if self.batch_size < 0:
            raise ConfigError(f"batch_size must be non-negative, got {self.batch_size}")
        if self.batch_timeout_ms < 0:
            raise ConfigError(f"batch_timeout_ms must be non-negative, got {self.batch_timeout_ms}")
        if self.batch_granularity <= 0:
            raise ConfigError(f"batch_granularity must be positive, got {self.batch_granularity}")
        if self.max_batch_size < self.batch_granularity:
            raise ConfigError(
                f"max_batch_size ({self.max_batch_size}) must be at least "
                f"batch_granularity ({self.batch_granularity})"
            )

    @property
    def num_features(self) -> int:
        """Number of input channels per sample."""
        return self.convs[0].insize

    @property
    def conv_stride(self) -> int:
        """Total downsampling of the convolution stack."""
        return math.prod(conv.stride for conv in self.convs)

    @property
    def stride(self) -> int:
        """Downsampling between input chunk length and output sequence length."""
        return self.conv_stride // self.upsample_scale

    @property
    def head_dim(self) -> int:
        return self.d_model // self.nhead

    @property
    def num_states(self) -> int:
        return self.n_base**self.state_len

    @property
    def outsize(self) -> int:
        """Width of the CRF head: one stay plus n_base moves per state."""
        return self.num_states * (self.n_base + 1)

    def output_length(self, chunk_size: int) -> int:
        """Number of output time steps for an input chunk of ``chunk_size`` samples."""
        return chunk_size // self.stride

    def replace(self, **changes: Any) -> "ModelConfig":
        """Return a copy with the given fields replaced (validated again)."""
        return replace(self, **changes)

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "ModelConfig":
        """Build a configuration from a plain dictionary.

        Unknown keys are ignored so that model directories carrying extra
        metadata still load.
        """
        known = cls.__dataclass_fields__.keys()
        try:
            return cls(**{k: v for k, v in config.items() if k in known})
        except TypeError as e:
            raise ConfigError(f"Invalid model config: {e}") from e

    @classmethod
    def from_pretrained(cls, model_dir: str) -> "ModelConfig":
        """Load configuration from a model directory containing ``config.json``.

        Args:
            model_dir: Path to model directory.

        Returns:
            ModelConfig instance with parameters loaded from the directory.

        Raises:
            ConfigError: If the file is missing or malformed.
        """
        path = os.path.join(os.path.expanduser(model_dir), CONFIG_FILENAME)
        if not os.path.isfile(path):
            raise ConfigError(f"No {CONFIG_FILENAME} found in model directory '{model_dir}'")
        try:
            with open(path) as f:
                raw = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in {path}: {e}") from e
        if not isinstance(raw, dict):
            raise ConfigError(f"Invalid model config at {path}: expected an object")
        return cls.from_dict(raw)

    def save_pretrained(self, model_dir: str) -> str:
        """Write ``config.json`` into ``model_dir`` and return its path."""
        os.makedirs(model_dir, exist_ok=True)
        path = os.path.join(model_dir, CONFIG_FILENAME)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)
        return path

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to a JSON-compatible dictionary."""
        data = asdict(self)
        data["attn_window"] = list(self.attn_window)
        data["batch_shapes"] = [[s.batch_size, s.chunk_size] for s in self.batch_shapes]
        return data


def _as_batch_shape(shape: Any) -> BatchShape:
    if isinstance(shape, BatchShape):
        return shape
    if isinstance(shape, dict):
        return BatchShape(**shape)
    batch_size, chunk_size = shape
    return BatchShape(int(batch_size), int(chunk_size))
