"""
Weight loading utilities for the transformer basecall model.

A model directory holds ``config.json`` plus one weight file, either
``model.safetensors`` (preferred) or ``weights.pt``. This module loads and
saves weight files and validates weight shapes against the model
architecture before they reach the device.
"""

import os
import pickle
from typing import Dict, Tuple

import torch
from safetensors import SafetensorError
from safetensors.torch import load_file, save_file

from basecall_lite.errors import ConfigError
from basecall_lite.models.tx.config import ModelConfig

SAFETENSORS_FILENAME = "model.safetensors"
TORCH_FILENAME = "weights.pt"


def resolve_weights_path(path: str) -> str:
    """Return the weight file for ``path`` (a file or a model directory).

    Raises:
        ConfigError: If no weight file can be found.
    """
    path = os.path.expanduser(path)
    if os.path.isdir(path):
        for filename in (SAFETENSORS_FILENAME, TORCH_FILENAME):
            candidate = os.path.join(path, filename)
            if os.path.isfile(candidate):
                return candidate
        raise ConfigError(
            f"No weight file ({SAFETENSORS_FILENAME} or {TORCH_FILENAME}) in '{path}'"
        )
    if not os.path.isfile(path):
        raise ConfigError(f"Weight file '{path}' does not exist")
    return path


def load_weights(path: str) -> Dict[str, torch.Tensor]:
    """Load a state dict onto the host.

    Args:
        path: Weight file or model directory.

    Returns:
        Dictionary mapping parameter names to CPU tensors.

    Raises:
        ConfigError: If the file is missing or cannot be read.
    """
    weights_path = resolve_weights_path(path)
    try:
        if weights_path.endswith(".safetensors"):
            return load_file(weights_path, device="cpu")
        return torch.load(weights_path, map_location="cpu", weights_only=True)
    except (OSError, RuntimeError, ValueError, pickle.UnpicklingError, SafetensorError) as e:
        raise ConfigError(f"Failed to load weights from {weights_path}: {e}") from e


def save_weights(state_dict: Dict[str, torch.Tensor], model_dir: str) -> str:
    """Save ``state_dict`` as ``model.safetensors`` in ``model_dir``."""
    os.makedirs(model_dir, exist_ok=True)
    path = os.path.join(model_dir, SAFETENSORS_FILENAME)
    save_file({k: v.detach().cpu().contiguous() for k, v in state_dict.items()}, path)
    return path


def expected_weight_shapes(config: ModelConfig) -> Dict[str, Tuple[int, ...]]:
    """Map every parameter name of a TxModel to its expected shape."""
    d = config.d_model
    shapes: Dict[str, Tuple[int, ...]] = {}

    for i, conv in enumerate(config.convs):
        shapes[f"convs.layers.{i}.weight"] = (conv.size, conv.insize, conv.winlen)
        shapes[f"convs.layers.{i}.bias"] = (conv.size,)

    for i in range(config.depth):
        prefix = f"transformer_encoder.layers.{i}"
        shapes[f"{prefix}.self_attn.wqkv.weight"] = (3 * d, d)
        shapes[f"{prefix}.self_attn.out_proj.weight"] = (d, d)
        shapes[f"{prefix}.self_attn.out_proj.bias"] = (d,)
        shapes[f"{prefix}.ff.fc1.weight"] = (2 * config.dim_feedforward, d)
        shapes[f"{prefix}.ff.fc2.weight"] = (d, config.dim_feedforward)
        shapes[f"{prefix}.norm1.weight"] = (d,)
        shapes[f"{prefix}.norm2.weight"] = (d,)

    shapes["upsample.linear.weight"] = (config.upsample_scale * d, d)
    shapes["upsample.linear.bias"] = (config.upsample_scale * d,)
    shapes["crf.linear.weight"] = (config.outsize, d)
    return shapes


def validate_weight_shapes(state_dict: Dict[str, torch.Tensor], config: ModelConfig) -> None:
    """Validate that a state dict matches the model architecture.

    Raises:
        ConfigError: If a weight is missing, unexpected, or has the wrong shape.
    """
    expected = expected_weight_shapes(config)

    missing = sorted(set(expected) - set(state_dict))
    if missing:
        raise ConfigError(f"Missing weights for {config.name}: {missing[:5]}")

    unexpected = sorted(set(state_dict) - set(expected))
    if unexpected:
        raise ConfigError(f"Unexpected weights for {config.name}: {unexpected[:5]}")

    for name, tensor in state_dict.items():
        actual_shape = tuple(tensor.shape)
        if actual_shape != expected[name]:
            raise ConfigError(
                f"Weight '{name}' shape mismatch: expected {expected[name]}, got {actual_shape}"
            )


def load_pretrained(model_dir: str) -> Tuple[ModelConfig, Dict[str, torch.Tensor]]:
    """Load configuration and validated weights from a model directory."""
    config = ModelConfig.from_pretrained(model_dir)
    state_dict = load_weights(model_dir)
    validate_weight_shapes(state_dict, config)
    return config, state_dict


def save_pretrained(config: ModelConfig, state_dict: Dict[str, torch.Tensor], model_dir: str) -> None:
    """Write ``config.json`` and ``model.safetensors`` into ``model_dir``."""
    config.save_pretrained(model_dir)
    save_weights(state_dict, model_dir)
