"""
Tests for weight loading and model directories.
"""

import os

import pytest
import torch

from basecall_lite.errors import ConfigError
from basecall_lite.models.tx import (
    ModelConfig,
    build_model,
    load_pretrained,
    load_weights,
    validate_weight_shapes,
)
from basecall_lite.models.tx.weight_loader import expected_weight_shapes, resolve_weights_path


@pytest.mark.unit
def test_expected_shapes_match_model(tiny_config: ModelConfig) -> None:
    """Test that the expected shape table covers exactly the model's state dict."""
    state_dict = build_model(tiny_config).state_dict()
    expected = expected_weight_shapes(tiny_config)

    assert set(expected) == set(state_dict)
    for name, tensor in state_dict.items():
        assert tuple(tensor.shape) == expected[name], name


@pytest.mark.unit
def test_validate_weight_shapes(tiny_config: ModelConfig, tiny_state_dict) -> None:
    """Test that missing, unexpected and misshapen weights are all rejected."""
    validate_weight_shapes(tiny_state_dict, tiny_config)

    missing = dict(tiny_state_dict)
    del missing["upsample.linear.bias"]
    with pytest.raises(ConfigError, match="Missing weights"):
        validate_weight_shapes(missing, tiny_config)

    unexpected = dict(tiny_state_dict)
    unexpected["lm_head.weight"] = torch.zeros(1)
    with pytest.raises(ConfigError, match="Unexpected weights"):
        validate_weight_shapes(unexpected, tiny_config)

    misshapen = dict(tiny_state_dict)
    misshapen["convs.layers.0.weight"] = torch.zeros(4, 1, 3)
    with pytest.raises(ConfigError, match="convs.layers.0.weight"):
        validate_weight_shapes(misshapen, tiny_config)


@pytest.mark.unit
def test_model_dir_round_trip(model_dir: str, tiny_config: ModelConfig, tiny_state_dict) -> None:
    """Test that save_pretrained/load_pretrained preserve config and weights."""
    assert os.path.isfile(os.path.join(model_dir, "config.json"))
    assert os.path.isfile(os.path.join(model_dir, "model.safetensors"))

    config, state_dict = load_pretrained(model_dir)

    assert config == tiny_config
    assert set(state_dict) == set(tiny_state_dict)
    for name, tensor in tiny_state_dict.items():
        assert torch.equal(state_dict[name], tensor), name
        assert state_dict[name].device.type == "cpu"


@pytest.mark.unit
def test_load_torch_weights(tmp_path, tiny_state_dict) -> None:
    """Test loading a plain torch weight file."""
    torch.save(tiny_state_dict, tmp_path / "weights.pt")

    assert resolve_weights_path(str(tmp_path)).endswith("weights.pt")
    state_dict = load_weights(str(tmp_path))
    assert torch.equal(state_dict["crf.linear.weight"], tiny_state_dict["crf.linear.weight"])


@pytest.mark.unit
def test_safetensors_preferred_over_torch(model_dir: str, tiny_state_dict) -> None:
    """Test that model.safetensors wins when both weight files exist."""
    torch.save(tiny_state_dict, os.path.join(model_dir, "weights.pt"))
    assert resolve_weights_path(model_dir).endswith("model.safetensors")


@pytest.mark.unit
def test_missing_weights_raise(tmp_path, tiny_config: ModelConfig) -> None:
    """Test that a directory without weights raises ConfigError."""
    tiny_config.save_pretrained(str(tmp_path))

    with pytest.raises(ConfigError, match="No weight file"):
        load_pretrained(str(tmp_path))
    with pytest.raises(ConfigError, match="does not exist"):
        load_weights(str(tmp_path / "nothing.safetensors"))


@pytest.mark.unit
def test_corrupt_weights_raise(tmp_path) -> None:
    """Test that an unreadable weight file raises ConfigError."""
    path = tmp_path / "model.safetensors"
    path.write_bytes(b"definitely not safetensors")
    with pytest.raises(ConfigError):
        load_weights(str(path))


@pytest.mark.unit
def test_loaded_weights_build_identical_model(model_dir: str, tiny_state_dict) -> None:
    """Test that a model built from a directory matches one built from the weights."""
    config, state_dict = load_pretrained(model_dir)
    x = torch.randn(2, 1, 1000)

    with torch.inference_mode():
        from_dir = build_model(config, state_dict)(x)
        direct = build_model(config, tiny_state_dict)(x)

    assert torch.equal(from_dir, direct)
