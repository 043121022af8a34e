"""
Pytest configuration and shared fixtures for basecall-lite tests.

This module provides reusable fixtures for testing, including:
- A tiny transformer model configuration that runs quickly on CPU
- A fixed set of weights for that configuration
- A saved model directory
- Callers on an isolated device registry
- CPU device enforcement
"""

import os
from typing import Dict

import pytest
import torch

from basecall_lite.basecall import Caller, DeviceRegistry
from basecall_lite.models.tx import ModelConfig, build_model, save_pretrained
from tests.data import TEST_DEVICE_MEMORY, make_tiny_config


# Force CPU-only testing by disabling CUDA
os.environ["CUDA_VISIBLE_DEVICES"] = ""


@pytest.fixture(scope="session")
def cpu_device() -> torch.device:
    """
    Force CPU device for all tests.

    Returns:
        torch.device: CPU device object
    """
    return torch.device("cpu")


@pytest.fixture(scope="session")
def tiny_config() -> ModelConfig:
    """Tiny model configuration shared by the whole session."""
    return make_tiny_config()


@pytest.fixture(scope="session")
def tiny_state_dict(tiny_config: ModelConfig) -> Dict[str, torch.Tensor]:
    """
    Fixed weights for the tiny model.

    Built from seed 1234 so that every Caller in a test sees identical
    weights, independent of test order.
    """
    model = build_model(tiny_config, seed=1234)
    return {k: v.detach().clone() for k, v in model.state_dict().items()}


@pytest.fixture
def model_dir(tmp_path, tiny_config, tiny_state_dict) -> str:
    """A model directory holding config.json and model.safetensors."""
    path = str(tmp_path / "tiny_model")
    save_pretrained(tiny_config, tiny_state_dict, path)
    return path


@pytest.fixture
def registry() -> DeviceRegistry:
    """A device registry private to one test."""
    return DeviceRegistry()


@pytest.fixture
def make_caller(tiny_config, tiny_state_dict, registry):
    """
    Factory for Callers on the tiny model.

    Every Caller created through the factory is closed at teardown.

    Example:
        def test_something(make_caller):
            caller = make_caller(batch_size=2)
    """
    callers = []

    def factory(**kwargs) -> Caller:
        kwargs.setdefault("state_dict", tiny_state_dict)
        kwargs.setdefault("device_memory_bytes", TEST_DEVICE_MEMORY)
        kwargs.setdefault("registry", registry)
        config = kwargs.pop("model_config", tiny_config)
        caller = Caller(config, **kwargs)
        callers.append(caller)
        return caller

    yield factory

    for caller in callers:
        caller.close()


@pytest.fixture
def caller(make_caller) -> Caller:
    """A running Caller with batch_size=4 and chunk_size=1000."""
    return make_caller()
