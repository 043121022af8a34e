"""
Tests for the transformer basecall model and its building blocks.
"""

import pytest
import torch

from basecall_lite.errors import ConfigError
from basecall_lite.models.tx import (
    BatchShape,
    ModelConfig,
    TxModel,
    build_model,
    estimate_workspace_bytes,
    parameter_bytes,
)
from basecall_lite.models.tx.attention import MultiHeadAttention, build_attn_window_mask
from basecall_lite.models.tx.ffn import GatedMLP
from basecall_lite.models.tx.rmsnorm import RMSNorm
from basecall_lite.models.tx.rope import apply_rotary_emb, precompute_freqs
from tests.utils.comparison import assert_tensors_close


@pytest.mark.unit
def test_rmsnorm_normalizes() -> None:
    """Test that RMSNorm output has unit root mean square with unit weight."""
    norm = RMSNorm(16)
    x = torch.randn(2, 5, 16) * 7.0
    y = norm(x)
    rms = y.pow(2).mean(dim=-1).sqrt()
    assert_tensors_close(rms, torch.ones_like(rms), atol=1e-3, rtol=1e-3)


@pytest.mark.unit
def test_rmsnorm_preserves_dtype() -> None:
    """Test that RMSNorm returns the input dtype."""
    norm = RMSNorm(8)
    x = torch.randn(3, 8, dtype=torch.bfloat16)
    assert norm(x).dtype == torch.bfloat16


@pytest.mark.unit
def test_gated_mlp_shape() -> None:
    """Test GatedMLP maps [N, T, D] to [N, T, D]."""
    mlp = GatedMLP(32, 64)
    assert mlp.fc1.weight.shape == (128, 32)
    assert mlp(torch.randn(2, 7, 32)).shape == (2, 7, 32)


@pytest.mark.unit
def test_attn_window_mask_is_banded() -> None:
    """Test that position i attends exactly to [i - upper, i + lower]."""
    mask = build_attn_window_mask(10, (2, 3), torch.device("cpu"))

    assert mask.dtype == torch.bool
    for i in range(10):
        for j in range(10):
            assert mask[i, j].item() == (i - 2 <= j <= i + 3)


@pytest.mark.unit
def test_rotary_embedding_preserves_norm_and_values() -> None:
    """Test that RoPE rotates q/k without changing norms and leaves v untouched."""
    qkv = torch.randn(2, 6, 3, 4, 8)
    cos, sin = precompute_freqs(8, 6)
    out = apply_rotary_emb(qkv, cos, sin)

    assert out.shape == qkv.shape
    assert torch.equal(out[:, :, 2], qkv[:, :, 2])
    assert_tensors_close(out[:, :, :2].norm(dim=-1), qkv[:, :, :2].norm(dim=-1), atol=1e-5)
    # Position 0 is not rotated.
    assert_tensors_close(out[:, 0], qkv[:, 0])


@pytest.mark.unit
def test_attention_output_shape() -> None:
    """Test windowed attention maps [N, T, D] to [N, T, D]."""
    attn = MultiHeadAttention(32, 4)
    mask = build_attn_window_mask(12, (3, 3), torch.device("cpu"))
    assert attn(torch.randn(2, 12, 32), mask).shape == (2, 12, 32)


@pytest.mark.unit
def test_model_output_shape(tiny_config: ModelConfig, tiny_state_dict) -> None:
    """Test TxModel maps [N, C, T] to [N, T // stride, outsize]."""
    model = build_model(tiny_config, tiny_state_dict)
    with torch.inference_mode():
        out = model(torch.randn(3, 1, 1000))
    assert out.shape == (3, 200, tiny_config.outsize)


@pytest.mark.unit
def test_model_rows_are_independent(tiny_config: ModelConfig, tiny_state_dict) -> None:
    """Test that each batch row's output depends only on that row."""
    model = build_model(tiny_config, tiny_state_dict)
    x = torch.randn(3, 1, 1000)
    with torch.inference_mode():
        batched = model(x)
        single = model(x[1:2])
        x[2] = 1e3
        poisoned = model(x)

    assert_tensors_close(batched[1:2], single, atol=1e-4, rtol=1e-4)
    assert_tensors_close(batched[:2], poisoned[:2], atol=1e-4, rtol=1e-4)


@pytest.mark.unit
def test_build_model_is_reproducible(tiny_config: ModelConfig) -> None:
    """Test that the same seed yields the same weights without touching the global RNG."""
    rng_state = torch.random.get_rng_state()
    model_a = build_model(tiny_config, seed=7)
    model_b = build_model(tiny_config, seed=7)
    model_c = build_model(tiny_config, seed=8)

    assert torch.equal(torch.random.get_rng_state(), rng_state)
    for (name, a), b, c in zip(
        model_a.state_dict().items(),
        model_b.state_dict().values(),
        model_c.state_dict().values(),
    ):
        assert torch.equal(a, b), name
    assert not torch.equal(
        model_a.state_dict()["crf.linear.weight"], model_c.state_dict()["crf.linear.weight"]
    )


@pytest.mark.unit
def test_build_model_is_in_eval_mode(tiny_config: ModelConfig) -> None:
    """Test that build_model returns a TxModel in eval mode."""
    model = build_model(tiny_config)
    assert isinstance(model, TxModel)
    assert not model.training


@pytest.mark.unit
def test_build_model_rejects_mismatched_weights(tiny_config: ModelConfig, tiny_state_dict) -> None:
    """Test that weights for another architecture raise ConfigError."""
    bad = dict(tiny_state_dict)
    bad["crf.linear.weight"] = torch.zeros(10, 32)
    with pytest.raises(ConfigError, match="shape mismatch"):
        build_model(tiny_config, bad)


@pytest.mark.unit
def test_parameter_bytes(tiny_config: ModelConfig) -> None:
    """Test that parameter_bytes counts every parameter at its element size."""
    model = build_model(tiny_config)
    num_params = sum(p.numel() for p in model.parameters())
    nbytes = parameter_bytes(model)
    assert nbytes >= 4 * num_params
    assert parameter_bytes(model.to(torch.float16)) < nbytes


@pytest.mark.unit
def test_workspace_estimate_scales_with_batch(tiny_config: ModelConfig) -> None:
    """Test that the workspace estimate is linear in batch size and shrinks with dtype."""
    one = estimate_workspace_bytes(tiny_config, BatchShape(1, 1000))
    four = estimate_workspace_bytes(tiny_config, BatchShape(4, 1000))

    assert one > 0
    assert four == 4 * one
    assert estimate_workspace_bytes(tiny_config, BatchShape(1, 1000), torch.float16) == one // 2
    assert estimate_workspace_bytes(tiny_config, BatchShape(1, 2000)) > one
