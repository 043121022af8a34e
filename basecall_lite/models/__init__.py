"""
Model implementations.

Provides:
- tx: Transformer basecall model (conv stack, windowed attention encoder, CRF head)
"""

from basecall_lite.models.tx import ModelConfig, TxModel, build_model

__all__ = ["ModelConfig", "TxModel", "build_model"]
