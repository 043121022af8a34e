"""
Transformer basecall model.

Components:
- ModelConfig: chunking parameters and network hyperparameters
- TxModel: conv stack + windowed attention encoder + upsample + CRF head
- build_model: reproducible construction with optional weights
- Weight loading utilities for model directories
"""

from basecall_lite.models.tx.config import BatchShape, ConvParams, ModelConfig
from basecall_lite.models.tx.model import (
    TxModel,
    build_model,
    estimate_workspace_bytes,
    parameter_bytes,
)
from basecall_lite.models.tx.weight_loader import (
    load_pretrained,
    load_weights,
    save_pretrained,
    validate_weight_shapes,
)

__all__ = [
    "BatchShape",
    "ConvParams",
    "ModelConfig",
    "TxModel",
    "build_model",
    "estimate_workspace_bytes",
    "parameter_bytes",
    "load_pretrained",
    "load_weights",
    "save_pretrained",
    "validate_weight_shapes",
]
