"""
Batched inference core.

Provides:
- Caller: Per-device model owner and execution serializer
- CallerState: Caller lifecycle enum
- ModelRunner: Per-thread batch buffer facade over a Caller
- MemoryBudget: Byte reservations against a fraction of device memory
- DeviceRegistry: Exclusive-access claims on devices
"""

from basecall_lite.basecall.memory import MemoryBudget
from basecall_lite.basecall.device import DeviceRegistry, default_registry
from basecall_lite.basecall.caller import Caller, CallerState
from basecall_lite.basecall.model_runner import ModelRunner

__all__ = [
    "Caller",
    "CallerState",
    "ModelRunner",
    "MemoryBudget",
    "DeviceRegistry",
    "default_registry",
]
