"""
Utilities.

Provides:
- setup_logging: Configure the package logger for applications
"""

from basecall_lite.utils.logging import setup_logging

__all__ = ["setup_logging"]
