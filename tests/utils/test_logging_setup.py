"""
Tests for logging setup.
"""

import logging

import pytest

from basecall_lite.utils import setup_logging


@pytest.fixture
def restore_package_level():
    logger = logging.getLogger("basecall_lite")
    level = logger.level
    yield
    logger.setLevel(level)


@pytest.mark.unit
def test_setup_logging_by_name(restore_package_level) -> None:
    """Test that a level name configures the package logger."""
    logger = setup_logging("debug")
    assert logger.name == "basecall_lite"
    assert logger.level == logging.DEBUG


@pytest.mark.unit
def test_setup_logging_from_environment(monkeypatch, restore_package_level) -> None:
    """Test that the level defaults to BASECALL_LOG_LEVEL."""
    monkeypatch.setenv("BASECALL_LOG_LEVEL", "WARNING")
    assert setup_logging().level == logging.WARNING


@pytest.mark.unit
def test_setup_logging_unknown_name_falls_back_to_info(restore_package_level) -> None:
    """Test that an unknown level name means INFO."""
    assert setup_logging("chatty").level == logging.INFO
