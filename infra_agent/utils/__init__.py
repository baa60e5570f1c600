"""Utility modules."""

from .logger import setup_logging
from .process import CommandResult, run_command

__all__ = ["setup_logging", "CommandResult", "run_command"]
