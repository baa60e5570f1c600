"""
Host collectors.

Health sampling for the heartbeat and journal following for log shipping.
"""

from .system import HealthSampler, HealthSnapshot
from .logs import LogShipper, normalize_entry, normalize_line

__all__ = [
    "HealthSampler",
    "HealthSnapshot",
    "LogShipper",
    "normalize_entry",
    "normalize_line",
]
