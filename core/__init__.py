"""
Core Module Package.

Infrastructure shared by the batch pipeline and the export
scheduler.

Components:
- clock: Unified time abstraction
- config: Environment-driven configuration
- exceptions: Custom exception hierarchy
"""

from .clock import ClockFactory, ClockProtocol, MockClock, SystemClock
from .config import BatchOpsConfig
from .exceptions import BatchOpsException


__all__ = [
    "ClockFactory",
    "ClockProtocol",
    "MockClock",
    "SystemClock",
    "BatchOpsConfig",
    "BatchOpsException",
]
