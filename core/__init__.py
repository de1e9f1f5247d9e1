"""
Core Module Package.

Shared infrastructure that the evaluation and review
packages depend on.

Components:
- clock: Unified, settable time source
- exceptions: Custom exception hierarchy
"""

from .clock import ClockProtocol, SystemClock, MockClock, ClockFactory, ensure_utc, now_utc
from .exceptions import DecisionMonitorException
