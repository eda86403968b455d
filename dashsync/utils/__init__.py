"""
Utility helpers.
"""

from .clock import Clock, SystemClock, ManualClock

__all__ = ["Clock", "SystemClock", "ManualClock"]
