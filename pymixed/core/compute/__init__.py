"""
Shared compute infrastructure for pymixed.

Submodules:
    timing: Execution timing utilities
"""

from pymixed.core.compute.timing import Timer, timed

__all__ = [
    "Timer",
    "timed",
]
