"""
Wall-clock source for time-windowed state.
"""

import time


class Clock:
    """System wall clock, in seconds since the epoch."""

    def now(self) -> float:
        return time.time()
