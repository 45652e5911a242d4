# exam_timer.py
# -----------------------------------------------------------------------------
# Countdown derived from an absolute end time held in session persistence.
# remaining = max(0, round((end - now) / 1000)); expiry is reported once.
# -----------------------------------------------------------------------------

import math
import time
from typing import Optional, Tuple

from session_store import SessionPersistence


def now_ms() -> int:
    return int(time.time() * 1000)


def remaining_seconds(end_ms: int, current_ms: int) -> int:
    # half-up rounding, same as the browser countdown
    return max(0, int(math.floor((end_ms - current_ms) / 1000.0 + 0.5)))


def format_clock(seconds: Optional[int]) -> str:
    if seconds is None:
        return "--:--"
    mins, secs = divmod(max(0, int(seconds)), 60)
    return f"{mins:02d}:{secs:02d}"


class ExamTimer:
    def __init__(self, persistence: SessionPersistence, duration_seconds: int):
        self.persistence = persistence
        self.duration_seconds = int(duration_seconds)
        self._fired_for: Optional[int] = None

    @property
    def end_time(self) -> Optional[int]:
        return self.persistence.load_end_time()

    def running(self) -> bool:
        return self.end_time is not None

    def start(self, current_ms: int) -> int:
        """Stamp an end time unless one is already running; re-entry never adds time."""
        existing = self.end_time
        if existing is not None:
            return existing
        end = int(current_ms) + self.duration_seconds * 1000
        self.persistence.save_end_time(end)
        print(f"[timer] started; ends at {end}")
        return end

    def remaining(self, current_ms: int) -> Optional[int]:
        end = self.end_time
        if end is None:
            return None
        return remaining_seconds(end, current_ms)

    def tick(self, current_ms: int) -> Tuple[Optional[int], bool]:
        """
        Returns (remaining_seconds or None when untimed, expired_now).
        expired_now is True only on the first tick that reaches zero for this end time.
        """
        end = self.end_time
        if end is None:
            return None, False
        left = remaining_seconds(end, current_ms)
        if left > 0 or self._fired_for == end:
            return left, False
        self._fired_for = end
        return 0, True

    def is_past(self, current_ms: int) -> bool:
        end = self.end_time
        return end is not None and end <= current_ms

    def clear(self) -> None:
        self.persistence.clear_end_time()
