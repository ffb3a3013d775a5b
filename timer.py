# timer.py
# Countdown derived from an absolute end time (server started_at + limit).
# Every sample recomputes from end_time, so missed or late ticks never drift.
import math
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

WARNING_SECONDS = 300
CRITICAL_SECONDS = 60


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExamTimer:
    """Fires ``on_time_up`` exactly once, the first time a sample finds no time left."""

    def __init__(self, started_at: datetime, limit_minutes: int,
                 on_time_up: Callable[[], None],
                 clock: Callable[[], datetime] = utcnow):
        if started_at.tzinfo is None:
            started_at = started_at.replace(tzinfo=timezone.utc)
        self.started_at = started_at
        self.limit_minutes = int(limit_minutes)
        self.end_time = started_at + timedelta(minutes=self.limit_minutes)
        self._on_time_up = on_time_up
        self._clock = clock
        self._lock = threading.Lock()
        self._fired = False
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def fired(self) -> bool:
        return self._fired

    def remaining(self, now: Optional[datetime] = None) -> int:
        """Whole seconds left, never negative."""
        now = now or self._clock()
        return max(0, math.floor((self.end_time - now).total_seconds()))

    def tick(self, now: Optional[datetime] = None) -> int:
        left = self.remaining(now)
        if left > 0:
            return left
        with self._lock:
            if self._fired or self._stop.is_set():
                return 0
            self._fired = True
        print(f"[timer] time up (limit {self.limit_minutes} min)", flush=True)
        self._on_time_up()
        return 0

    # ---- background ticker ---------------------------------------------------
    def start(self, interval: float = 1.0) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, args=(interval,), name="exam-timer", daemon=True)
        self._thread.start()

    def _run(self, interval: float) -> None:
        while not self._stop.is_set():
            self.tick()
            if self._fired:
                return
            self._stop.wait(interval)

    def cancel(self) -> None:
        """Stop ticking; a cancelled timer never fires afterwards."""
        self._stop.set()
        t = self._thread
        if t is not None and t is not threading.current_thread():
            t.join(timeout=2.0)
        self._thread = None

    # ---- presentation only ---------------------------------------------------
    def urgency(self, now: Optional[datetime] = None) -> str:
        left = self.remaining(now)
        if left <= CRITICAL_SECONDS:
            return "critical"
        if left <= WARNING_SECONDS:
            return "warning"
        return "normal"

    def format_clock(self, now: Optional[datetime] = None) -> str:
        left = self.remaining(now)
        return f"{left // 60:02d}:{left % 60:02d}"
