from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from fixgate.models import RateLimitCheck, RateLimitState, RateLimitWindow, RateLimitWindows
from fixgate.storage.json_doc import DocumentStore


MINUTE = timedelta(seconds=60)
DAY = timedelta(hours=24)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RateLimiter:
    """
    Dual sliding-window throttle:
    - per-minute burst protection (default 5)
    - per-day throughput control (default 20)

    State is one JSON document; callers serialize access per process. `record_attempt`
    does not re-check the limits, so call `can_proceed` first.
    """

    def __init__(
        self,
        document: DocumentStore,
        *,
        per_minute: int = 5,
        per_day: int = 20,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._doc = document
        self._per_minute = int(per_minute)
        self._per_day = int(per_day)
        self._now = now
        self._state: Optional[RateLimitState] = None

    def _defaults(self) -> RateLimitState:
        return RateLimitState(
            windows=RateLimitWindows(
                per_minute=RateLimitWindow(max=self._per_minute),
                per_day=RateLimitWindow(max=self._per_day),
            ),
            last_pruned_at=self._now(),
        )

    def load(self) -> RateLimitState:
        raw = self._doc.load()
        self._state = self._defaults() if raw is None else RateLimitState.model_validate(raw)
        self._prune(self._state)
        return self._state

    def save(self) -> None:
        if self._state is None:
            raise RuntimeError("RateLimiter: cannot save before load")
        self._doc.save(self._state.model_dump(mode="json"))

    def _ensure(self) -> RateLimitState:
        return self.load()

    def _prune(self, state: RateLimitState) -> None:
        now = self._now()
        minute_floor = now - MINUTE
        day_floor = now - DAY
        state.windows.per_minute.timestamps = [t for t in state.windows.per_minute.timestamps if t > minute_floor]
        state.windows.per_day.timestamps = [t for t in state.windows.per_day.timestamps if t > day_floor]
        state.last_pruned_at = now

    @staticmethod
    def _window_reset(window: RateLimitWindow, width: timedelta, now: datetime) -> datetime:
        if not window.timestamps:
            return now + width
        return min(window.timestamps) + width

    def can_proceed(self) -> RateLimitCheck:
        state = self._ensure()
        self._prune(state)
        now = self._now()

        minute = state.windows.per_minute
        day = state.windows.per_day
        current = {"per_minute": len(minute.timestamps), "per_day": len(day.timestamps)}
        limits = {"per_minute": minute.max, "per_day": day.max}
        day_reset = self._window_reset(day, DAY, now)

        if current["per_minute"] >= minute.max:
            return RateLimitCheck(
                allowed=False,
                reason=f"Per-minute rate limit exceeded ({current['per_minute']}/{minute.max} in last minute)",
                current=current,
                limits=limits,
                resets_at={"per_minute": self._window_reset(minute, MINUTE, now), "per_day": day_reset},
            )

        if current["per_day"] >= day.max:
            return RateLimitCheck(
                allowed=False,
                reason=f"Per-day rate limit exceeded ({current['per_day']}/{day.max} in last 24h)",
                current=current,
                limits=limits,
                resets_at={"per_minute": now + MINUTE, "per_day": day_reset},
            )

        return RateLimitCheck(
            allowed=True,
            current=current,
            limits=limits,
            resets_at={"per_minute": now + MINUTE, "per_day": day_reset},
        )

    def record_attempt(self) -> None:
        state = self._ensure()
        now = self._now()
        state.windows.per_minute.timestamps.append(now)
        state.windows.per_day.timestamps.append(now)
        state.last_pruned_at = now
        self.save()

    def status(self) -> RateLimitState:
        state = self._ensure()
        self._prune(state)
        return state

    def reset(self) -> RateLimitState:
        """Operator reset: drop all recorded attempts (limits are kept)."""
        state = self._ensure()
        state.windows.per_minute.timestamps = []
        state.windows.per_day.timestamps = []
        state.last_pruned_at = self._now()
        self.save()
        return state
