from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from fixgate.models import AttemptHistoryEntry, AttemptState
from fixgate.storage.json_doc import DocumentStore


MAX_ATTEMPTS = 3
BASE_COOLDOWN_HOURS = 24


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def cooldown_hours(attempts: int, *, base_hours: float = BASE_COOLDOWN_HOURS, max_attempts: int = MAX_ATTEMPTS) -> float:
    """Exponential cooldown: base * 2^(attempts-1), capped at base * 2^(max_attempts-1)."""
    exponent = max(0, attempts - 1)
    return min(base_hours * 2**exponent, base_hours * 2 ** (max_attempts - 1))


class AttemptStore:
    """
    Per-fingerprint attempt counter with exponential cooldown and sticky exhaustion.

    Load-modify-save is not concurrency-safe on its own; the orchestrator only touches a
    fingerprint while it holds the issue's circuit-breaker lock.
    """

    def __init__(
        self,
        document: DocumentStore,
        *,
        now: Callable[[], datetime] = _utcnow,
        max_attempts: int = MAX_ATTEMPTS,
        base_cooldown_hours: float = BASE_COOLDOWN_HOURS,
    ) -> None:
        self._doc = document
        self._now = now
        self.max_attempts = max_attempts
        self.base_cooldown_hours = base_cooldown_hours
        self._state: Dict[str, AttemptState] = {}

    def load(self) -> None:
        # Always re-read: other workflow runs may have written since our last call.
        raw = self._doc.load()
        if raw is None:
            self._state = {}
            self._doc.save([])
        else:
            entries = [AttemptState.model_validate(e) for e in raw]
            self._state = {e.fingerprint: e for e in entries}

    def save(self) -> None:
        self._doc.save([s.model_dump(mode="json") for s in self._state.values()])

    def get_state(self, fingerprint: str) -> AttemptState:
        self.load()
        state = self._state.get(fingerprint)
        if state is None:
            state = AttemptState(fingerprint=fingerprint)
            self._state[fingerprint] = state
        return state

    def can_attempt(self, fingerprint: str) -> bool:
        state = self.get_state(fingerprint)
        if state.exhausted:
            return False

        if state.attempts >= self.max_attempts:
            # Ceiling reached without the flag being persisted (e.g. limit lowered): make it sticky now.
            state.exhausted = True
            self.save()
            return False

        if state.cooldown_until is None:
            return True
        return state.cooldown_until <= self._now()

    def record_attempt(self, fingerprint: str, success: bool) -> AttemptState:
        state = self.get_state(fingerprint)
        now = self._now()

        state.last_attempt = now
        state.history.append(AttemptHistoryEntry(timestamp=now, success=success))

        if success:
            state.attempts = 0
            state.cooldown_until = None
            state.exhausted = False
        else:
            state.attempts += 1
            hours = cooldown_hours(
                state.attempts, base_hours=self.base_cooldown_hours, max_attempts=self.max_attempts
            )
            state.cooldown_until = now + timedelta(hours=hours)
            state.exhausted = state.attempts >= self.max_attempts

        self.save()
        return state

    def cooldown_until(self, fingerprint: str) -> Optional[datetime]:
        return self.get_state(fingerprint).cooldown_until
