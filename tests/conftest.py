from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone

import pytest


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """
    Keep tests deterministic and isolated from developer machine env.
    """
    for k in list(os.environ.keys()):
        if k.startswith("FIXGATE_"):
            monkeypatch.delenv(k, raising=False)


class Clock:
    """Manually advanced UTC clock; pass `clock` wherever a `now` callable is accepted."""

    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


@pytest.fixture()
def clock() -> Clock:
    # A Wednesday, mid-month, mid-day.
    return Clock(datetime(2025, 10, 15, 12, 0, 0, tzinfo=timezone.utc))
