from __future__ import annotations

from typing import Dict

from pydantic import BaseModel, Field


def _tiers() -> Dict[str, float]:
    return {"tier1": 0, "tier2": 0, "tier3": 0}


class FixCounters(BaseModel):
    total: int = 0
    by_tier: Dict[str, int] = Field(default_factory=_tiers)
    successful: int = 0
    failed: int = 0


class RetryCounters(BaseModel):
    total: int = 0
    escalations: int = 0


class CostCounters(BaseModel):
    total: float = 0.0
    by_tier: Dict[str, float] = Field(default_factory=_tiers)


class Metrics(BaseModel):
    fixes: FixCounters = Field(default_factory=FixCounters)
    retries: RetryCounters = Field(default_factory=RetryCounters)
    cost: CostCounters = Field(default_factory=CostCounters)


class MetricsCollector:
    """Process-local counters for fixes, retries and cost. Pass one instance around."""

    def __init__(self) -> None:
        self._m = Metrics()

    def record_fix(self, tier: int, success: bool, cost: float) -> None:
        key = f"tier{tier}"
        self._m.fixes.total += 1
        if key in self._m.fixes.by_tier:
            self._m.fixes.by_tier[key] += 1
        if success:
            self._m.fixes.successful += 1
        else:
            self._m.fixes.failed += 1
        self._m.cost.total += float(cost)
        if key in self._m.cost.by_tier:
            self._m.cost.by_tier[key] += float(cost)

    def record_retry(self, escalated: bool = False) -> None:
        self._m.retries.total += 1
        if escalated:
            self._m.retries.escalations += 1

    @property
    def success_rate(self) -> float:
        if self._m.fixes.total == 0:
            return 0.0
        return self._m.fixes.successful / self._m.fixes.total

    def snapshot(self) -> Metrics:
        return self._m.model_copy(deep=True)

    def reset(self) -> None:
        self._m = Metrics()
