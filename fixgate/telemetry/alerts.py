from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from fixgate.telemetry.logger import StructuredLogger
from fixgate.telemetry.metrics import Metrics


ALERT_COOLDOWN = timedelta(hours=24)
ANNUAL_COST_SLO = 10.0
SUCCESS_RATE_SLO = 0.6


class Alert(BaseModel):
    severity: Literal["critical", "high", "medium", "low"]
    title: str
    description: str
    metrics: Dict[str, Any] = Field(default_factory=dict)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AlertManager:
    """SLO checks plus a per-(severity, title) cooldown so the same alert fires at most once a day."""

    def __init__(self, logger: StructuredLogger, *, now: Callable[[], datetime] = _utcnow) -> None:
        self._logger = logger
        self._now = now
        self._history: Dict[str, datetime] = {}

    def send(self, alert: Alert) -> bool:
        key = f"{alert.severity}:{alert.title}"
        last: Optional[datetime] = self._history.get(key)
        now = self._now()
        if last is not None and now - last < ALERT_COOLDOWN:
            self._logger.debug("alert_suppressed", "alert in cooldown", alert_key=key)
            return False
        self._history[key] = now
        self._logger.error("alert", alert.title, alert=alert.model_dump(mode="json"))
        return True

    def check_slos(self, metrics: Metrics, projected_annual_cost: float) -> List[Alert]:
        alerts: List[Alert] = []
        if projected_annual_cost > ANNUAL_COST_SLO:
            alerts.append(
                Alert(
                    severity="critical",
                    title="Cost SLO Breach",
                    description=f"Projected annual cost (${projected_annual_cost:.2f}) exceeds ${ANNUAL_COST_SLO:.2f}",
                    metrics={"projected_annual_cost": projected_annual_cost, "current_cost": metrics.cost.total},
                )
            )
        total = metrics.fixes.total
        rate = metrics.fixes.successful / total if total else 0.0
        if rate < SUCCESS_RATE_SLO:
            alerts.append(
                Alert(
                    severity="high",
                    title="Success Rate SLO Breach",
                    description=f"Overall success rate ({rate * 100:.1f}%) below {SUCCESS_RATE_SLO * 100:.0f}%",
                    metrics={"success_rate": rate, "total_fixes": total},
                )
            )
        return alerts
