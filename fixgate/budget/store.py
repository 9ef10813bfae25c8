from __future__ import annotations

import calendar
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from fixgate.errors import RefundExceedsReservation, ReservationNotFound
from fixgate.models import (
    BudgetAlert,
    BudgetCheckResult,
    BudgetConfig,
    BudgetPeriod,
    BudgetPeriods,
    BudgetState,
    PeriodName,
    Reservation,
    ReservationResult,
)
from fixgate.storage.json_doc import DocumentStore


ALERT_THRESHOLDS = (75, 90, 100)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _midnight(dt: datetime) -> datetime:
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)


def _add_month(dt: datetime) -> datetime:
    year = dt.year + (1 if dt.month == 12 else 0)
    month = 1 if dt.month == 12 else dt.month + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def next_daily_reset(now: datetime) -> datetime:
    return _midnight(now) + timedelta(days=1)


def next_weekly_reset(now: datetime) -> datetime:
    # Monday 00:00 UTC strictly after today (a Monday rolls to the following Monday).
    return _midnight(now) + timedelta(days=7 - now.weekday())


def next_monthly_reset(now: datetime) -> datetime:
    return _add_month(_midnight(now).replace(day=1))


def advance_one_period(period: PeriodName, reset_at: datetime) -> datetime:
    if period == "daily":
        return reset_at + timedelta(days=1)
    if period == "weekly":
        return reset_at + timedelta(days=7)
    return _add_month(reset_at)


class BudgetStore:
    """
    Multi-period spend ledger (daily / weekly / monthly, UTC boundaries) with a
    reservation/refund protocol.

    - `reserve` holds a conservative amount before a costed call
    - `refund` converts the hold into actual spend, exactly once per reservation
    - live reservations are scoped to this instance; a crashed process leaks its `reserved`
      headroom until the period rolls over
    - caps and tier reservation amounts come from the constructor; an existing ledger keeps its
      spend and adopts them on every load

    The ledger document is assumed to be exclusively ours for one load -> mutate -> save.
    A reservation is charged to every period at once (conservative accounting).
    """

    def __init__(
        self,
        document: DocumentStore,
        *,
        daily_cap: float = 0.066,
        weekly_cap: float = 0.33,
        monthly_cap: float = 1.0,
        reservation_amounts: Optional[Dict[str, float]] = None,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._doc = document
        self._caps = {"daily": float(daily_cap), "weekly": float(weekly_cap), "monthly": float(monthly_cap)}
        self._reservation_amounts = reservation_amounts
        self._now = now
        self._state: Optional[BudgetState] = None
        self._reservations: Dict[str, Reservation] = {}

    # -------- persistence --------

    def _defaults(self) -> BudgetState:
        now = self._now()
        config = BudgetConfig(caps=dict(self._caps))
        if self._reservation_amounts:
            config.reservation = dict(self._reservation_amounts)

        def _period(cap: float, reset_at: datetime) -> BudgetPeriod:
            return BudgetPeriod(spent=0.0, cap=cap, reserved=0.0, remaining=cap, reset_at=reset_at)

        return BudgetState(
            config=config,
            periods=BudgetPeriods(
                daily=_period(self._caps["daily"], next_daily_reset(now)),
                weekly=_period(self._caps["weekly"], next_weekly_reset(now)),
                monthly=_period(self._caps["monthly"], next_monthly_reset(now)),
            ),
            last_updated=now,
        )

    def load(self) -> BudgetState:
        raw = self._doc.load()
        state = self._defaults() if raw is None else self._reconcile(BudgetState.model_validate(raw))
        self._state = self._roll_over(state)
        return self._state

    def _reconcile(self, state: BudgetState) -> BudgetState:
        # Configured caps and tier amounts win over what an existing ledger recorded; spend is kept.
        state.config.caps = dict(self._caps)
        for name, period in state.periods.items():
            period.cap = self._caps[name]
            period.recompute()
        if self._reservation_amounts:
            state.config.reservation = dict(self._reservation_amounts)
        return state

    def save(self) -> None:
        if self._state is None:
            raise RuntimeError("BudgetStore: cannot save before load")
        self._state.last_updated = self._now()
        self._doc.save(self._state.model_dump(mode="json"))

    def _ensure(self) -> BudgetState:
        # Re-read on every operation so rollover and other writers are observed.
        return self.load()

    def _roll_over(self, state: BudgetState) -> BudgetState:
        now = self._now()
        for name, period in state.periods.items():
            if now < period.reset_at:
                continue
            period.spent = 0.0
            period.reserved = 0.0
            period.recompute()
            # Step one period width at a time so the boundary stays aligned to the calendar
            # even when the ledger sat untouched for several periods.
            reset_at = advance_one_period(name, period.reset_at)
            while reset_at <= now:
                reset_at = advance_one_period(name, reset_at)
            period.reset_at = reset_at
        return state

    # -------- reservation protocol --------

    def _live_reserved(self) -> float:
        return sum(r.amount for r in self._reservations.values())

    @property
    def live_reservations(self) -> List[Reservation]:
        return list(self._reservations.values())

    def reservation_amount_for_tier(self, tier: int) -> float:
        state = self._ensure()
        return float(state.config.reservation.get(f"tier{tier}", state.config.reservation.get("tier3", 0.01)))

    def reserve(self, amount: float, purpose: str) -> ReservationResult:
        state = self._ensure()
        live = self._live_reserved()

        for name, period in state.periods.items():
            if period.spent + live + amount > period.cap:
                return ReservationResult(
                    success=False,
                    reason=f"Reservation would exceed {name} budget cap (${period.cap})",
                    remaining=period.cap - period.spent - live,
                    breached_period=name,
                )

        reservation = Reservation(id=f"res_{uuid.uuid4().hex[:16]}", amount=float(amount), purpose=purpose)
        self._reservations[reservation.id] = reservation

        for _, period in state.periods.items():
            period.reserved += reservation.amount
            period.recompute()

        self.save()
        return ReservationResult(
            success=True,
            reservation_id=reservation.id,
            remaining=state.periods.daily.remaining,
        )

    def refund(self, reservation_id: str, actual_amount: float) -> None:
        state = self._ensure()
        reservation = self._reservations.get(reservation_id)
        if reservation is None:
            raise ReservationNotFound(f"Reservation {reservation_id} not found")
        if actual_amount > reservation.amount:
            raise RefundExceedsReservation(
                f"Actual amount (${actual_amount}) exceeds reservation (${reservation.amount})"
            )

        for _, period in state.periods.items():
            # A rollover while the hold was live already zeroed `reserved`.
            period.reserved = max(0.0, period.reserved - reservation.amount)
            period.spent += float(actual_amount)
            period.recompute()

        del self._reservations[reservation_id]
        self.save()

    # -------- read-only views --------

    def check_available(self, amount: float) -> BudgetCheckResult:
        state = self._ensure()
        live = self._live_reserved()

        for name, period in state.periods.items():
            if period.spent + live + amount > period.cap:
                return BudgetCheckResult(
                    available=False,
                    reason=f"Would exceed {name} budget cap (${period.cap})",
                    remaining={n: p.cap - p.spent - live for n, p in state.periods.items()},
                    breached_period=name,
                )

        return BudgetCheckResult(
            available=True,
            remaining={n: p.remaining for n, p in state.periods.items()},
        )

    def check_thresholds(self) -> List[BudgetAlert]:
        """One alert per crossed threshold per period. Not deduplicated across calls."""
        state = self._ensure()
        alerts: List[BudgetAlert] = []
        for name, period in state.periods.items():
            if period.cap <= 0:
                continue
            usage = period.spent / period.cap * 100
            for level in ALERT_THRESHOLDS:
                if usage >= level:
                    alerts.append(
                        BudgetAlert(level=level, period=name, usage_percent=usage, spent=period.spent, cap=period.cap)
                    )
        return alerts

    def status(self) -> BudgetState:
        return self._ensure()

    def reset(self, period: Optional[PeriodName] = None) -> BudgetState:
        """Operator reset: zero spend/holds for one period (or all). Reset boundaries are kept."""
        state = self._ensure()
        for name, p in state.periods.items():
            if period is not None and name != period:
                continue
            p.spent = 0.0
            p.reserved = 0.0
            p.recompute()
        self.save()
        return state
