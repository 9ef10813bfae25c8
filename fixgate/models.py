from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


PeriodName = Literal["daily", "weekly", "monthly"]
LockRefusal = Literal["already_locked", "circuit_breaker_tripped", "existing_pr", "race_condition"]


class RawError(BaseModel):
    type: str = "UnknownError"
    message: str = ""
    stack: str = ""


class Fingerprint(BaseModel):
    """
    Stable identity of a failure. Two occurrences of the same error (differing only in
    embedded numbers, dates, uuids, hashes) collapse to the same `id`.
    """

    model_config = {"frozen": True}

    id: str
    error_type: str
    file_path: str
    top_frame: str
    message_hash: str
    signature: str


# -------- Attempt store --------


class AttemptHistoryEntry(BaseModel):
    timestamp: datetime
    success: bool


class AttemptState(BaseModel):
    fingerprint: str
    attempts: int = 0
    cooldown_until: Optional[datetime] = None
    last_attempt: Optional[datetime] = None
    exhausted: bool = False
    history: List[AttemptHistoryEntry] = Field(default_factory=list)


# -------- Pattern library --------


class Pattern(BaseModel):
    id: str
    fingerprint_id: str
    error_type: str
    file_path: str
    patch: str
    description: Optional[str] = None
    confidence: Optional[float] = None
    success_rate: Optional[float] = None
    uses: int = 0


class PatternLibraryDoc(BaseModel):
    version: int = 1
    patterns: List[Pattern] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PatternMatch(BaseModel):
    pattern: Pattern
    strategy: Literal["exact", "fuzzy"]
    confidence: float


# -------- Budget ledger --------


class BudgetPeriod(BaseModel):
    spent: float = 0.0
    cap: float
    reserved: float = 0.0
    remaining: float
    reset_at: datetime

    def recompute(self) -> None:
        self.remaining = self.cap - self.spent - self.reserved


class BudgetPeriods(BaseModel):
    daily: BudgetPeriod
    weekly: BudgetPeriod
    monthly: BudgetPeriod

    def items(self) -> List[tuple[PeriodName, BudgetPeriod]]:
        return [("daily", self.daily), ("weekly", self.weekly), ("monthly", self.monthly)]


class BudgetConfig(BaseModel):
    version: int = 1
    currency: Literal["USD"] = "USD"
    caps: Dict[str, float]
    thresholds: List[int] = Field(default_factory=lambda: [75, 90, 100])
    reservation: Dict[str, float] = Field(
        default_factory=lambda: {"tier1": 0.001, "tier2": 0.006, "tier3": 0.01}
    )


class BudgetState(BaseModel):
    version: int = 1
    currency: Literal["USD"] = "USD"
    config: BudgetConfig
    periods: BudgetPeriods
    last_updated: datetime


class Reservation(BaseModel):
    id: str
    amount: float
    purpose: str


class ReservationResult(BaseModel):
    success: bool
    reservation_id: Optional[str] = None
    reason: Optional[str] = None
    remaining: float
    breached_period: Optional[PeriodName] = None


class BudgetCheckResult(BaseModel):
    available: bool
    remaining: Dict[str, float]
    reason: Optional[str] = None
    breached_period: Optional[PeriodName] = None


class BudgetAlert(BaseModel):
    level: int
    period: PeriodName
    usage_percent: float
    spent: float
    cap: float


# -------- Rate limiter --------


class RateLimitWindow(BaseModel):
    max: int
    timestamps: List[datetime] = Field(default_factory=list)


class RateLimitWindows(BaseModel):
    per_minute: RateLimitWindow
    per_day: RateLimitWindow


class RateLimitState(BaseModel):
    version: int = 1
    windows: RateLimitWindows
    last_pruned_at: datetime


class RateLimitCheck(BaseModel):
    allowed: bool
    reason: Optional[str] = None
    current: Dict[str, int]
    limits: Dict[str, int]
    resets_at: Dict[str, datetime]


# -------- Issue tracker / circuit breaker --------


class IssueRecord(BaseModel):
    number: int
    title: str = ""
    body: str = ""
    labels: List[str] = Field(default_factory=list)
    # Opaque optimistic-concurrency token (ETag for GitHub, counter for the in-memory tracker).
    version: Optional[str] = None


class IssueComment(BaseModel):
    id: int
    body: str
    created_at: datetime


class PullRequestRef(BaseModel):
    number: int
    title: str = ""
    body: str = ""
    url: Optional[str] = None
    head: Optional[str] = None
    state: str = "open"


class LockResult(BaseModel):
    acquired: bool
    current_hop: Optional[int] = None
    token: Optional[str] = None
    reason: Optional[LockRefusal] = None


class CircuitState(BaseModel):
    allowed: bool
    current_hop: int
    max_hops: int
    reason: Optional[Literal["circuit_breaker_tripped", "max_hops_reached", "existing_pr"]] = None


class CircuitMetadata(BaseModel):
    hop: int
    trace: str
    reason: str
    timestamp: str
    signature: str = ""


# -------- Parsing / routing / execution contracts --------


class ParsedIssue(BaseModel):
    error_type: str = "UnknownError"
    error_message: str = ""
    stack_trace: str = ""
    breadcrumbs: List[str] = Field(default_factory=list)
    fingerprint: Optional[str] = None
    extension: Optional[str] = None
    extra: Dict[str, Any] = Field(default_factory=dict)


class ParseResult(BaseModel):
    parsed: ParsedIssue
    errors: List[str] = Field(default_factory=list)


class TierRouting(BaseModel):
    tier: int
    model: str
    attempts: int
    reviewer: Optional[str] = None
    sanitize: bool = True


class TokenUsage(BaseModel):
    model: Literal["deepseek", "gpt5"]
    input_tokens: int
    output_tokens: int
    issue_number: int = 0
    tier: int


class ExecutionOutcome(BaseModel):
    success: bool
    model: str
    patch: Optional[str] = None
    tokens: List[TokenUsage] = Field(default_factory=list)
    cost: float = 0.0
    tests_passed: Optional[bool] = None
    test_output: Optional[str] = None
    error: Optional[str] = None


class RetryOutcome(BaseModel):
    success: bool
    attempts: List[ExecutionOutcome] = Field(default_factory=list)
    result: Optional[ExecutionOutcome] = None
    should_escalate: bool = False
    reason: Optional[Literal["deterministic_failure", "max_retries_exceeded"]] = None


# -------- Guardrails --------


class PathFilters(BaseModel):
    include: List[str] = Field(default_factory=list)
    exclude: List[str] = Field(default_factory=list)


class GuardrailConfig(BaseModel):
    max_diff_lines: int = 200
    max_files: int = 5
    budget_limit: float = 5.0
    path_filters: Optional[PathFilters] = None
    secret_patterns: List[str] = Field(default_factory=list)


class GuardrailDecision(BaseModel):
    allowed: bool
    reason: Optional[str] = None
    details: List[str] = Field(default_factory=list)
    files: List[str] = Field(default_factory=list)


# -------- Orchestration --------


class RunContext(BaseModel):
    """Counters accumulated across one batch of issues processed in a single invocation."""

    total_cost: float = 0.0
    patterns_used: int = 0
    zero_cost_fixes: int = 0
    cooldowns: int = 0
    fingerprints: List[str] = Field(default_factory=list)


class ProcessIssueResult(BaseModel):
    issue_number: int
    tier: Optional[int] = None
    model: Optional[str] = None
    success: Optional[bool] = None
    fix_generated: Optional[bool] = None
    tests_passed: Optional[bool] = None
    pr_number: Optional[int] = None
    retries: Optional[int] = None
    delay_history: List[int] = Field(default_factory=list)
    rejected: bool = False
    skipped: bool = False
    reason: Optional[str] = None
    fingerprint: Optional[str] = None
    pattern_id: Optional[str] = None
    hop: Optional[int] = None
    cost: float = 0.0
    resets_at: Optional[datetime] = None
