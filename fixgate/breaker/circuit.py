from __future__ import annotations

import hashlib
import hmac
import json
import re
from datetime import datetime, timezone
from typing import Callable, Dict, List, Literal, Optional, Tuple

from fixgate.errors import ConcurrencyConflict, NotFoundError
from fixgate.models import CircuitMetadata, CircuitState, IssueRecord, LockResult
from fixgate.telemetry.logger import StructuredLogger
from fixgate.tracker.base import IssueTracker


HOP_PREFIX = "hop:"
LABEL_TRIPPED = "circuit-breaker"
LABEL_ATTEMPTED = "autofix:attempted"
LABEL_SUCCESS = "autofix:success"
LABEL_FAILED = "autofix:failed"
LOCK_MARKER = "Lock acquired at"

Phase = Literal["idle", "processing", "tripped"]
Event = Literal["acquire", "acquire_final", "release", "reset"]

# Label-level state machine. "acquire_final" is the acquire that reaches max_hops.
TRANSITIONS: Dict[Tuple[Phase, Event], Phase] = {
    ("idle", "acquire"): "processing",
    ("processing", "acquire"): "processing",  # stale lock override
    ("idle", "acquire_final"): "tripped",
    ("processing", "acquire_final"): "tripped",
    ("idle", "release"): "idle",
    ("processing", "release"): "idle",
    ("tripped", "release"): "tripped",
    ("idle", "reset"): "idle",
    ("processing", "reset"): "idle",
    ("tripped", "reset"): "idle",
}

_META_RE = re.compile(
    r"hop=(?P<hop>\d+) trace=(?P<trace>\S+) reason=\"(?P<reason>.*?)\" ts=(?P<ts>\S+) signature=sha256:(?P<sig>[0-9a-f]+)"
)


def next_phase(phase: Phase, event: Event) -> Phase:
    try:
        return TRANSITIONS[(phase, event)]
    except KeyError:
        raise ValueError(f"illegal circuit transition: {event} from {phase}") from None


def hop_from_labels(labels: List[str]) -> int:
    for label in labels:
        if label.startswith(HOP_PREFIX):
            try:
                return int(label.split(":", 1)[1])
            except ValueError:
                return 0
    return 0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class CircuitBreaker:
    """
    Per-issue soft lock + hop-counted breaker kept entirely in issue labels/comments.

    - `acquire_lock_and_increment_hop` is a compare-and-swap on the issue's version token;
      losing the race returns `race_condition` and is never retried here
    - the audit comment is written after the label swap and is not atomic with it
    - a lock label younger than `stale_after_s` (measured from the newest "Lock acquired at"
      comment) blocks; an older one is overridden
    """

    def __init__(
        self,
        tracker: IssueTracker,
        *,
        max_hops: int = 3,
        lock_label: str = "processing:fixgate",
        stale_after_s: float = 30 * 60.0,
        secret: str = "default-secret",
        logger: StructuredLogger | None = None,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.tracker = tracker
        self.max_hops = int(max_hops)
        self.lock_label = lock_label
        self.stale_after_s = float(stale_after_s)
        self._secret = secret.encode("utf-8")
        self._logger = logger or StructuredLogger()
        self._now = now

    # -------- labels / phases --------

    def phase_of(self, labels: List[str]) -> Phase:
        if LABEL_TRIPPED in labels:
            return "tripped"
        if self.lock_label in labels:
            return "processing"
        return "idle"

    def _lock_age_s(self, issue_number: int) -> float:
        stamps = [c.created_at for c in self.tracker.list_comments(issue_number) if LOCK_MARKER in c.body]
        if not stamps:
            # A lock label with no lock comment is treated as fresh.
            return 0.0
        return (self._now() - max(stamps)).total_seconds()

    # -------- signatures --------

    def sign(self, *, trace: str, reason: str, timestamp: str, hop: int) -> str:
        payload = json.dumps(
            {"trace": trace, "reason": reason, "timestamp": timestamp, "hop": hop},
            separators=(",", ":"),
            ensure_ascii=False,
        )
        return hmac.new(self._secret, payload.encode("utf-8"), hashlib.sha256).hexdigest()[:16]

    def format_comment(self, meta: CircuitMetadata) -> str:
        return (
            "<!-- fixgate-meta -->\n"
            f'[fixgate] hop={meta.hop} trace={meta.trace} reason="{meta.reason}" ts={meta.timestamp} '
            f"signature=sha256:{meta.signature}\n"
            "<!-- /fixgate-meta -->\n\n"
            f"**Attempt {meta.hop} of {self.max_hops}**\n"
            f"- Trace: `{meta.trace}`\n"
            f"- Reason: {meta.reason}\n"
            f"- Timestamp: {meta.timestamp}\n\n"
            "---\n"
            "*Automated by fixgate*"
        )

    def parse_comment(self, body: str) -> Optional[CircuitMetadata]:
        m = _META_RE.search(body or "")
        if not m:
            return None
        return CircuitMetadata(
            hop=int(m.group("hop")),
            trace=m.group("trace"),
            reason=m.group("reason"),
            timestamp=m.group("ts"),
            signature=m.group("sig"),
        )

    def verify_signature(self, body: str) -> bool:
        meta = self.parse_comment(body)
        if meta is None:
            return False
        expected = self.sign(trace=meta.trace, reason=meta.reason, timestamp=meta.timestamp, hop=meta.hop)
        return hmac.compare_digest(expected, meta.signature)

    # -------- checks --------

    def can_attempt(self, issue_number: int) -> CircuitState:
        """Read-only pre-check; does not take the lock."""
        issue = self._get(issue_number)
        if LABEL_TRIPPED in issue.labels:
            return CircuitState(allowed=False, reason="circuit_breaker_tripped", current_hop=self.max_hops, max_hops=self.max_hops)
        hop = hop_from_labels(issue.labels)
        if hop >= self.max_hops:
            return CircuitState(allowed=False, reason="max_hops_reached", current_hop=hop, max_hops=self.max_hops)
        if self.tracker.find_open_pr_referencing(issue_number) is not None:
            return CircuitState(allowed=False, reason="existing_pr", current_hop=hop, max_hops=self.max_hops)
        return CircuitState(allowed=True, current_hop=hop, max_hops=self.max_hops)

    def _get(self, issue_number: int) -> IssueRecord:
        issue = self.tracker.get_issue(issue_number)
        if issue is None:
            raise NotFoundError(f"issue #{issue_number} not found")
        return issue

    # -------- lock --------

    def acquire_lock_and_increment_hop(self, issue_number: int, *, trace: str, reason: str) -> LockResult:
        issue = self._get(issue_number)
        labels = list(issue.labels)
        log = self._logger.child(issue=issue_number)

        if self.lock_label in labels:
            age = self._lock_age_s(issue_number)
            if age < self.stale_after_s:
                log.info("lock_busy", "issue already locked", age_s=int(age))
                return LockResult(acquired=False, reason="already_locked")
            log.warn("lock_stale_override", "overriding stale lock", age_s=int(age))

        if LABEL_TRIPPED in labels:
            return LockResult(acquired=False, reason="circuit_breaker_tripped")

        current = hop_from_labels(labels)
        if current >= self.max_hops:
            return LockResult(acquired=False, reason="circuit_breaker_tripped")

        existing = self.tracker.find_open_pr_referencing(issue_number)
        if existing is not None:
            log.info("lock_existing_pr", "open PR already references issue", pr_number=existing.number)
            return LockResult(acquired=False, reason="existing_pr")

        new_hop = current + 1
        final = new_hop >= self.max_hops
        phase = next_phase(self.phase_of(labels), "acquire_final" if final else "acquire")

        new_labels = [l for l in labels if not l.startswith(HOP_PREFIX) and l != self.lock_label]
        new_labels += [f"{HOP_PREFIX}{new_hop}", self.lock_label, LABEL_ATTEMPTED]
        if final:
            new_labels.append(LABEL_TRIPPED)

        try:
            self.tracker.write_labels(issue_number, new_labels, expected_version=issue.version)
        except ConcurrencyConflict:
            log.info("lock_race_lost", "version token changed before write")
            return LockResult(acquired=False, reason="race_condition")

        log.info("lock_acquired", f"hop {current} -> {new_hop}", hop=new_hop, phase=phase)

        ts = _iso(self._now())
        meta = CircuitMetadata(hop=new_hop, trace=trace, reason=reason, timestamp=ts)
        meta.signature = self.sign(trace=trace, reason=reason, timestamp=ts, hop=new_hop)
        try:
            self.tracker.add_comment(issue_number, self.format_comment(meta) + f"\n\n{LOCK_MARKER} {ts}")
        except Exception as e:
            # Labels are already written, so the caller owns the lock and must release it.
            log.error("lock_audit_comment_failed", "could not post lock audit comment", exc=e, hop=new_hop)

        return LockResult(acquired=True, current_hop=new_hop, token=issue.version)

    def release_lock(self, issue_number: int) -> None:
        try:
            self.tracker.remove_label(issue_number, self.lock_label)
        except NotFoundError:
            self._logger.debug("lock_already_released", issue=issue_number)
            return
        self._logger.info("lock_released", issue=issue_number)

    # -------- terminal bookkeeping --------

    def _remove_labels(self, issue_number: int, labels: List[str]) -> None:
        for label in labels:
            try:
                self.tracker.remove_label(issue_number, label)
            except NotFoundError:
                continue

    def mark_success(self, issue_number: int) -> None:
        issue = self._get(issue_number)
        self._remove_labels(issue_number, [l for l in issue.labels if l.startswith(HOP_PREFIX) or l == LABEL_TRIPPED])
        self.tracker.add_label(issue_number, LABEL_SUCCESS)

    def mark_failure(self, issue_number: int) -> None:
        self.tracker.add_label(issue_number, LABEL_FAILED)

    def trip(self, issue_number: int, reason: str) -> None:
        self.tracker.add_label(issue_number, LABEL_TRIPPED)
        self.tracker.add_comment(
            issue_number,
            "🚨 **Circuit Breaker Tripped**\n\n"
            f"This issue has exhausted {self.max_hops} autofix attempts and requires manual intervention.\n\n"
            f"**Reason**: {reason}\n\n"
            f"Remove the `{LABEL_TRIPPED}` label (or reset the circuit) once the issue is fixed manually.\n\n"
            "---\n"
            "*Automated by fixgate*",
        )
        self._logger.warn("circuit_tripped", reason, issue=issue_number)

    def reset(self, issue_number: int) -> None:
        issue = self._get(issue_number)
        stale = [
            l
            for l in issue.labels
            if l.startswith(HOP_PREFIX) or l in (LABEL_TRIPPED, LABEL_ATTEMPTED, LABEL_FAILED)
        ]
        self._remove_labels(issue_number, stale)
        self.tracker.add_label(issue_number, f"{HOP_PREFIX}0")
        self.tracker.add_comment(
            issue_number,
            "🔄 **Circuit Breaker Reset**\n\n"
            "Manual reset performed. fixgate can attempt fixes again.\n\n"
            "---\n"
            "*Automated by fixgate*",
        )
        self._logger.info("circuit_reset", issue=issue_number)

    def setup_labels(self) -> List[str]:
        specs = [
            ("hop:0", "0E8A16", "No autofix attempts yet"),
            ("hop:1", "FBCA04", "First autofix attempt"),
            ("hop:2", "FFA500", "Second autofix attempt"),
            ("hop:3", "D93F0B", "Third autofix attempt (final)"),
            (LABEL_TRIPPED, "B60205", "Circuit breaker tripped, needs manual intervention"),
            (self.lock_label, "FBCA04", "fixgate is currently processing (soft lock)"),
            (LABEL_ATTEMPTED, "5319E7", "fixgate has attempted a fix"),
            (LABEL_SUCCESS, "0E8A16", "Autofix succeeded"),
            (LABEL_FAILED, "D93F0B", "Autofix failed"),
        ]
        for name, color, description in specs:
            self.tracker.create_label(name, color=color, description=description)
        return [s[0] for s in specs]
