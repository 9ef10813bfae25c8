from __future__ import annotations

import concurrent.futures
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator, List, Optional

from fixgate.attempts.store import AttemptStore
from fixgate.breaker.circuit import CircuitBreaker
from fixgate.budget.store import BudgetStore
from fixgate.contracts import IdentitySanitizer, IssueParser, MarkdownIssueParser, Sanitizer, TierExecutor
from fixgate.cost.tracker import CostTracker
from fixgate.execution.mock import MockTierExecutor
from fixgate.fingerprint.fingerprinter import FailureFingerprinter
from fixgate.models import (
    ExecutionOutcome,
    Fingerprint,
    GuardrailConfig,
    ParsedIssue,
    PathFilters,
    PatternMatch,
    ProcessIssueResult,
    PullRequestRef,
    RawError,
    RunContext,
    TierRouting,
)
from fixgate.patterns.extractor import PatternExtractor
from fixgate.patterns.learner import PatternLearner
from fixgate.patterns.matcher import PatternMatcher
from fixgate.policy.guardrails import Guardrails
from fixgate.ratelimit.limiter import RateLimiter
from fixgate.retry.handler import AttemptContext, attempt_fix_with_retries, with_backoff
from fixgate.routing.model_selector import select_model
from fixgate.settings import Settings
from fixgate.storage.json_doc import DocumentStore, JsonFileDocument
from fixgate.telemetry.logger import StructuredLogger
from fixgate.telemetry.metrics import MetricsCollector
from fixgate.tracker.base import IssueTracker
from fixgate.tracker.github_rest import GitHubIssueTracker
from fixgate.tracker.memory import InMemoryIssueTracker


@dataclass
class Services:
    """Everything one process needs to handle issues. Built once and passed into every call."""

    settings: Settings
    tracker: IssueTracker
    parser: IssueParser
    sanitizer: Sanitizer
    executor: TierExecutor
    attempts: AttemptStore
    rate_limiter: RateLimiter
    budget: BudgetStore
    circuit: CircuitBreaker
    patterns: DocumentStore
    logger: StructuredLogger
    metrics: MetricsCollector
    sleep: Callable[[float], None] = time.sleep

    def guardrails(self) -> Guardrails:
        return Guardrails(guardrail_config(self.settings))


def guardrail_config(s: Settings) -> GuardrailConfig:
    path_filters = None
    if s.guardrail_path_include or s.guardrail_path_exclude:
        path_filters = PathFilters(include=s.guardrail_path_include, exclude=s.guardrail_path_exclude)
    return GuardrailConfig(
        max_diff_lines=s.max_diff_lines,
        max_files=s.max_files,
        budget_limit=s.run_budget_limit,
        path_filters=path_filters,
        secret_patterns=s.guardrail_secret_patterns,
    )


def build_tracker(settings: Settings) -> IssueTracker:
    if settings.github_mode == "real":
        if not settings.github_token or not settings.github_repo:
            raise ValueError("github_mode=real requires FIXGATE_GITHUB_TOKEN and FIXGATE_GITHUB_REPO")
        return GitHubIssueTracker(token=settings.github_token, repo=settings.github_repo, api_base=settings.github_api_base)
    return InMemoryIssueTracker(pr_dir=settings.mock_github_dir)


def build_services(
    settings: Settings,
    *,
    tracker: IssueTracker | None = None,
    executor: TierExecutor | None = None,
    parser: IssueParser | None = None,
    sanitizer: Sanitizer | None = None,
) -> Services:
    s = settings
    sanitizer = sanitizer or IdentitySanitizer()
    logger = StructuredLogger(s.audit_log_path, to_stderr=s.log_to_stderr, redactor=sanitizer.sanitize_stack_trace)
    tracker = tracker or build_tracker(s)
    return Services(
        settings=s,
        tracker=tracker,
        parser=parser or MarkdownIssueParser(),
        sanitizer=sanitizer,
        executor=executor or MockTierExecutor(),
        attempts=AttemptStore(JsonFileDocument(s.resolve_state_path(s.attempt_store_path, "attempt-store.json"))),
        rate_limiter=RateLimiter(
            JsonFileDocument(s.resolve_state_path(s.rate_limit_path, "ratelimit.json")),
            per_minute=s.rate_limit_per_minute,
            per_day=s.rate_limit_per_day,
        ),
        budget=BudgetStore(
            JsonFileDocument(s.resolve_state_path(s.budget_path, "budget.json")),
            daily_cap=s.daily_budget_cap,
            weekly_cap=s.weekly_budget_cap,
            monthly_cap=s.monthly_budget_cap,
            reservation_amounts={
                "tier1": s.reservation_tier1,
                "tier2": s.reservation_tier2,
                "tier3": s.reservation_tier3,
            },
        ),
        circuit=CircuitBreaker(
            tracker,
            max_hops=s.max_hops,
            lock_label=s.lock_label,
            stale_after_s=s.lock_stale_after_s,
            secret=s.signature_secret,
            logger=logger,
        ),
        patterns=JsonFileDocument(s.resolve_state_path(s.pattern_library_path, "patterns.json")),
        logger=logger,
        metrics=MetricsCollector(),
    )


# -------- scoped acquisitions --------


@dataclass
class _Hold:
    reservation_id: Optional[str]
    actual: float = 0.0


@contextmanager
def _issue_lock(services: Services, issue_number: int, log: StructuredLogger) -> Iterator[None]:
    try:
        yield
    finally:
        try:
            services.circuit.release_lock(issue_number)
        except Exception as e:
            log.error("lock_release_failed", "could not release issue lock", exc=e)


@contextmanager
def _budget_hold(services: Services, hold: _Hold, log: StructuredLogger) -> Iterator[_Hold]:
    try:
        yield hold
    finally:
        if hold.reservation_id is not None:
            try:
                services.budget.refund(hold.reservation_id, hold.actual)
            except Exception as e:
                log.error("budget_refund_failed", "could not settle reservation", exc=e, reservation_id=hold.reservation_id)


# -------- execution --------


def _run_with_deadline(fn: Callable[[], ExecutionOutcome], timeout_s: float) -> ExecutionOutcome:
    # No `with`: on timeout the context manager would wait for the worker and defeat the deadline.
    ex = concurrent.futures.ThreadPoolExecutor(max_workers=1)
    try:
        fut = ex.submit(fn)
        return fut.result(timeout=timeout_s)
    finally:
        ex.shutdown(wait=False)


def _attempt_runner(
    services: Services, parsed: ParsedIssue, routing: TierRouting, ceiling: float, log: StructuredLogger
) -> Callable[[AttemptContext], ExecutionOutcome]:
    timeout_s = services.settings.model_timeout_s

    def _run(ctx: AttemptContext) -> ExecutionOutcome:
        log.info("attempt_started", f"tier {routing.tier} attempt {ctx.attempt_number}", model=routing.model)
        # Each attempt owns its tracker; closing it at the deadline refuses late usage from a stray worker.
        cost_tracker = CostTracker(ceiling=ceiling)
        try:
            outcome = _run_with_deadline(lambda: services.executor(parsed, routing, cost_tracker), timeout_s)
            return outcome.model_copy(update={"cost": cost_tracker.close()})
        except concurrent.futures.TimeoutError:
            log.warn("attempt_timeout", f"model call exceeded {timeout_s}s", attempt=ctx.attempt_number)
            return ExecutionOutcome(
                success=False,
                model=routing.model,
                error=f"model_timeout_{timeout_s}s",
                cost=cost_tracker.close(),
            )
        except Exception as e:
            log.error("attempt_failed", "executor raised", exc=e, attempt=ctx.attempt_number)
            return ExecutionOutcome(
                success=False,
                model=routing.model,
                error=f"{type(e).__name__}: {e}",
                cost=cost_tracker.close(),
            )

    return _run


def _pr_body(issue_number: int, match: Optional[PatternMatch], tier: int, notes: List[str]) -> str:
    source = "Pattern replay" if match else f"Tier {tier}"
    body = f"Fixes #{issue_number}\n\nAutomated fix generated by fixgate ({source})."
    if notes:
        body += "\n\nReview notes:\n" + "\n".join(f"- {n}" for n in notes)
    return body


def _open_or_update_pr(services: Services, *, title: str, body: str, head: str) -> PullRequestRef:
    existing = services.tracker.find_open_pr_for_head(head)
    if existing is not None:
        return services.tracker.update_pr(existing.number, title=title, body=body)
    return services.tracker.create_pr(title=title, body=body, base=services.settings.github_base_branch, head=head)


# -------- pipeline --------


def process_issue(
    issue_number: int,
    services: Services,
    *,
    run_context: RunContext | None = None,
    guardrails: Guardrails | None = None,
) -> ProcessIssueResult:
    """
    Decide whether to attempt an automated fix for one issue and carry it through.

    Order: validate -> fingerprint -> cooldown -> lock -> rate limit -> reserve -> pattern or
    tier execution -> guardrails -> record -> learn -> PR. The budget hold is settled and the
    lock released on every path out of the locked section, refund first.
    """
    s = services.settings
    run_context = run_context if run_context is not None else RunContext()
    guardrails = guardrails or services.guardrails()
    log = services.logger.child(issue=issue_number, stage="orchestrator")
    log.info("issue_received", "processing issue")

    issue = services.tracker.get_issue(issue_number)
    if issue is None:
        log.error("issue_not_found", f"issue #{issue_number} not found")
        return ProcessIssueResult(issue_number=issue_number, rejected=True, reason="issue_not_found")

    if s.required_label and s.required_label not in issue.labels:
        log.info("issue_skipped", f"missing {s.required_label} label")
        return ProcessIssueResult(issue_number=issue_number, skipped=True, reason="missing_robot_label")

    parse = services.parser.parse(issue)
    if parse.errors:
        reason = "; ".join(parse.errors)
        log.warn("issue_invalid", reason)
        services.tracker.add_label(issue_number, "incomplete")
        services.tracker.add_comment(issue_number, f"⚠️ {reason}\n\nPlease ensure issue follows Logger format.")
        return ProcessIssueResult(issue_number=issue_number, rejected=True, reason=reason)

    parsed = parse.parsed
    stack = services.sanitizer.sanitize_stack_trace(parsed.stack_trace or "")
    message = services.sanitizer.sanitize_stack_trace(parsed.error_message or "")
    parsed = parsed.model_copy(update={"stack_trace": stack, "error_message": message})
    fingerprint = FailureFingerprinter.normalize(RawError(type=parsed.error_type or "UnknownError", message=message, stack=stack))
    attempt_key = parsed.fingerprint or fingerprint.id
    run_context.fingerprints.append(attempt_key)
    log.set_context(fingerprint=attempt_key)

    if not services.attempts.can_attempt(attempt_key):
        run_context.cooldowns += 1
        log.info("cooldown_active", "fingerprint is cooling down or exhausted")
        return ProcessIssueResult(
            issue_number=issue_number,
            skipped=True,
            reason="cooldown_active",
            fingerprint=attempt_key,
            resets_at=services.attempts.cooldown_until(attempt_key),
        )

    lock = services.circuit.acquire_lock_and_increment_hop(
        issue_number, trace=log.context["run_id"], reason=f"fingerprint {attempt_key}"
    )
    if not lock.acquired:
        log.info("lock_unavailable", str(lock.reason))
        return ProcessIssueResult(issue_number=issue_number, skipped=True, reason=lock.reason, fingerprint=attempt_key)

    with _issue_lock(services, issue_number, log):
        return _process_locked(
            issue_number,
            services,
            parsed=parsed,
            fingerprint=fingerprint,
            attempt_key=attempt_key,
            hop=lock.current_hop,
            run_context=run_context,
            guardrails=guardrails,
            log=log,
        )


def _process_locked(
    issue_number: int,
    services: Services,
    *,
    parsed: ParsedIssue,
    fingerprint: Fingerprint,
    attempt_key: str,
    hop: Optional[int],
    run_context: RunContext,
    guardrails: Guardrails,
    log: StructuredLogger,
) -> ProcessIssueResult:
    s = services.settings
    base = dict(issue_number=issue_number, fingerprint=attempt_key, hop=hop)

    limit = services.rate_limiter.can_proceed()
    if not limit.allowed:
        window = "per_day" if "Per-day" in (limit.reason or "") else "per_minute"
        resets_at = limit.resets_at[window]
        log.warn("rate_limited", limit.reason or "rate limited", resets_at=resets_at.isoformat())
        services.tracker.add_comment(
            issue_number, f"⏳ {limit.reason}. fixgate will retry after {resets_at.isoformat()}."
        )
        return ProcessIssueResult(**base, skipped=True, reason="rate_limited", resets_at=resets_at)

    routing = select_model(parsed.stack_trace, s.force_tier)
    per_attempt = services.budget.reservation_amount_for_tier(routing.tier)
    amount = per_attempt * routing.attempts
    reservation = services.budget.reserve(amount, f"issue #{issue_number} tier {routing.tier}")
    if not reservation.success:
        period = reservation.breached_period or "daily"
        resets_at = getattr(services.budget.status().periods, period).reset_at
        log.warn("budget_insufficient", reservation.reason or "", breached_period=period, remaining=reservation.remaining)
        services.tracker.add_comment(
            issue_number,
            f"💸 {reservation.reason}. Remaining: ${max(reservation.remaining, 0.0):.4f}. "
            f"Budget resets at {resets_at.isoformat()}.",
        )
        return ProcessIssueResult(**base, skipped=True, reason="budget_insufficient", resets_at=resets_at)

    services.rate_limiter.record_attempt()

    with _budget_hold(services, _Hold(reservation_id=reservation.reservation_id), log) as hold:
        matcher = PatternMatcher.from_document(services.patterns, threshold=s.match_threshold)
        match = matcher.match(fingerprint)
        learner = PatternLearner(services.patterns, learning_enabled=s.learning_enabled, alpha=s.learning_alpha)

        retries = 0
        if match is not None:
            tier = 0
            log.set_context(tier=0)
            log.info("pattern_applied", "replaying learned pattern", strategy=match.strategy, pattern_id=match.pattern.id)
            execution = ExecutionOutcome(
                success=True, model=f"pattern-{match.strategy}", patch=match.pattern.patch, cost=0.0, tests_passed=True
            )
            run_context.patterns_used += 1
            run_context.zero_cost_fixes += 1
        else:
            tier = routing.tier
            log.set_context(tier=tier)
            outcome = attempt_fix_with_retries(
                tier, parsed, routing.attempts, _attempt_runner(services, parsed, routing, per_attempt, log)
            )
            hold.actual = sum(a.cost for a in outcome.attempts)
            retries = max(0, len(outcome.attempts) - 1)
            for _ in range(retries):
                services.metrics.record_retry(escalated=False)

            if not outcome.success:
                services.metrics.record_retry(escalated=True)
                return _record_failure(
                    issue_number,
                    services,
                    base=base,
                    tier=tier,
                    model=routing.model,
                    attempt_key=attempt_key,
                    cost=hold.actual,
                    run_context=run_context,
                    reason=outcome.reason or "max_retries_exceeded",
                    comment=(
                        f"⚠️ Automated fix failed after {len(outcome.attempts)} attempt(s) "
                        f"({outcome.reason}). Manual review required."
                    ),
                    retries=retries,
                    log=log,
                )
            execution = outcome.result  # type: ignore[assignment]

        run_context.total_cost += hold.actual

        if not execution.patch:
            return _record_failure(
                issue_number,
                services,
                base=base,
                tier=tier,
                model=execution.model,
                attempt_key=attempt_key,
                cost=hold.actual,
                run_context=None,
                reason="execution_error",
                comment="⚠️ Fix generation returned no patch. Manual review required.",
                retries=retries,
                log=log,
            )

        decision = guardrails.evaluate_patch(execution.patch, run_context)
        if not decision.allowed:
            services.attempts.record_attempt(attempt_key, False)
            services.metrics.record_fix(tier, False, hold.actual)
            log.warn("guardrail_rejected", decision.reason or "", details=decision.details)
            services.tracker.add_comment(
                issue_number,
                f"⚠️ Patch rejected by safety guardrails ({decision.reason}). Manual review required.",
            )
            return ProcessIssueResult(
                **base,
                tier=tier,
                model=execution.model,
                success=False,
                fix_generated=True,
                rejected=True,
                reason=decision.reason,
                retries=retries,
                cost=hold.actual,
                pattern_id=match.pattern.id if match else None,
            )

        tests_passed = execution.tests_passed if execution.tests_passed is not None else execution.success
        services.attempts.record_attempt(attempt_key, tests_passed)
        services.metrics.record_fix(tier, tests_passed, hold.actual)

        if match is not None:
            learner.learn(match.pattern.id, tests_passed)
        elif tests_passed:
            extractor = PatternExtractor(services.patterns, learning_enabled=s.learning_enabled)
            pattern = extractor.extract(fingerprint, execution.patch, f"Automated fix for issue #{issue_number}")
            if pattern is not None:
                learner.learn(pattern.id, True)

        if not tests_passed:
            log.warn("tests_failed", "tests failed after applying fix")
            services.tracker.add_comment(issue_number, "⚠️ Tests failed after applying fix. Manual review required.")
            return ProcessIssueResult(
                **base,
                tier=tier,
                model=execution.model,
                success=False,
                fix_generated=True,
                tests_passed=False,
                reason="tests_failed",
                retries=retries,
                cost=hold.actual,
                pattern_id=match.pattern.id if match else None,
            )

        delay_history: List[int] = []
        notes = [d for d in decision.details if d.startswith("sensitive file:")]

        def _on_retry(err: BaseException, attempt: int, delay_ms: int) -> None:
            services.metrics.record_retry(escalated=False)
            log.warn("pr_retry", f"PR write failed, retrying in {delay_ms}ms", attempt=attempt, error=str(err))

        pr = with_backoff(
            lambda: _open_or_update_pr(
                services,
                title=f"fix: automated fix for issue #{issue_number}",
                body=_pr_body(issue_number, match, tier, notes),
                head=f"fix/issue-{issue_number}",
            ),
            max_attempts=s.max_pr_attempts,
            sleep=services.sleep,
            delay_history=delay_history,
            on_retry=_on_retry,
        )

        services.tracker.add_comment(issue_number, f"✅ Fix deployed to PR #{pr.number}. Tests passing.")
        log.info("issue_processed", "fix deployed", pr_number=pr.number, pr_retries=len(delay_history))

        return ProcessIssueResult(
            **base,
            tier=tier,
            model=execution.model,
            success=True,
            fix_generated=True,
            tests_passed=True,
            pr_number=pr.number,
            retries=len(delay_history),
            delay_history=delay_history,
            cost=hold.actual,
            pattern_id=match.pattern.id if match else None,
        )


def _record_failure(
    issue_number: int,
    services: Services,
    *,
    base: dict,
    tier: int,
    model: str,
    attempt_key: str,
    cost: float,
    run_context: Optional[RunContext],
    reason: str,
    comment: str,
    retries: int,
    log: StructuredLogger,
) -> ProcessIssueResult:
    if run_context is not None:
        run_context.total_cost += cost
    services.attempts.record_attempt(attempt_key, False)
    services.metrics.record_fix(tier, False, cost)
    log.warn("fix_failed", reason)
    services.tracker.add_comment(issue_number, comment)
    return ProcessIssueResult(
        **base,
        tier=tier,
        model=model,
        success=False,
        fix_generated=False,
        reason=reason,
        retries=retries,
        cost=cost,
    )
