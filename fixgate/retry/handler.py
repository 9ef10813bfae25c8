from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, TypeVar

from fixgate.models import ExecutionOutcome, RetryOutcome


SAME_ERROR_RATIO = 0.1
_TEST_ERROR_RE = re.compile(r"Error: (.*)", re.IGNORECASE)

T = TypeVar("T")


@dataclass
class AttemptContext:
    tier: int
    error: Any
    attempt_number: int
    previous_attempts: List[ExecutionOutcome] = field(default_factory=list)


AttemptExecutor = Callable[[AttemptContext], ExecutionOutcome]


def levenshtein_distance(a: str = "", b: str = "") -> int:
    a, b = str(a), str(b)
    if not a:
        return len(b)
    if not b:
        return len(a)
    prev = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        cur = [i] + [0] * len(b)
        for j, cb in enumerate(b, start=1):
            cur[j] = min(prev[j] + 1, cur[j - 1] + 1, prev[j - 1] + (0 if ca == cb else 1))
        prev = cur
    return prev[-1]


def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def extract_error_message(attempt: Any) -> str:
    """Best-effort error text of one attempt: the test output's `Error:` line, then `error`, then `message`."""
    if not attempt:
        return ""
    if isinstance(attempt, str):
        return attempt
    test_output = _field(attempt, "test_output")
    if test_output:
        m = _TEST_ERROR_RE.search(str(test_output))
        if m:
            return m.group(1)
    err = _field(attempt, "error")
    if err:
        if isinstance(err, str):
            return err
        msg = _field(err, "message") or (str(err) if isinstance(err, BaseException) else None)
        if msg:
            return str(msg)
    msg = _field(attempt, "message")
    return str(msg) if msg else ""


def is_same_error(previous: Any, current: Any) -> bool:
    prev_msg = extract_error_message(previous)
    cur_msg = extract_error_message(current)
    if not prev_msg or not cur_msg:
        return False
    distance = levenshtein_distance(prev_msg, cur_msg)
    return distance / (max(len(prev_msg), len(cur_msg)) or 1) <= SAME_ERROR_RATIO


def default_attempt_limit(tier: int) -> int:
    return 1 if tier == 3 else 2


def attempt_fix_with_retries(
    tier: int,
    error: Any,
    max_attempts: Optional[int],
    executor: AttemptExecutor,
) -> RetryOutcome:
    """
    Run `executor` up to min(requested, tier default) times (tier 3: once, others: twice).
    Two consecutive attempts failing with near-identical errors stop early as
    `deterministic_failure`.
    """
    default = default_attempt_limit(tier)
    limit = max(1, min(max_attempts or default, default))
    attempts: List[ExecutionOutcome] = []

    for index in range(limit):
        ctx = AttemptContext(tier=tier, error=error, attempt_number=index + 1, previous_attempts=list(attempts))
        result = executor(ctx)
        attempts.append(result)

        if result.tests_passed is True or result.success is True:
            return RetryOutcome(success=True, result=result, attempts=attempts)

        if index > 0 and is_same_error(attempts[index - 1], result):
            return RetryOutcome(
                success=False, should_escalate=True, reason="deterministic_failure", attempts=attempts, result=result
            )

    return RetryOutcome(
        success=False,
        should_escalate=True,
        reason="max_retries_exceeded",
        attempts=attempts,
        result=attempts[-1] if attempts else None,
    )


def is_rate_limit_error(err: BaseException) -> bool:
    return getattr(err, "status", None) == 403 or "rate limit" in str(err).lower()


def determine_backoff_ms(err: BaseException, attempt: int) -> int:
    if is_rate_limit_error(err):
        return 1000 * 2 ** (attempt - 1)
    return 200 * attempt


def with_backoff(
    operation: Callable[[], T],
    *,
    max_attempts: int = 3,
    sleep: Callable[[float], None] = time.sleep,
    delay_history: Optional[List[int]] = None,
    on_retry: Optional[Callable[[BaseException, int, int], None]] = None,
) -> T:
    """Call `operation` until it succeeds or `max_attempts` is reached; the last error is re-raised."""
    attempt = 0
    while True:
        attempt += 1
        try:
            return operation()
        except Exception as e:
            if attempt >= max_attempts:
                raise
            delay = determine_backoff_ms(e, attempt)
            if delay_history is not None:
                delay_history.append(delay)
            if on_retry is not None:
                on_retry(e, attempt, delay)
            sleep(delay / 1000.0)
