from __future__ import annotations

from typing import List

import pytest

from fixgate.errors import TrackerError
from fixgate.models import ExecutionOutcome
from fixgate.retry.handler import (
    AttemptContext,
    attempt_fix_with_retries,
    determine_backoff_ms,
    extract_error_message,
    is_same_error,
    levenshtein_distance,
    with_backoff,
)


def _failing(*errors: str):
    calls: List[AttemptContext] = []

    def _exec(ctx: AttemptContext) -> ExecutionOutcome:
        calls.append(ctx)
        return ExecutionOutcome(success=False, model="m", error=errors[(ctx.attempt_number - 1) % len(errors)])

    return _exec, calls


def test_levenshtein() -> None:
    assert levenshtein_distance("kitten", "sitting") == 3
    assert levenshtein_distance("", "abc") == 3
    assert levenshtein_distance("same", "same") == 0


def test_same_error_threshold() -> None:
    base = "TypeError: cannot read property 'x' of undefined"
    assert is_same_error(base, base.replace("'x'", "'y'")) is True
    assert is_same_error(base, "SyntaxError: unexpected token") is False
    assert is_same_error("", base) is False


def test_message_extraction_order() -> None:
    assert extract_error_message("plain") == "plain"
    assert extract_error_message({"test_output": "FAIL\nError: boom here\n", "error": "other"}) == "boom here"
    assert extract_error_message({"error": {"message": "nested"}}) == "nested"
    assert extract_error_message(ExecutionOutcome(success=False, model="m", error="outcome error")) == "outcome error"
    assert extract_error_message({"message": "fallback"}) == "fallback"
    assert extract_error_message(None) == ""


def test_deterministic_failure_stops_on_second_attempt() -> None:
    executor, calls = _failing("ReferenceError: foo is not defined")
    out = attempt_fix_with_retries(1, {"msg": "x"}, 2, executor)
    assert out.success is False
    assert out.reason == "deterministic_failure"
    assert out.should_escalate is True
    assert len(out.attempts) == 2
    assert calls[1].attempt_number == 2
    assert len(calls[1].previous_attempts) == 1


def test_differing_errors_exhaust_ceiling() -> None:
    executor, _ = _failing("ReferenceError: foo is not defined", "SyntaxError: unexpected end of input")
    out = attempt_fix_with_retries(2, None, 5, executor)
    assert out.reason == "max_retries_exceeded"
    # Requested 5, tier default caps at 2.
    assert len(out.attempts) == 2


def test_tier3_gets_exactly_one_attempt() -> None:
    executor, calls = _failing("a", "b")
    out = attempt_fix_with_retries(3, None, None, executor)
    assert len(calls) == 1
    assert out.reason == "max_retries_exceeded"


def test_success_on_tests_passed_or_success_flag() -> None:
    out = attempt_fix_with_retries(1, None, 2, lambda ctx: ExecutionOutcome(success=False, model="m", tests_passed=True))
    assert out.success is True
    assert out.result is not None and out.result.tests_passed is True

    out = attempt_fix_with_retries(1, None, 0, lambda ctx: ExecutionOutcome(success=True, model="m"))
    assert out.success is True
    assert len(out.attempts) == 1


def test_backoff_delays() -> None:
    assert determine_backoff_ms(TrackerError("forbidden", status=403), 1) == 1000
    assert determine_backoff_ms(TrackerError("forbidden", status=403), 3) == 4000
    assert determine_backoff_ms(RuntimeError("API rate limit exceeded"), 2) == 2000
    assert determine_backoff_ms(RuntimeError("502 bad gateway"), 2) == 400


def test_with_backoff_retries_then_succeeds() -> None:
    slept: List[float] = []
    history: List[int] = []
    outcomes = [TrackerError("secondary rate limit", status=403), RuntimeError("boom"), "ok"]

    def op() -> str:
        item = outcomes.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    assert with_backoff(op, max_attempts=3, sleep=slept.append, delay_history=history) == "ok"
    assert history == [1000, 400]
    assert slept == [1.0, 0.4]


def test_with_backoff_reraises_last_error() -> None:
    calls = []

    def op() -> None:
        calls.append(1)
        raise RuntimeError(f"fail {len(calls)}")

    with pytest.raises(RuntimeError, match="fail 3"):
        with_backoff(op, max_attempts=3, sleep=lambda s: None)
    assert len(calls) == 3
