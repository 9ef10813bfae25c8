from __future__ import annotations

import json
from pathlib import Path

from fixgate.telemetry.logger import StructuredLogger


def test_jsonl_records_and_redaction(tmp_path: Path) -> None:
    path = tmp_path / "logs" / "audit.jsonl"
    logger = StructuredLogger(str(path), redactor=lambda s: s.replace("hunter2", "[REDACTED]"))

    logger.info("issue_received", "got issue", issue=7, note="password hunter2")
    logger.warn("cooldown", "hunter2 in message")

    lines = [json.loads(l) for l in path.read_text(encoding="utf-8").splitlines()]
    assert [l["event_type"] for l in lines] == ["issue_received", "cooldown"]
    assert lines[0]["level"] == "info"
    assert lines[0]["data"] == {"issue": 7, "note": "password [REDACTED]"}
    assert lines[1]["message"] == "[REDACTED] in message"
    assert lines[0]["context"]["run_id"] == lines[1]["context"]["run_id"]


def test_child_binds_context_and_shares_buffer() -> None:
    root = StructuredLogger(context={"service": "fixgate"})
    child = root.child(issue=42, stage="execute")
    child.debug("attempt", "first")
    root.info("done")

    assert len(root.records) == 2
    rec = root.events("attempt")[0]
    assert rec["context"]["issue"] == 42
    assert rec["context"]["service"] == "fixgate"
    assert rec["context"]["run_id"] == root.context["run_id"]
    assert "issue" not in root.events("done")[0]["context"]

    child.set_context(stage="review")
    assert child.context["stage"] == "review"
    assert root.context.get("stage") is None


def test_error_captures_exception() -> None:
    logger = StructuredLogger()
    try:
        raise ValueError("bad value")
    except ValueError as e:
        logger.error("execution_error", "attempt crashed", exc=e, issue=3)
    rec = logger.events("execution_error")[0]
    assert rec["level"] == "error"
    assert rec["data"]["issue"] == 3
    assert rec["data"]["error"]["type"] == "ValueError"
    assert "bad value" in rec["data"]["error"]["traceback"]


def test_buffer_is_bounded() -> None:
    logger = StructuredLogger(keep=3)
    for i in range(5):
        logger.info("tick", str(i))
    assert [r["message"] for r in logger.records] == ["2", "3", "4"]
