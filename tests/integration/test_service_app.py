from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from fastapi.testclient import TestClient

from fixgate.execution.mock import MockTierExecutor
from fixgate.orchestrator import build_services
from fixgate.service.app import create_app
from fixgate.settings import Settings
from fixgate.tracker.memory import InMemoryIssueTracker


BODY = """## Error Details
- Extension: Palette Kit v1.0.0
- Error Type: TypeError
- Message: Cannot read properties of undefined (reading 'id')

## Stack Trace
```
TypeError: Cannot read properties of undefined (reading 'id')
    at render (src/ui/panel.js:10:5)
```
"""


def _client(tmp_path: Path, **overrides: Any) -> tuple[TestClient, InMemoryIssueTracker]:
    mock_pr_dir = tmp_path / "mock_github"
    audit_path = tmp_path / "audit.jsonl"
    s = Settings(
        github_mode="mock",
        state_dir=str(tmp_path / "state"),
        audit_log_path=str(audit_path),
        mock_github_dir=str(mock_pr_dir),
        **overrides,
    )
    tracker = InMemoryIssueTracker(pr_dir=s.mock_github_dir)
    services = build_services(s, tracker=tracker, executor=MockTierExecutor(issue_number=7))
    return TestClient(create_app(s, services)), tracker


def test_process_issue_creates_mock_pr_and_audit_log(tmp_path: Path) -> None:
    client, tracker = _client(tmp_path)
    tracker.add_issue(7, title="TypeError", body=BODY, labels=["robot"])

    r = client.post("/issues/7/process")
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["success"] is True
    assert body["pr_number"] == 1

    pr_files = list((tmp_path / "mock_github").glob("*.json"))
    assert pr_files, "expected mock PR metadata file"
    meta = json.loads(pr_files[0].read_text(encoding="utf-8"))
    assert meta["head"] == "fix/issue-7"

    lines = (tmp_path / "audit.jsonl").read_text(encoding="utf-8").splitlines()
    assert any(json.loads(ln)["event_type"] == "issue_received" for ln in lines)

    # Persisted state lands under state_dir.
    assert (tmp_path / "state" / "budget.json").exists()
    assert (tmp_path / "state" / "ratelimit.json").exists()
    assert (tmp_path / "state" / "attempt-store.json").exists()

    run = client.get("/run-context").json()
    assert run["total_cost"] > 0
    assert len(run["fingerprints"]) == 1


def test_health_and_unknown_issue(tmp_path: Path) -> None:
    client, _ = _client(tmp_path)
    assert client.get("/health").json()["ok"] is True
    r = client.post("/issues/99/process")
    assert r.status_code == 200
    assert r.json()["reason"] == "issue_not_found"


def test_budget_endpoints(tmp_path: Path) -> None:
    client, tracker = _client(tmp_path)
    tracker.add_issue(7, body=BODY, labels=["robot"])
    client.post("/issues/7/process")

    status = client.get("/budget").json()
    assert status["periods"]["daily"]["spent"] > 0
    assert status["periods"]["daily"]["reserved"] == 0
    assert client.get("/budget/alerts").json() == {"alerts": []}

    reset = client.post("/budget/reset", params={"period": "daily"}).json()
    assert reset["periods"]["daily"]["spent"] == 0
    assert reset["periods"]["weekly"]["spent"] > 0

    assert client.post("/budget/reset", params={"period": "yearly"}).status_code == 422


def test_rate_limit_endpoints(tmp_path: Path) -> None:
    client, tracker = _client(tmp_path)
    tracker.add_issue(7, body=BODY, labels=["robot"])
    client.post("/issues/7/process")

    assert len(client.get("/rate-limit").json()["windows"]["per_minute"]["timestamps"]) == 1
    cleared = client.post("/rate-limit/reset").json()
    assert cleared["windows"]["per_minute"]["timestamps"] == []


def test_circuit_reset_and_label_setup(tmp_path: Path) -> None:
    client, tracker = _client(tmp_path)
    tracker.add_issue(7, body=BODY, labels=["robot", "hop:3", "circuit-breaker"])

    r = client.post("/issues/7/circuit/reset")
    assert r.status_code == 200
    assert r.json()["labels"] == ["robot", "hop:0"]
    assert client.post("/issues/99/circuit/reset").status_code == 404

    labels = client.post("/labels/setup").json()["labels"]
    assert "circuit-breaker" in labels
    assert "processing:fixgate" in labels
    assert set(labels) <= set(tracker.repo_labels())


def test_metrics_reports_slo_alerts(tmp_path: Path) -> None:
    client, tracker = _client(tmp_path)
    tracker.add_issue(7, body=BODY, labels=["robot"])
    client.post("/issues/7/process")

    m = client.get("/metrics").json()
    assert m["metrics"]["fixes"]["total"] == 1
    assert m["success_rate"] == 1.0
    assert m["slo_alerts"] == []

    r = client.post("/metrics/reset")
    assert r.status_code == 200
    assert r.json()["metrics"]["fixes"]["total"] == 0
    m = client.get("/metrics").json()
    assert m["metrics"]["cost"]["total"] == 0.0
    assert m["success_rate"] == 0.0


def test_configured_path_filters_reject_patch(tmp_path: Path) -> None:
    client, tracker = _client(tmp_path, guardrail_path_include=["lib/"])
    tracker.add_issue(7, body=BODY, labels=["robot"])

    body = client.post("/issues/7/process").json()
    assert body["success"] is False
    assert body["rejected"] is True
    assert body["reason"] == "path_filter_violation"
    assert body["pr_number"] is None
    assert tracker.prs() == []
    assert "safety guardrails (path_filter_violation)" in tracker.comments(7)[-1]


def test_configured_secret_patterns_replace_builtin_set(tmp_path: Path) -> None:
    # The mock patch adds "// mock patch".
    client, tracker = _client(tmp_path, guardrail_secret_patterns=[r"mock\s+patch"])
    tracker.add_issue(7, body=BODY, labels=["robot"])

    body = client.post("/issues/7/process").json()
    assert body["rejected"] is True
    assert body["reason"] == "secret_detected"
