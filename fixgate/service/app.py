from __future__ import annotations

from typing import Any, Dict, Literal, Optional

from fastapi import FastAPI, HTTPException, Request

from fixgate.errors import FixgateError, NotFoundError, TrackerError
from fixgate.models import BudgetAlert, BudgetState, ProcessIssueResult, RateLimitState, RunContext
from fixgate.orchestrator import Services, build_services, process_issue
from fixgate.settings import Settings
from fixgate.telemetry.alerts import AlertManager


def _services(request: Request) -> Services:
    return request.app.state.services


def create_app(settings: Settings | None = None, services: Services | None = None) -> FastAPI:
    """
    App factory used by uvicorn (`--factory`) and tests.

    One `Services` bundle per app; `app.state.run_context` accumulates counters across every
    issue this process handles.
    """
    s = settings or Settings()
    svc = services or build_services(s)

    app = FastAPI(title="fixgate", version="0.1.0")
    app.state.settings = s
    app.state.services = svc
    app.state.run_context = RunContext()
    app.state.alerts = AlertManager(svc.logger)

    @app.get("/health")
    def health(request: Request) -> Dict[str, Any]:
        return {"ok": True, "version": "0.1.0", "env": request.app.state.settings.env}

    @app.post("/issues/{issue_number}/process", response_model=ProcessIssueResult)
    def process(issue_number: int, request: Request) -> ProcessIssueResult:
        try:
            return process_issue(issue_number, _services(request), run_context=request.app.state.run_context)
        except TrackerError as e:
            raise HTTPException(status_code=502, detail=f"issue tracker error: {e}") from e

    @app.get("/run-context", response_model=RunContext)
    def run_context(request: Request) -> RunContext:
        return request.app.state.run_context

    @app.get("/budget", response_model=BudgetState)
    def budget_status(request: Request) -> BudgetState:
        return _services(request).budget.status()

    @app.get("/budget/alerts")
    def budget_alerts(request: Request) -> Dict[str, Any]:
        alerts: list[BudgetAlert] = _services(request).budget.check_thresholds()
        return {"alerts": [a.model_dump(mode="json") for a in alerts]}

    @app.post("/budget/reset", response_model=BudgetState)
    def budget_reset(request: Request, period: Optional[Literal["daily", "weekly", "monthly"]] = None) -> BudgetState:
        svc = _services(request)
        svc.logger.warn("budget_reset", "operator reset", period=period or "all")
        return svc.budget.reset(period)

    @app.get("/rate-limit", response_model=RateLimitState)
    def rate_limit_status(request: Request) -> RateLimitState:
        return _services(request).rate_limiter.status()

    @app.post("/rate-limit/reset", response_model=RateLimitState)
    def rate_limit_reset(request: Request) -> RateLimitState:
        svc = _services(request)
        svc.logger.warn("rate_limit_reset", "operator reset")
        return svc.rate_limiter.reset()

    @app.post("/issues/{issue_number}/circuit/reset")
    def circuit_reset(issue_number: int, request: Request) -> Dict[str, Any]:
        svc = _services(request)
        try:
            svc.circuit.reset(issue_number)
        except NotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e)) from e
        except FixgateError as e:
            raise HTTPException(status_code=502, detail=str(e)) from e
        issue = svc.tracker.get_issue(issue_number)
        return {"ok": True, "labels": issue.labels if issue else []}

    @app.post("/labels/setup")
    def labels_setup(request: Request) -> Dict[str, Any]:
        try:
            created = _services(request).circuit.setup_labels()
        except TrackerError as e:
            raise HTTPException(status_code=502, detail=str(e)) from e
        return {"ok": True, "labels": created}

    @app.get("/metrics")
    def metrics(request: Request) -> Dict[str, Any]:
        svc = _services(request)
        snapshot = svc.metrics.snapshot()
        projected = snapshot.cost.total / snapshot.fixes.total * 1000 if snapshot.fixes.total else 0.0
        alerts = request.app.state.alerts.check_slos(snapshot, projected)
        for alert in alerts:
            request.app.state.alerts.send(alert)
        return {
            "metrics": snapshot.model_dump(mode="json"),
            "success_rate": svc.metrics.success_rate,
            "projected_annual_cost": projected,
            "slo_alerts": [a.model_dump(mode="json") for a in alerts],
        }

    @app.post("/metrics/reset")
    def metrics_reset(request: Request) -> Dict[str, Any]:
        svc = _services(request)
        svc.logger.warn("metrics_reset", "operator reset")
        svc.metrics.reset()
        return {"ok": True, "metrics": svc.metrics.snapshot().model_dump(mode="json")}

    return app
