from __future__ import annotations

import os

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="FIXGATE_", extra="ignore")

    # dev|test|production. Pattern extraction/learning only runs in production.
    env: str = "dev"

    # -------- Persisted state documents --------
    # Each document is a single JSON file; point them at a checkout that is committed/pushed
    # between runs when several workflow invocations share state.
    state_dir: str = ".fixgate/state"
    attempt_store_path: str | None = None
    pattern_library_path: str | None = None
    budget_path: str | None = None
    rate_limit_path: str | None = None

    audit_log_path: str = "var/audit/fixgate.jsonl"
    # Mirror structured log lines to stderr (GitHub Actions log view).
    log_to_stderr: bool = False

    # -------- Rate limiting (dual sliding window) --------
    rate_limit_per_minute: int = 5
    rate_limit_per_day: int = 20

    # -------- Budget caps (USD) --------
    daily_budget_cap: float = 0.066
    weekly_budget_cap: float = 0.33
    monthly_budget_cap: float = 1.0
    # Conservative reservation per tier attempt, refunded down to the actual spend afterwards.
    # An issue holds amount x routing attempts for its whole run.
    reservation_tier1: float = 0.001
    reservation_tier2: float = 0.006
    reservation_tier3: float = 0.01

    # -------- Circuit breaker / soft lock --------
    max_hops: int = 3
    lock_owner: str = "fixgate"
    lock_stale_after_s: float = 30 * 60.0
    signature_secret: str = "default-secret"

    # -------- Pattern library --------
    match_threshold: float = 0.8
    learning_alpha: float = 0.1

    # -------- Execution --------
    model_timeout_s: float = 30.0
    max_pr_attempts: int = 3
    # Pin every issue to one tier (1|2|3). Unset = route by stack complexity.
    force_tier: int | None = None
    # Only process issues carrying this label (None disables the opt-in check).
    required_label: str | None = "robot"

    # -------- Guardrail defaults --------
    max_diff_lines: int = 200
    max_files: int = 5
    run_budget_limit: float = 5.0
    # Path prefixes a patch may touch (empty = any) and must not touch. JSON lists in env.
    guardrail_path_include: list[str] = []
    guardrail_path_exclude: list[str] = []
    # Regexes treated as secrets in added lines (empty = built-in set).
    guardrail_secret_patterns: list[str] = []

    # -------- Issue tracker --------
    github_mode: str = "mock"  # mock|real
    github_token: str | None = None
    github_repo: str | None = None
    github_base_branch: str = "main"
    github_api_base: str = "https://api.github.com"
    # Mock mode only: also write created PRs as JSON files here.
    mock_github_dir: str | None = None

    def resolve_state_path(self, explicit: str | None, file_name: str) -> str:
        if explicit:
            return explicit
        return os.path.join(self.state_dir, file_name)

    @property
    def learning_enabled(self) -> bool:
        return (self.env or "").strip().lower() == "production"

    @property
    def lock_label(self) -> str:
        return f"processing:{self.lock_owner}"
