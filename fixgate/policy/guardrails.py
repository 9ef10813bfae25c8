from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Optional

from fixgate.models import GuardrailConfig, GuardrailDecision, RunContext
from fixgate.routing.sensitive_files import is_sensitive_file, normalize_path


DEFAULT_SECRET_PATTERNS: List[str] = [
    r"sk_(?:live|test)_[0-9A-Za-z]{16,}",
    r"AKIA[0-9A-Z]{16}",
    r"gh[pousr]_[0-9A-Za-z]{36}",
    r"-----BEGIN (?:RSA |EC |OPENSSH )?PRIVATE KEY-----",
    r"(?i)(?:api[_-]?key|secret|password)\s*[:=]\s*['\"][^'\"]{12,}['\"]",
]

_DIFF_HEADER_RE = re.compile(r"^diff --git a/(\S+) b/(\S+)", re.MULTILINE)


def files_in_patch(patch: str) -> List[str]:
    out: List[str] = []
    for m in _DIFF_HEADER_RE.finditer(patch or ""):
        p = normalize_path(m.group(2))
        if p not in out:
            out.append(p)
    return out


def changed_lines(patch: str) -> int:
    n = 0
    for line in (patch or "").splitlines():
        if line.startswith("+++") or line.startswith("---"):
            continue
        if line.startswith("+") or line.startswith("-"):
            n += 1
    return n


@dataclass(frozen=True)
class Guardrails:
    """
    Post-hoc checks on a generated patch, independent of test outcome.

    Violations are reported in a fixed order (run budget, diff size, file count, path filters,
    secrets); `reason` is the first one, `details` lists all of them. Sensitive files are
    advisory only and show up in `details` without blocking.
    """

    config: GuardrailConfig

    def evaluate_patch(self, patch: str, run_context: Optional[RunContext] = None) -> GuardrailDecision:
        cfg = self.config
        files = files_in_patch(patch)
        reasons: List[str] = []
        details: List[str] = []

        if run_context is not None and run_context.total_cost > cfg.budget_limit:
            reasons.append("budget_exceeded")
            details.append(f"run cost {run_context.total_cost:.4f} > limit {cfg.budget_limit}")

        lines = changed_lines(patch)
        if lines > cfg.max_diff_lines:
            reasons.append("diff_limit_exceeded")
            details.append(f"changed lines {lines} > {cfg.max_diff_lines}")

        if len(files) > cfg.max_files:
            reasons.append("file_limit_exceeded")
            details.append(f"files touched {len(files)} > {cfg.max_files}")

        if cfg.path_filters is not None:
            inc, exc = cfg.path_filters.include, cfg.path_filters.exclude
            bad = [
                f
                for f in files
                if any(f.startswith(p) for p in exc) or (inc and not any(f.startswith(p) for p in inc))
            ]
            if bad:
                reasons.append("path_filter_violation")
                details.extend(f"path not allowed: {f}" for f in bad)

        added = "\n".join(l[1:] for l in (patch or "").splitlines() if l.startswith("+") and not l.startswith("+++"))
        for pat in cfg.secret_patterns or DEFAULT_SECRET_PATTERNS:
            if re.search(pat, added):
                reasons.append("secret_detected")
                details.append(f"secret pattern matched: {pat}")
                break

        details.extend(f"sensitive file: {f}" for f in files if is_sensitive_file(f))

        return GuardrailDecision(
            allowed=not reasons,
            reason=reasons[0] if reasons else None,
            details=details,
            files=files,
        )
