from __future__ import annotations

import re
from typing import Protocol

from fixgate.cost.tracker import CostTracker
from fixgate.models import ExecutionOutcome, IssueRecord, ParsedIssue, ParseResult, TierRouting


class IssueParser(Protocol):
    """Turns a tracker issue into structured error data. Non-empty `errors` rejects the issue."""

    def parse(self, issue: IssueRecord) -> ParseResult: ...


class Sanitizer(Protocol):
    def sanitize_stack_trace(self, text: str) -> str: ...


class TierExecutor(Protocol):
    """Runs one model-backed fix attempt for a tier. Token spend is reported through `cost_tracker`."""

    def __call__(self, issue: ParsedIssue, routing: TierRouting, cost_tracker: CostTracker) -> ExecutionOutcome: ...


class IdentitySanitizer:
    def sanitize_stack_trace(self, text: str) -> str:
        return text


_SECTION_RE = re.compile(r"^##\s+(.+?)\s*$", re.MULTILINE)
_FIELD_RE = re.compile(r"^-\s*([A-Za-z ]+):\s*(.*)$", re.MULTILINE)
_FENCE_RE = re.compile(r"^```[^\n]*\n(.*?)\n?```", re.DOTALL)


def _sections(body: str) -> dict[str, str]:
    out: dict[str, str] = {}
    matches = list(_SECTION_RE.finditer(body))
    for i, m in enumerate(matches):
        end = matches[i + 1].start() if i + 1 < len(matches) else len(body)
        out[m.group(1).strip().lower()] = body[m.end() : end].strip()
    return out


class MarkdownIssueParser:
    """
    Parser for the issue layout produced by the error reporter:

        ## Error Details
        - Extension: Palette Kit v1.0.0
        - Error Type: TypeError
        - Message: ...
        - Fingerprint: ...

        ## Stack Trace
        ```
        ...
        ```

        ## Breadcrumbs
        1. ...
    """

    max_body_chars = 65_000

    def parse(self, issue: IssueRecord) -> ParseResult:
        body = issue.body or ""
        errors: list[str] = []
        if len(body) > self.max_body_chars:
            errors.append(f"Issue body exceeds {self.max_body_chars} characters")

        sections = _sections(body)
        fields = {k.strip().lower(): v.strip() for k, v in _FIELD_RE.findall(sections.get("error details", ""))}
        stack = sections.get("stack trace", "").strip()
        fence = _FENCE_RE.match(stack)
        if fence:
            stack = fence.group(1).strip()
        crumbs = [re.sub(r"^\d+\.\s*", "", line).strip() for line in sections.get("breadcrumbs", "").splitlines() if line.strip()]

        if not fields.get("error type"):
            errors.append("Missing error type")
        if not stack:
            errors.append("Missing stack trace")

        parsed = ParsedIssue(
            error_type=fields.get("error type") or "UnknownError",
            error_message=fields.get("message", ""),
            stack_trace=stack,
            breadcrumbs=crumbs,
            fingerprint=fields.get("fingerprint") or None,
            extension=fields.get("extension") or None,
        )
        return ParseResult(parsed=parsed, errors=errors)
