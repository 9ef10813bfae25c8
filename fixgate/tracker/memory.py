from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from fixgate.errors import ConcurrencyConflict, NotFoundError
from fixgate.models import IssueComment, IssueRecord, PullRequestRef
from fixgate.tracker.base import references_issue


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryIssueTracker:
    """
    In-process tracker used in mock mode and tests. It honours the same conditional-write
    contract as the GitHub tracker: every mutation bumps an integer version token and
    `write_labels` with a stale token raises `ConcurrencyConflict`.

    If `pr_dir` is set, created PRs are also written to `<pr_dir>/<n>.json` for inspection.
    """

    def __init__(self, *, now: Callable[[], datetime] = _utcnow, pr_dir: str | None = None) -> None:
        self._now = now
        self._pr_dir = pr_dir
        self._issues: Dict[int, IssueRecord] = {}
        self._versions: Dict[int, int] = {}
        self._comments: Dict[int, List[IssueComment]] = {}
        self._prs: List[PullRequestRef] = []
        self._labels: Dict[str, str] = {}
        self._next_comment_id = 1

    # -------- test/mock setup helpers --------

    def add_issue(self, number: int, *, title: str = "", body: str = "", labels: Optional[List[str]] = None) -> IssueRecord:
        issue = IssueRecord(number=number, title=title, body=body, labels=list(labels or []))
        self._issues[number] = issue
        self._versions[number] = 1
        self._comments.setdefault(number, [])
        return self.get_issue(number)  # type: ignore[return-value]

    def add_existing_comment(self, number: int, body: str, *, created_at: datetime) -> IssueComment:
        c = IssueComment(id=self._next_comment_id, body=body, created_at=created_at)
        self._next_comment_id += 1
        self._comments.setdefault(number, []).append(c)
        self._bump(number)
        return c

    def labels(self, number: int) -> List[str]:
        issue = self._issues.get(number)
        return list(issue.labels) if issue else []

    def comments(self, number: int) -> List[str]:
        return [c.body for c in self._comments.get(number, [])]

    def prs(self) -> List[PullRequestRef]:
        return list(self._prs)

    def repo_labels(self) -> Dict[str, str]:
        return dict(self._labels)

    # -------- contract --------

    def _bump(self, number: int) -> None:
        self._versions[number] = self._versions.get(number, 0) + 1

    def _require(self, number: int) -> IssueRecord:
        issue = self._issues.get(number)
        if issue is None:
            raise NotFoundError(f"issue #{number} not found")
        return issue

    def get_issue(self, number: int) -> Optional[IssueRecord]:
        issue = self._issues.get(number)
        if issue is None:
            return None
        return issue.model_copy(update={"labels": list(issue.labels), "version": str(self._versions[number])})

    def write_labels(self, number: int, labels: List[str], *, expected_version: Optional[str]) -> IssueRecord:
        issue = self._require(number)
        if expected_version is not None and expected_version != str(self._versions[number]):
            raise ConcurrencyConflict(f"issue #{number}: version {expected_version} is stale")
        issue.labels = list(dict.fromkeys(labels))
        self._bump(number)
        return self.get_issue(number)  # type: ignore[return-value]

    def add_label(self, number: int, label: str) -> None:
        issue = self._require(number)
        if label not in issue.labels:
            issue.labels.append(label)
            self._bump(number)

    def remove_label(self, number: int, label: str) -> None:
        issue = self._require(number)
        if label not in issue.labels:
            raise NotFoundError(f"label {label} not on issue #{number}")
        issue.labels.remove(label)
        self._bump(number)

    def add_comment(self, number: int, body: str) -> IssueComment:
        self._require(number)
        return self.add_existing_comment(number, body, created_at=self._now())

    def list_comments(self, number: int) -> List[IssueComment]:
        return list(self._comments.get(number, []))

    def find_open_pr_referencing(self, number: int) -> Optional[PullRequestRef]:
        for pr in self._prs:
            if pr.state == "open" and references_issue(pr.body, number):
                return pr
        return None

    def find_open_pr_for_head(self, head: str) -> Optional[PullRequestRef]:
        for pr in self._prs:
            if pr.state == "open" and pr.head == head:
                return pr
        return None

    def create_pr(self, *, title: str, body: str, base: str, head: str) -> PullRequestRef:
        pr = PullRequestRef(number=len(self._prs) + 1, title=title, body=body, head=head, state="open")
        pr.url = f"mock://pulls/{pr.number}"
        self._prs.append(pr)
        if self._pr_dir:
            os.makedirs(self._pr_dir, exist_ok=True)
            meta = {"number": pr.number, "title": title, "body": body, "base": base, "head": head}
            with open(os.path.join(self._pr_dir, f"{pr.number}.json"), "w", encoding="utf-8") as f:
                json.dump(meta, f, indent=2)
        return pr

    def update_pr(self, pr_number: int, *, title: str, body: str) -> PullRequestRef:
        for pr in self._prs:
            if pr.number == pr_number:
                pr.title = title
                pr.body = body
                return pr
        raise NotFoundError(f"pull request #{pr_number} not found")

    def set_pr_state(self, pr_number: int, state: str) -> None:
        for pr in self._prs:
            if pr.number == pr_number:
                pr.state = state

    def create_label(self, name: str, *, color: str, description: str) -> None:
        self._labels.setdefault(name, color)
