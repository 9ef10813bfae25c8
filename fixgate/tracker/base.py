from __future__ import annotations

import re
from typing import List, Optional, Protocol

from fixgate.models import IssueComment, IssueRecord, PullRequestRef


class IssueTracker(Protocol):
    """
    Everything fixgate needs from an issue tracker.

    `write_labels` is the compare-and-swap primitive: it replaces the full label set only if
    `expected_version` still matches the issue's current version token, and raises
    `ConcurrencyConflict` otherwise.
    """

    def get_issue(self, number: int) -> Optional[IssueRecord]: ...

    def write_labels(self, number: int, labels: List[str], *, expected_version: Optional[str]) -> IssueRecord: ...

    def add_label(self, number: int, label: str) -> None: ...

    def remove_label(self, number: int, label: str) -> None: ...

    def add_comment(self, number: int, body: str) -> IssueComment: ...

    def list_comments(self, number: int) -> List[IssueComment]: ...

    def find_open_pr_referencing(self, number: int) -> Optional[PullRequestRef]: ...

    def find_open_pr_for_head(self, head: str) -> Optional[PullRequestRef]: ...

    def create_pr(self, *, title: str, body: str, base: str, head: str) -> PullRequestRef: ...

    def update_pr(self, pr_number: int, *, title: str, body: str) -> PullRequestRef: ...

    def create_label(self, name: str, *, color: str, description: str) -> None: ...


def references_issue(text: str | None, number: int) -> bool:
    """True when `text` mentions `#<number>` (and not e.g. `#<number>0`)."""
    return re.search(rf"#{int(number)}(?!\d)", text or "") is not None
