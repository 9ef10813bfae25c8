from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from fixgate.errors import ConcurrencyConflict, NotFoundError, TrackerError
from fixgate.models import IssueComment, IssueRecord, PullRequestRef
from fixgate.tracker.base import references_issue


def _label_names(raw: Any) -> List[str]:
    out: List[str] = []
    for label in raw or []:
        if isinstance(label, str):
            out.append(label)
        elif isinstance(label, dict) and label.get("name"):
            out.append(str(label["name"]))
    return out


def _parse_ts(raw: Any) -> datetime:
    if not raw:
        return datetime.now(timezone.utc)
    return datetime.fromisoformat(str(raw).replace("Z", "+00:00"))


def _pr_ref(data: Dict[str, Any]) -> PullRequestRef:
    return PullRequestRef(
        number=int(data["number"]),
        title=str(data.get("title") or ""),
        body=str(data.get("body") or ""),
        url=data.get("html_url"),
        head=(data.get("head") or {}).get("ref") if isinstance(data.get("head"), dict) else None,
        state=str(data.get("state") or "open"),
    )


@dataclass(frozen=True)
class GitHubIssueTracker:
    """
    GitHub REST implementation of the issue-tracker contract.

    - issue labels are the circuit-breaker state; the issue ETag is the version token
    - label writes send `If-Match: <etag>`; GitHub answers 412 when another writer got there first
    - mockable in tests through an httpx transport override
    """

    token: str
    repo: str  # owner/name
    api_base: str = "https://api.github.com"
    timeout_s: float = 15.0
    transport: httpx.BaseTransport | None = None

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        h = {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/vnd.github+json",
        }
        if extra:
            h.update(extra)
        return h

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self.timeout_s, transport=self.transport)

    def _url(self, path: str) -> str:
        return f"{self.api_base.rstrip('/')}/repos/{self.repo}{path}"

    @staticmethod
    def _raise_for(r: httpx.Response, what: str) -> None:
        if r.status_code < 400:
            return
        if r.status_code == 404:
            raise NotFoundError(f"{what}: not found")
        if r.status_code == 412:
            raise ConcurrencyConflict(f"{what}: precondition failed (ETag mismatch)")
        raise TrackerError(f"{what}: github_http_{r.status_code}: {r.text[:500]}", status=r.status_code)

    def get_issue(self, number: int) -> Optional[IssueRecord]:
        with self._client() as c:
            r = c.get(self._url(f"/issues/{int(number)}"), headers=self._headers())
            if r.status_code == 404:
                return None
            self._raise_for(r, f"get issue #{number}")
            data = r.json()
        return IssueRecord(
            number=int(data["number"]),
            title=str(data.get("title") or ""),
            body=str(data.get("body") or ""),
            labels=_label_names(data.get("labels")),
            version=r.headers.get("etag"),
        )

    def write_labels(self, number: int, labels: List[str], *, expected_version: Optional[str]) -> IssueRecord:
        extra = {"If-Match": expected_version} if expected_version else None
        with self._client() as c:
            r = c.patch(
                self._url(f"/issues/{int(number)}"),
                headers=self._headers(extra),
                json={"labels": list(labels)},
            )
            self._raise_for(r, f"update labels on #{number}")
            data = r.json()
        return IssueRecord(
            number=int(data.get("number", number)),
            title=str(data.get("title") or ""),
            body=str(data.get("body") or ""),
            labels=_label_names(data.get("labels")),
            version=r.headers.get("etag"),
        )

    def add_label(self, number: int, label: str) -> None:
        with self._client() as c:
            r = c.post(self._url(f"/issues/{int(number)}/labels"), headers=self._headers(), json={"labels": [label]})
            self._raise_for(r, f"add label {label} to #{number}")

    def remove_label(self, number: int, label: str) -> None:
        with self._client() as c:
            r = c.delete(self._url(f"/issues/{int(number)}/labels/{quote(label, safe='')}"), headers=self._headers())
            self._raise_for(r, f"remove label {label} from #{number}")

    def add_comment(self, number: int, body: str) -> IssueComment:
        with self._client() as c:
            r = c.post(self._url(f"/issues/{int(number)}/comments"), headers=self._headers(), json={"body": body})
            self._raise_for(r, f"comment on #{number}")
            data = r.json()
        return IssueComment(
            id=int(data.get("id") or 0),
            body=str(data.get("body") or body),
            created_at=_parse_ts(data.get("created_at")),
        )

    def list_comments(self, number: int) -> List[IssueComment]:
        with self._client() as c:
            r = c.get(
                self._url(f"/issues/{int(number)}/comments"),
                headers=self._headers(),
                params={"per_page": 100},
            )
            self._raise_for(r, f"list comments on #{number}")
            data = r.json()
        return [
            IssueComment(id=int(d.get("id") or 0), body=str(d.get("body") or ""), created_at=_parse_ts(d["created_at"]))
            for d in data
            if isinstance(d, dict) and d.get("created_at")
        ]

    def _open_prs(self) -> List[Dict[str, Any]]:
        with self._client() as c:
            r = c.get(self._url("/pulls"), headers=self._headers(), params={"state": "open", "per_page": 100})
            self._raise_for(r, "list open pull requests")
            data = r.json()
        return [d for d in data if isinstance(d, dict)]

    def find_open_pr_referencing(self, number: int) -> Optional[PullRequestRef]:
        for pr in self._open_prs():
            if references_issue(pr.get("body"), number):
                return _pr_ref(pr)
        return None

    def find_open_pr_for_head(self, head: str) -> Optional[PullRequestRef]:
        for pr in self._open_prs():
            h = pr.get("head")
            if isinstance(h, dict) and h.get("ref") == head:
                return _pr_ref(pr)
        return None

    def create_pr(self, *, title: str, body: str, base: str, head: str) -> PullRequestRef:
        payload = {"title": title, "body": body, "head": head, "base": base}
        with self._client() as c:
            r = c.post(self._url("/pulls"), headers=self._headers(), json=payload)
            self._raise_for(r, "create pull request")
            data = r.json()
        ref = _pr_ref(data)
        return ref if ref.head else ref.model_copy(update={"head": head})

    def update_pr(self, pr_number: int, *, title: str, body: str) -> PullRequestRef:
        with self._client() as c:
            r = c.patch(self._url(f"/pulls/{int(pr_number)}"), headers=self._headers(), json={"title": title, "body": body})
            self._raise_for(r, f"update pull request #{pr_number}")
            data = r.json()
        return _pr_ref(data)

    def create_label(self, name: str, *, color: str, description: str) -> None:
        payload = {"name": name, "color": color, "description": description}
        with self._client() as c:
            r = c.post(self._url("/labels"), headers=self._headers(), json=payload)
            # 422 if the label exists; treat as idempotent.
            if r.status_code == 422:
                return
            self._raise_for(r, f"create label {name}")
