from __future__ import annotations

import json
import os
import sys
import traceback
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional


Redactor = Callable[[str], str]


def _identity(text: str) -> str:
    return text


class StructuredLogger:
    """
    JSONL event log. One object per line:

        {"ts", "level", "event_type", "message", "context": {...}, "data": {...}}

    - `context` carries the run correlation (`run_id`) plus whatever `child()`/`set_context()` bound
      (issue, tier, stage)
    - every string value in `data` and `context` goes through the redactor before it is written
    - `records` keeps the last lines in memory so callers (and tests) can inspect a run
    """

    def __init__(
        self,
        path: str | None = None,
        *,
        to_stderr: bool = False,
        redactor: Redactor | None = None,
        context: Optional[Dict[str, Any]] = None,
        keep: int = 1000,
    ) -> None:
        self.path = path
        self.to_stderr = to_stderr
        self._redact = redactor or _identity
        self._context: Dict[str, Any] = {"run_id": uuid.uuid4().hex}
        self._context.update(context or {})
        self._keep = keep
        self.records: List[Dict[str, Any]] = []
        if path:
            parent = os.path.dirname(path)
            if parent:
                os.makedirs(parent, exist_ok=True)

    @property
    def context(self) -> Dict[str, Any]:
        return dict(self._context)

    def set_context(self, **ctx: Any) -> None:
        self._context.update(ctx)

    def child(self, **ctx: Any) -> "StructuredLogger":
        c = StructuredLogger.__new__(StructuredLogger)
        c.path = self.path
        c.to_stderr = self.to_stderr
        c._redact = self._redact
        c._context = {**self._context, **ctx}
        c._keep = self._keep
        # Children share the parent's in-memory buffer.
        c.records = self.records
        return c

    def _scrub(self, value: Any) -> Any:
        if isinstance(value, str):
            return self._redact(value)
        if isinstance(value, dict):
            return {k: self._scrub(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self._scrub(v) for v in value]
        return value

    def write(self, level: str, event_type: str, message: str = "", data: Optional[Dict[str, Any]] = None) -> None:
        record = {
            "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": level,
            "event_type": event_type,
            "message": self._scrub(message),
            "context": self._scrub(self._context),
            "data": self._scrub(data or {}),
        }
        self.records.append(record)
        if len(self.records) > self._keep:
            del self.records[: len(self.records) - self._keep]

        line = json.dumps(record, ensure_ascii=False, default=str)
        if self.path:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
        if self.to_stderr:
            print(line, file=sys.stderr)

    def debug(self, event_type: str, message: str = "", **data: Any) -> None:
        self.write("debug", event_type, message, data)

    def info(self, event_type: str, message: str = "", **data: Any) -> None:
        self.write("info", event_type, message, data)

    def warn(self, event_type: str, message: str = "", **data: Any) -> None:
        self.write("warn", event_type, message, data)

    def error(self, event_type: str, message: str = "", exc: BaseException | None = None, **data: Any) -> None:
        if exc is not None:
            data = {
                **data,
                "error": {
                    "type": type(exc).__name__,
                    "message": str(exc),
                    "traceback": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))[-4000:],
                },
            }
        self.write("error", event_type, message, data)

    def events(self, event_type: str | None = None) -> List[Dict[str, Any]]:
        if event_type is None:
            return list(self.records)
        return [r for r in self.records if r["event_type"] == event_type]
