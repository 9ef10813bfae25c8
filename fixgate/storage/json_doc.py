from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass
from typing import Any, Protocol


class DocumentStore(Protocol):
    """
    Load/save contract for one mutable JSON document (budget ledger, rate-limit windows,
    attempt store, pattern library). Swap in a transactional backend by implementing this.
    """

    def load(self) -> Any | None: ...

    def save(self, data: Any) -> None: ...


@dataclass(frozen=True)
class JsonFileDocument:
    """
    A single JSON file on disk. `load()` returns None when the file does not exist yet.
    Writes go through a temp file + rename so a crashed writer never leaves half a document.
    """

    path: str

    def load(self) -> Any | None:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = f.read()
        except FileNotFoundError:
            return None
        if not raw.strip():
            return None
        return json.loads(raw)

    def save(self, data: Any) -> None:
        parent = os.path.dirname(self.path) or "."
        os.makedirs(parent, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".tmp_", suffix=".json", dir=parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
                f.write("\n")
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise


class InMemoryDocument:
    def __init__(self, data: Any | None = None) -> None:
        self.data = data
        self.saves = 0

    def load(self) -> Any | None:
        if self.data is None:
            return None
        return json.loads(json.dumps(self.data))

    def save(self, data: Any) -> None:
        self.data = json.loads(json.dumps(data))
        self.saves += 1
