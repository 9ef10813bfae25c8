from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict

from fixgate.models import PatternLibraryDoc
from fixgate.storage.json_doc import DocumentStore


def read_library(document: DocumentStore, *, create: bool = False) -> PatternLibraryDoc:
    """
    Load the pattern library document. A missing document is an empty library; with
    `create=True` the empty library is written out so later readers find a valid file.
    """
    raw = document.load()
    if raw is None:
        empty = PatternLibraryDoc()
        if create:
            write_library(document, empty)
        return empty
    return PatternLibraryDoc.model_validate(raw)


def write_library(document: DocumentStore, library: PatternLibraryDoc, **extra_metadata: Any) -> None:
    meta: Dict[str, Any] = dict(library.metadata or {})
    meta.update(extra_metadata)
    meta["last_updated"] = datetime.now(timezone.utc).isoformat()
    meta["total_patterns"] = len(library.patterns)
    library.metadata = meta
    document.save(library.model_dump(mode="json", exclude_none=True))
