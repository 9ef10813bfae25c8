from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fixgate.models import Fingerprint, Pattern
from fixgate.patterns.library import read_library, write_library
from fixgate.storage.json_doc import DocumentStore


@dataclass(frozen=True)
class PatternExtractor:
    """
    Turns a successful, freshly generated fix into a reusable pattern.
    Only active in learning mode so dev/test runs never pollute the shared library.
    """

    document: DocumentStore
    learning_enabled: bool = False

    def extract(
        self,
        fingerprint: Fingerprint,
        patch: str,
        description: str | None = None,
        metadata: Dict[str, Any] | None = None,
    ) -> Optional[Pattern]:
        if not self.learning_enabled:
            return None

        library = read_library(self.document, create=True)
        existing = next((p for p in library.patterns if p.fingerprint_id == fingerprint.id), None)
        if existing is not None:
            return existing

        pattern = Pattern(
            id=str(uuid.uuid4()),
            fingerprint_id=fingerprint.id,
            error_type=fingerprint.error_type,
            file_path=fingerprint.file_path,
            patch=patch,
            description=description,
            confidence=0.9,
            success_rate=1.0,
            uses=0,
        )
        library.patterns.append(pattern)
        write_library(self.document, library, **(metadata or {}))
        return pattern
