from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fixgate.models import Fingerprint, Pattern, PatternLibraryDoc, PatternMatch
from fixgate.patterns.library import read_library
from fixgate.storage.json_doc import DocumentStore


DEFAULT_THRESHOLD = 0.8
FUZZY_PENALTY = 0.9


def resolve_confidence(pattern: Pattern) -> float:
    """
    Explicit confidence wins over success rate; experience adds up to +0.2 (0.05 per use).
    A pattern with neither signal never matches.
    """
    explicit = pattern.confidence or 0.0
    success_rate = pattern.success_rate or 0.0
    if not explicit and not success_rate:
        return 0.0

    weighted = explicit if explicit else success_rate
    if not pattern.uses:
        return weighted
    return min(1.0, weighted + min(0.05 * pattern.uses, 0.2))


@dataclass(frozen=True)
class PatternMatcher:
    library: PatternLibraryDoc
    threshold: float = DEFAULT_THRESHOLD

    @classmethod
    def from_document(cls, document: DocumentStore, *, threshold: float = DEFAULT_THRESHOLD) -> "PatternMatcher":
        return cls(library=read_library(document), threshold=threshold)

    def match(self, fingerprint: Fingerprint) -> Optional[PatternMatch]:
        if not self.library.patterns:
            return None
        return self._exact(fingerprint) or self._fuzzy(fingerprint)

    def _exact(self, fingerprint: Fingerprint) -> Optional[PatternMatch]:
        candidate = next((p for p in self.library.patterns if p.fingerprint_id == fingerprint.id), None)
        if candidate is None:
            return None
        confidence = resolve_confidence(candidate)
        if confidence < self.threshold:
            return None
        return PatternMatch(pattern=candidate, strategy="exact", confidence=confidence)

    def _fuzzy(self, fingerprint: Fingerprint) -> Optional[PatternMatch]:
        scored = [
            (p, resolve_confidence(p) * FUZZY_PENALTY)
            for p in self.library.patterns
            if p.error_type == fingerprint.error_type and p.file_path == fingerprint.file_path
        ]
        scored = [(p, c) for p, c in scored if c >= self.threshold]
        if not scored:
            return None
        scored.sort(key=lambda pc: pc[1], reverse=True)
        best, confidence = scored[0]
        return PatternMatch(pattern=best, strategy="fuzzy", confidence=confidence)
