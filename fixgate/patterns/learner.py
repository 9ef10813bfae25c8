from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fixgate.models import Pattern
from fixgate.patterns.library import read_library, write_library
from fixgate.storage.json_doc import DocumentStore


DEFAULT_ALPHA = 0.1
RETIRE_MIN_USES = 10
RETIRE_BELOW_SUCCESS = 0.5


def updated_success_rate(previous: float, uses: int, success: bool, *, alpha: float = DEFAULT_ALPHA) -> float:
    outcome = 1.0 if success else 0.0
    if uses:
        return (1 - alpha) * previous + alpha * outcome
    return outcome or previous


@dataclass(frozen=True)
class PatternLearner:
    document: DocumentStore
    learning_enabled: bool = False
    alpha: float = DEFAULT_ALPHA

    def learn(self, pattern_id: str, success: bool) -> Optional[Pattern]:
        """
        Fold one outcome into the pattern's success rate (EMA). Returns the updated pattern,
        or None when learning is off, the pattern is unknown, or it was just retired.
        """
        if not self.learning_enabled:
            return None

        library = read_library(self.document, create=True)
        pattern = next((p for p in library.patterns if p.id == pattern_id), None)
        if pattern is None:
            return None

        previous = pattern.success_rate if pattern.success_rate is not None else 0.5
        rate = updated_success_rate(previous, pattern.uses, success, alpha=self.alpha)
        pattern.success_rate = round(rate, 4)
        pattern.uses += 1

        retired = pattern.uses >= RETIRE_MIN_USES and pattern.success_rate < RETIRE_BELOW_SUCCESS
        if retired:
            library.patterns = [p for p in library.patterns if p.id != pattern.id]

        write_library(self.document, library)
        return None if retired else pattern
