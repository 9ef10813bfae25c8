from __future__ import annotations

import hashlib
import re
from typing import Any, Dict

from fixgate.models import Fingerprint, RawError


def _sha256_text(s: str) -> str:
    h = hashlib.sha256()
    h.update((s or "").encode("utf-8", errors="replace"))
    return h.hexdigest()


# Order matters: hashes before uuids (a uuid without dashes is a 32-hex hash), dates/times
# before bare integers.
_VOLATILE_TOKENS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"[A-Fa-f0-9]{32}"), "HASH"),
    (re.compile(r"[A-Fa-f0-9-]{36}"), "UUID"),
    (re.compile(r"\d{4}-\d{2}-\d{2}"), "DATE"),
    (re.compile(r"\d{2}:\d{2}:\d{2}"), "TIME"),
    (re.compile(r"\b\d+\b"), "N"),
]

# JS/V8 frame: "at fn (path:line:col)"
_JS_FRAME_RE = re.compile(r"at [^\s]+ \(([^:]+):(\d+):(\d+)\)")
# Bare absolute location: "/abs/path.js:line:col"
_ABS_LOCATION_RE = re.compile(r"(/[\w./-]+):(\d+):(\d+)")
# Python frame: File "path", line N
_PY_FRAME_RE = re.compile(r'File\s+"(?P<file>[^"]+)",\s+line\s+\d+')


def normalize_message(message: str) -> str:
    """
    Replace volatile tokens (hashes, uuids, dates, times, integers) with fixed placeholders.
    """
    t = message or ""
    for pat, token in _VOLATILE_TOKENS:
        t = pat.sub(token, t)
    return t


def extract_file_path(stack: str) -> str:
    s = stack or ""
    m = _JS_FRAME_RE.search(s)
    if m:
        return m.group(1)
    m = _ABS_LOCATION_RE.search(s)
    if m:
        return m.group(1)
    m = _PY_FRAME_RE.search(s)
    if m:
        return m.group("file")
    return "unknown"


class FailureFingerprinter:
    @staticmethod
    def normalize(error: RawError | Dict[str, Any]) -> Fingerprint:
        if isinstance(error, dict):
            error = RawError(
                type=str(error.get("type") or "UnknownError"),
                message=str(error.get("message") or ""),
                stack=str(error.get("stack") or ""),
            )

        stack = error.stack or ""
        file_path = extract_file_path(stack)
        first_line = stack.split("\n")[0].strip() if stack else ""
        top_frame = first_line or "unknown"
        message_hash = _sha256_text(normalize_message(error.message))[:8]

        signature = f"{error.type}:{file_path}:{message_hash}"
        return Fingerprint(
            id=_sha256_text(signature)[:12],
            error_type=error.type,
            file_path=file_path,
            top_frame=top_frame,
            message_hash=message_hash,
            signature=signature,
        )
