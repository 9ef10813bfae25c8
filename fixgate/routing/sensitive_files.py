from __future__ import annotations

import re
from typing import List


_SCRIPT_EXT = r"\.(?:js|ts|mjs|cjs)$"

# Files whose failures always go to the strongest tier and never through the cheap models.
SENSITIVE_PATTERNS: List[re.Pattern[str]] = [
    re.compile(r"^manifest\.json$", re.IGNORECASE),
    re.compile(r"(?:^|/)auth(?:-?helper)?" + _SCRIPT_EXT, re.IGNORECASE),
    re.compile(r"(?:^|/)api-keys?" + _SCRIPT_EXT, re.IGNORECASE),
    re.compile(r"(?:^|/)oauth" + _SCRIPT_EXT, re.IGNORECASE),
    re.compile(r"(?:^|/)encryption" + _SCRIPT_EXT, re.IGNORECASE),
    re.compile(r"(?:^|/)payment" + _SCRIPT_EXT, re.IGNORECASE),
    re.compile(r"(?:^|/)stripe" + _SCRIPT_EXT, re.IGNORECASE),
    re.compile(r"(?:^|/)user-data" + _SCRIPT_EXT, re.IGNORECASE),
    re.compile(r"^config/secrets/", re.IGNORECASE),
    re.compile(r"^shared/security/", re.IGNORECASE),
    re.compile(r"(?:^|/)token-store" + _SCRIPT_EXT, re.IGNORECASE),
    re.compile(r"(?:^|/)\.env(?:\.[^/]+)?$", re.IGNORECASE),
    re.compile(r"(?:^|/)\.npmrc$", re.IGNORECASE),
    re.compile(r"(?:^|/)\.aws/credentials$", re.IGNORECASE),
    re.compile(r"(?:^|/)terraform/.*\.tf$", re.IGNORECASE),
    re.compile(r"(?:^|/)k8s/.*secrets?.*\.ya?ml$", re.IGNORECASE),
]


def normalize_path(path: str) -> str:
    p = (path or "").replace("\\", "/")
    if p.startswith("./"):
        p = p[2:]
    return p.lstrip("/")


def is_sensitive_file(path: str) -> bool:
    p = normalize_path(path)
    return any(pat.search(p) for pat in SENSITIVE_PATTERNS)
