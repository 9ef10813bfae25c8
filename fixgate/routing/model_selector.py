from __future__ import annotations

import re
from typing import List, Optional

from fixgate.models import TierRouting
from fixgate.routing.sensitive_files import is_sensitive_file


CHEAP_MODEL = "deepseek-v3.2-exp"
STRONG_MODEL = "gpt-5"

_FRAME_RE = re.compile(r"(?:at\s+[^()]*\()?([^\s():]+):\d+:\d+")
_PATH_ANCHORS = ("manifest.json", "background/", "shared/", "config/", "fixgate/", "src/", "content/", "scripts/")


def tier_routing(tier: int) -> TierRouting:
    if tier == 1:
        return TierRouting(tier=1, model=CHEAP_MODEL, attempts=2)
    if tier == 2:
        return TierRouting(tier=2, model=CHEAP_MODEL, reviewer=STRONG_MODEL, attempts=2)
    return TierRouting(tier=3, model=STRONG_MODEL, attempts=1)


def _clean(path: str) -> str:
    p = path.strip().strip("()'\"").replace("\\", "/")
    p = re.sub(r"^[A-Za-z]:/", "", p)
    if p.startswith("./"):
        p = p[2:]
    p = p.lstrip("/")
    for anchor in _PATH_ANCHORS:
        idx = p.find(anchor)
        if idx >= 0:
            return p[idx:]
    return p


def extract_files(stack: str) -> List[str]:
    """Repo-relative files named in a JS-style stack trace, first-seen order, de-duplicated."""
    out: List[str] = []
    for line in (stack or "").split("\n"):
        m = _FRAME_RE.search(line)
        if not m:
            continue
        f = _clean(m.group(1))
        if f and f not in out:
            out.append(f)
    return out


def select_model(stack: str, force_tier: Optional[int] = None) -> TierRouting:
    """
    Route by stack complexity:
    - shallow (<= 5 lines), single file -> tier 1
    - < 15 lines, <= 3 files -> tier 2 (cheap model + strong reviewer)
    - anything else, empty stacks and sensitive files -> tier 3
    """
    if force_tier is not None:
        return tier_routing(int(force_tier))

    files = extract_files(stack)
    if not (stack or "").strip() or not files:
        return tier_routing(3)
    if any(is_sensitive_file(f) for f in files):
        return tier_routing(3)

    depth = len(stack.split("\n"))
    if depth <= 5 and len(files) == 1:
        return tier_routing(1)
    if depth < 15 and len(files) <= 3:
        return tier_routing(2)
    return tier_routing(3)
