from __future__ import annotations

import threading
from typing import Dict, List

from fixgate.errors import BudgetExceeded
from fixgate.models import TokenUsage


PER_FIX_BUDGET = 0.01

# USD per token.
PRICING: Dict[str, Dict[str, float]] = {
    "deepseek": {"input": 0.00027 / 1000, "output": 0.0011 / 1000},
    "gpt5": {"input": 0.01 / 1000, "output": 0.03 / 1000},
}


def usage_cost(usage: TokenUsage) -> float:
    p = PRICING[usage.model]
    return usage.input_tokens * p["input"] + usage.output_tokens * p["output"]


class CostTracker:
    """
    Token accounting handed to tier executors.

    - a single usage above `per_fix_budget` is refused
    - with `ceiling` set, usage that would take the running total past it is refused
    - after `close()` every further usage is refused (an attempt past its deadline)
    """

    def __init__(self, per_fix_budget: float = PER_FIX_BUDGET, *, ceiling: float | None = None) -> None:
        self.per_fix_budget = float(per_fix_budget)
        self.ceiling = ceiling
        self._usage: List[TokenUsage] = []
        self._closed = False
        self._lock = threading.Lock()

    def track_usage(self, usage: TokenUsage) -> float:
        cost = usage_cost(usage)
        with self._lock:
            if self._closed:
                raise BudgetExceeded("Cost tracker closed; usage after the attempt deadline is refused")
            if cost > self.per_fix_budget:
                raise BudgetExceeded(f"Fix exceeded budget: ${cost:.4f} > ${self.per_fix_budget}")
            if self.ceiling is not None and self._total() + cost > self.ceiling:
                raise BudgetExceeded(f"Attempt would exceed its reserved ${self.ceiling}")
            self._usage.append(usage)
        return cost

    def close(self) -> float:
        """Refuse further usage and return the final total."""
        with self._lock:
            self._closed = True
            return self._total()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def usage(self) -> List[TokenUsage]:
        return list(self._usage)

    def _total(self) -> float:
        return sum(usage_cost(u) for u in self._usage)

    def total_cost(self) -> float:
        with self._lock:
            return self._total()

    def project_annual_cost(self, fixes_per_year: int = 1000) -> float:
        if not self._usage:
            return 0.0
        return self.total_cost() / len(self._usage) * fixes_per_year

    def export_metrics(self) -> Dict[str, object]:
        return {
            "total_fixes": len(self._usage),
            "total_cost": self.total_cost(),
            "projected_annual_cost": self.project_annual_cost(),
            "breakdown": {f"tier{t}": sum(usage_cost(u) for u in self._usage if u.tier == t) for t in (1, 2, 3)},
            "tier_distribution": {f"tier{t}": sum(1 for u in self._usage if u.tier == t) for t in (1, 2, 3)},
        }
