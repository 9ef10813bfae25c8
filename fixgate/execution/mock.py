from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List

from fixgate.cost.tracker import CostTracker
from fixgate.models import ExecutionOutcome, ParsedIssue, TierRouting, TokenUsage
from fixgate.routing.model_selector import extract_files


# Typical token spend per tier, used to exercise the budget path without a model.
TOKEN_PROFILES: Dict[int, List[TokenUsage]] = {
    1: [TokenUsage(model="deepseek", input_tokens=800, output_tokens=300, tier=1)],
    2: [
        TokenUsage(model="deepseek", input_tokens=1500, output_tokens=300, tier=2),
        TokenUsage(model="gpt5", input_tokens=0, output_tokens=150, tier=2),
    ],
    3: [TokenUsage(model="gpt5", input_tokens=200, output_tokens=120, tier=3)],
}


@dataclass(frozen=True)
class MockTierExecutor:
    """Deterministic executor for mock mode: charges the tier's token profile and returns a stub patch."""

    issue_number: int = 0
    tests_pass: bool = True

    def __call__(self, issue: ParsedIssue, routing: TierRouting, cost_tracker: CostTracker) -> ExecutionOutcome:
        profile = [u.model_copy(update={"issue_number": self.issue_number}) for u in TOKEN_PROFILES.get(routing.tier, TOKEN_PROFILES[3])]
        before = cost_tracker.total_cost()
        for usage in profile:
            cost_tracker.track_usage(usage)
        files = extract_files(issue.stack_trace)
        target = files[0] if files else "src/index.js"
        return ExecutionOutcome(
            success=True,
            model=routing.model,
            patch=f"diff --git a/{target} b/{target}\n--- a/{target}\n+++ b/{target}\n+// mock patch",
            tokens=profile,
            cost=cost_tracker.total_cost() - before,
            tests_passed=self.tests_pass,
        )
