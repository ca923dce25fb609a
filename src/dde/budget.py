"""
Budget tracking for analysis runs.

Agents report their own cost on each result; the tracker accumulates it
per agent and per phase and answers whether the run's ceiling is reached.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from dde.logging import get_logger

logger = get_logger(__name__)


@dataclass
class CostRecord:
    """Cost reported by one agent execution."""

    agent: str
    phase: str
    cost_usd: float


@dataclass
class BudgetTracker:
    """Tracks accumulated cost across a run.

    A budget_limit of None means the run is unbounded.
    """

    budget_limit: float | None = None

    total_cost_usd: float = 0.0
    by_agent: dict[str, float] = field(default_factory=dict)
    by_phase: dict[str, float] = field(default_factory=dict)
    records: list[CostRecord] = field(default_factory=list)

    def record_cost(self, agent: str, phase: str, cost_usd: float) -> float:
        """Record the cost of one agent execution.

        Returns:
            The new running total in USD.
        """
        if cost_usd < 0:
            logger.warning("Ignoring negative cost", agent=agent, cost=cost_usd)
            cost_usd = 0.0

        self.total_cost_usd += cost_usd
        self.by_agent[agent] = self.by_agent.get(agent, 0.0) + cost_usd
        self.by_phase[phase] = self.by_phase.get(phase, 0.0) + cost_usd
        self.records.append(CostRecord(agent=agent, phase=phase, cost_usd=cost_usd))

        logger.debug(
            "Recorded cost",
            agent=agent,
            cost=f"${cost_usd:.4f}",
            total=f"${self.total_cost_usd:.4f}",
        )
        return self.total_cost_usd

    def get_remaining(self) -> float | None:
        if self.budget_limit is None:
            return None
        return self.budget_limit - self.total_cost_usd

    def is_exceeded(self) -> bool:
        """True once accumulated cost has reached the ceiling."""
        return self.budget_limit is not None and self.total_cost_usd >= self.budget_limit

    def get_breakdown(self) -> dict[str, Any]:
        return {
            "total_cost_usd": self.total_cost_usd,
            "budget_limit": self.budget_limit,
            "remaining": self.get_remaining(),
            "by_agent": dict(self.by_agent),
            "by_phase": dict(self.by_phase),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.get_breakdown(),
            "exceeded": self.is_exceeded(),
            "records": [
                {"agent": r.agent, "phase": r.phase, "cost_usd": r.cost_usd}
                for r in self.records
            ],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BudgetTracker:
        tracker = cls(budget_limit=data.get("budget_limit"))
        tracker.total_cost_usd = data.get("total_cost_usd", 0.0)
        tracker.by_agent = dict(data.get("by_agent", {}))
        tracker.by_phase = dict(data.get("by_phase", {}))
        for r in data.get("records", []):
            tracker.records.append(
                CostRecord(agent=r["agent"], phase=r["phase"], cost_usd=r["cost_usd"])
            )
        return tracker

    @classmethod
    def restore(
        cls,
        budget_limit: float | None,
        total_cost_usd: float,
        by_agent: dict[str, float],
        by_phase: dict[str, float] | None = None,
    ) -> BudgetTracker:
        """Rebuild a tracker from checkpointed totals.

        Individual cost records are not checkpointed; only the aggregates
        are restored.
        """
        tracker = cls(budget_limit=budget_limit)
        tracker.total_cost_usd = total_cost_usd
        tracker.by_agent = dict(by_agent)
        tracker.by_phase = dict(by_phase or {})
        return tracker
