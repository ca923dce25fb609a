"""
Checkpointing and crash recovery.

A checkpoint is written when a run starts and after every batch. Saves are
serialized so two checkpoints of one run never interleave, and each save
prunes the session's history to the configured retention. A failed save
is logged and the run goes on; only durability is reduced until the next
successful save.

Recovery diffs the latest checkpoint against the agents the run requires:
agents that completed or failed are kept as they are and only the rest are
scheduled again.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime

from dde.exceptions import PersistenceError, RecoveryError, SchemaDriftError
from dde.logging import get_logger
from dde.persistence.session_store import SessionStore
from dde.types import AgentResult, Checkpoint, EarlyWarning, FailedAgent, Phase

logger = get_logger(__name__)


def build_checkpoint(
    session_id: str,
    state: Phase,
    required_agents: Iterable[str],
    results: Mapping[str, AgentResult],
    total_cost: float,
    cost_by_agent: Mapping[str, float],
    start_time: datetime,
    cost_by_phase: Mapping[str, float] | None = None,
    warnings: Iterable[EarlyWarning] = (),
) -> Checkpoint:
    """Snapshot run progress against the full set of required agents.

    Warnings are stored whole; dispute warnings cannot be re-derived
    from results.
    """
    completed = [name for name, r in results.items() if r.success]
    failed = [
        FailedAgent(agent=name, error=r.error or "unknown error")
        for name, r in results.items()
        if not r.success
    ]
    pending = [name for name in required_agents if name not in results]
    return Checkpoint.create(
        session_id=session_id,
        state=state,
        completed_agents=completed,
        pending_agents=pending,
        failed_agents=failed,
        results=dict(results),
        total_cost=total_cost,
        cost_by_agent=dict(cost_by_agent),
        start_time=start_time,
        cost_by_phase=dict(cost_by_phase or {}),
        warnings=tuple(warnings),
    )


@dataclass(frozen=True)
class RecoveryPlan:
    """What a resumed run keeps and what it still has to do."""

    checkpoint: Checkpoint
    completed: tuple[str, ...]
    failed: tuple[str, ...]
    pending: tuple[str, ...]

    @property
    def state(self) -> Phase:
        return self.checkpoint.state

    @property
    def results(self) -> dict[str, AgentResult]:
        return dict(self.checkpoint.results)

    @property
    def done(self) -> set[str]:
        return set(self.completed) | set(self.failed)


def plan_recovery(checkpoint: Checkpoint, required_agents: Iterable[str]) -> RecoveryPlan:
    """Compute pending = required - completed - failed.

    Raises:
        RecoveryError: If the checkpoint is in a state no run can resume from.
        SchemaDriftError: If the checkpoint names an agent that is no longer
            part of the required set.
    """
    required = list(dict.fromkeys(required_agents))
    if checkpoint.state.is_terminal:
        raise RecoveryError(
            "Checkpoint is in a terminal state",
            context={"session_id": checkpoint.session_id, "state": checkpoint.state.value},
        )

    completed = tuple(checkpoint.completed_agents)
    failed = tuple(f.agent for f in checkpoint.failed_agents)
    known = set(required)
    unknown = sorted({*completed, *failed, *checkpoint.results} - known)
    if unknown:
        raise SchemaDriftError(
            "Checkpoint references agents that are no longer declared",
            context={"session_id": checkpoint.session_id, "unknown_agents": unknown},
        )

    missing_results = [name for name in completed if name not in checkpoint.results]
    if missing_results:
        raise RecoveryError(
            "Checkpoint lists completed agents without results",
            context={"session_id": checkpoint.session_id, "agents": missing_results},
        )

    done = set(completed) | set(failed)
    pending = tuple(name for name in required if name not in done)
    return RecoveryPlan(
        checkpoint=checkpoint, completed=completed, failed=failed, pending=pending
    )


class CheckpointManager:
    """Serialized checkpoint writes with bounded retention."""

    def __init__(self, store: SessionStore, retention: int = 5) -> None:
        self.store = store
        self.retention = retention
        self._lock = asyncio.Lock()

    async def save(self, checkpoint: Checkpoint) -> bool:
        """Persist a checkpoint; returns False if it could not be written."""
        async with self._lock:
            try:
                await self.store.save_checkpoint(checkpoint)
                await self.store.prune_checkpoints(checkpoint.session_id, self.retention)
            except PersistenceError as e:
                logger.error(
                    "Checkpoint save failed",
                    session_id=checkpoint.session_id,
                    state=checkpoint.state.value,
                    error=str(e),
                )
                return False

        logger.debug(
            "Checkpoint saved",
            session_id=checkpoint.session_id,
            state=checkpoint.state.value,
            completed=len(checkpoint.completed_agents),
            pending=len(checkpoint.pending_agents),
        )
        return True

    async def load_latest(self, session_id: str) -> Checkpoint | None:
        return await self.store.load_latest_checkpoint(session_id)

    async def history(self, session_id: str) -> list[Checkpoint]:
        return await self.store.list_checkpoints(session_id)
