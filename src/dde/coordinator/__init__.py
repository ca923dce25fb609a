"""
Coordinator package.

This package implements the analysis orchestration:
- Dependency-aware batch scheduling
- Phase state machine
- Early warnings and run circuit
- Checkpointing and crash recovery
- Analysis orchestrator
"""

from dde.coordinator.orchestrator import (
    AnalysisOrchestrator,
    AnalysisResult,
    RunContext,
    RunOptions,
)
from dde.coordinator.scheduler import BatchScheduler, plan_batches
from dde.coordinator.state_machine import PhaseStateMachine

__all__ = [
    "AnalysisOrchestrator",
    "AnalysisResult",
    "BatchScheduler",
    "PhaseStateMachine",
    "RunContext",
    "RunOptions",
    "plan_batches",
]
