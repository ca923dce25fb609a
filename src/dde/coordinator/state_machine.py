"""
Phase state machine for one analysis run.

Legal transitions:

    INIT -> EXTRACTION -> GATHERING -> ANALYSIS -> DEBATE -> SYNTHESIS -> COMPLETED
                                                \\-------------/
    ANALYSIS may go straight to SYNTHESIS (debate skipped). Any work phase
    may go to COMPLETED (early termination) and any non-terminal state may
    go to FAILED.

Each transition is validated, applied, persisted as a transition record
and then broadcast to observers. A persistence failure is logged and the
run continues. Asking a terminal machine to complete or fail again is a
no-op.
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable
from typing import Any

from dde.exceptions import InvalidTransitionError, PersistenceError, RecoveryError
from dde.logging import get_logger
from dde.types import AnalysisMode, Phase, StateTransition, utc_now

logger = get_logger(__name__)

TRANSITIONS: dict[Phase, frozenset[Phase]] = {
    Phase.INIT: frozenset({Phase.EXTRACTION, Phase.FAILED}),
    Phase.EXTRACTION: frozenset({Phase.GATHERING, Phase.COMPLETED, Phase.FAILED}),
    Phase.GATHERING: frozenset({Phase.ANALYSIS, Phase.COMPLETED, Phase.FAILED}),
    Phase.ANALYSIS: frozenset(
        {Phase.DEBATE, Phase.SYNTHESIS, Phase.COMPLETED, Phase.FAILED}
    ),
    Phase.DEBATE: frozenset({Phase.SYNTHESIS, Phase.COMPLETED, Phase.FAILED}),
    Phase.SYNTHESIS: frozenset({Phase.COMPLETED, Phase.FAILED}),
    Phase.COMPLETED: frozenset(),
    Phase.FAILED: frozenset(),
}

Observer = Callable[[StateTransition], Awaitable[None] | None]
TransitionSink = Callable[[str, StateTransition], Awaitable[None]]


def should_debate(findings_count: int, mode: AnalysisMode) -> bool:
    """Debate only runs in full mode and only with more than one finding."""
    return mode is AnalysisMode.FULL and findings_count > 1


class PhaseStateMachine:
    """Tracks and enforces the phase of one session."""

    def __init__(
        self,
        session_id: str,
        persist: TransitionSink | None = None,
        state: Phase = Phase.INIT,
    ) -> None:
        self.session_id = session_id
        self._state = state
        self._persist = persist
        self._observers: list[Observer] = []
        self._transitions: list[StateTransition] = []

    @property
    def state(self) -> Phase:
        return self._state

    @property
    def is_terminal(self) -> bool:
        return self._state.is_terminal

    @property
    def transitions(self) -> list[StateTransition]:
        return list(self._transitions)

    def can_transition(self, to_state: Phase) -> bool:
        return to_state in TRANSITIONS[self._state]

    def add_observer(self, observer: Observer) -> Callable[[], None]:
        """Register an observer; returns a function that unregisters it."""
        self._observers.append(observer)

        def remove() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return remove

    async def transition(
        self,
        to_state: Phase,
        trigger: str,
        metadata: dict[str, Any] | None = None,
    ) -> StateTransition | None:
        """Move to ``to_state``.

        Returns:
            The transition record, or None for an ignored terminal repeat.

        Raises:
            InvalidTransitionError: If the table does not allow the move.
        """
        if self._state.is_terminal and to_state.is_terminal:
            logger.debug(
                "Ignoring transition from terminal state",
                state=self._state.value,
                requested=to_state.value,
            )
            return None

        if not self.can_transition(to_state):
            raise InvalidTransitionError(
                "Invalid phase transition",
                context={
                    "session_id": self.session_id,
                    "from_state": self._state.value,
                    "to_state": to_state.value,
                    "trigger": trigger,
                },
            )

        record = StateTransition(
            from_state=self._state,
            to_state=to_state,
            trigger=trigger,
            timestamp=utc_now(),
            metadata=dict(metadata or {}),
        )
        self._state = to_state
        self._transitions.append(record)

        logger.info(
            "Phase transition",
            from_state=record.from_state.value,
            to_state=record.to_state.value,
            trigger=trigger,
        )

        if self._persist is not None:
            try:
                await self._persist(self.session_id, record)
            except PersistenceError as e:
                logger.error("Failed to persist phase transition", error=str(e))

        await self._notify(record)
        return record

    async def _notify(self, record: StateTransition) -> None:
        for observer in list(self._observers):
            try:
                maybe = observer(record)
                if inspect.isawaitable(maybe):
                    await maybe
            except Exception:
                logger.exception("State observer failed", to_state=record.to_state.value)

    async def start_extraction(self) -> StateTransition | None:
        return await self.transition(Phase.EXTRACTION, "start_extraction")

    async def start_gathering(self) -> StateTransition | None:
        return await self.transition(Phase.GATHERING, "start_gathering")

    async def start_analysis(self) -> StateTransition | None:
        return await self.transition(Phase.ANALYSIS, "start_analysis")

    async def start_debate(self) -> StateTransition | None:
        return await self.transition(Phase.DEBATE, "start_debate")

    async def start_synthesis(self, debate_skipped: bool = False) -> StateTransition | None:
        trigger = "skip_debate" if debate_skipped else "start_synthesis"
        return await self.transition(Phase.SYNTHESIS, trigger)

    async def enter(self, phase: Phase) -> StateTransition | None:
        """Enter a work phase through its named transition."""
        starters = {
            Phase.EXTRACTION: self.start_extraction,
            Phase.GATHERING: self.start_gathering,
            Phase.ANALYSIS: self.start_analysis,
            Phase.DEBATE: self.start_debate,
            Phase.SYNTHESIS: self.start_synthesis,
        }
        if phase not in starters:
            raise InvalidTransitionError(
                "Not a work phase", context={"to_state": phase.value}
            )
        return await starters[phase]()

    async def complete(
        self,
        trigger: str = "completed",
        metadata: dict[str, Any] | None = None,
    ) -> StateTransition | None:
        return await self.transition(Phase.COMPLETED, trigger, metadata)

    async def fail(self, error: BaseException | str) -> StateTransition | None:
        message = str(error)
        metadata: dict[str, Any] = {"error": message}
        if isinstance(error, BaseException):
            metadata["error_type"] = type(error).__name__
        return await self.transition(Phase.FAILED, "failed", metadata)

    def restore(self, state: Phase) -> None:
        """Resume from a checkpointed phase without recording a transition."""
        if not isinstance(state, Phase) or state.is_terminal:
            raise RecoveryError(
                "Cannot resume from this phase",
                context={"session_id": self.session_id, "state": str(state)},
            )
        self._state = state
        logger.info("State machine restored", state=state.value)

    def summary(self) -> dict[str, Any]:
        path = [Phase.INIT.value] if not self._transitions else [
            self._transitions[0].from_state.value
        ]
        path.extend(t.to_state.value for t in self._transitions)
        duration = None
        if len(self._transitions) >= 2:
            duration = (
                self._transitions[-1].timestamp - self._transitions[0].timestamp
            ).total_seconds()
        return {
            "session_id": self.session_id,
            "state": self._state.value,
            "transitions": len(self._transitions),
            "path": path,
            "duration_seconds": duration,
        }
