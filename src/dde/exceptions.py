"""
Custom exception hierarchy for the diligence engine.

All exceptions inherit from DDEError, which carries optional structured
context for logging. Agent failures are not exceptions: they are captured
as failed AgentResult values inside a batch and never cross it.

Errors marked fatal indicate a programming or schema defect and abort the
run instead of being folded into a partial result.
"""

from __future__ import annotations

from typing import Any


class DDEError(Exception):
    """Base exception for all engine errors.

    Attributes:
        message: Human-readable error message.
        context: Optional structured context for logging/debugging.
    """

    fatal: bool = False

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({ctx_str})"
        return self.message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, context={self.context!r})"


class ConfigurationError(DDEError):
    """Raised when configuration or registry setup is invalid.

    Examples:
        - Two agents registered under the same name
        - A negative cost budget
    """

    pass


class PersistenceError(DDEError):
    """Raised when a durable write or read fails.

    Context should include:
        - operation: What was being persisted (append, checkpoint, ...)
        - path: The database path
    """

    pass


class FactStoreError(DDEError):
    """Raised when a fact submission is malformed.

    Context should include:
        - fact_key: The offending key
        - subject_id: The subject the fact belongs to
    """

    pass


class SchedulerError(DDEError):
    """Raised when a batch plan cannot be executed."""

    pass


class DuplicateResultError(SchedulerError):
    """Raised when a second result is written for the same agent in one run."""

    fatal = True


class InvalidTransitionError(DDEError):
    """Raised when a phase transition is not in the transition table.

    Context should include:
        - from_state: Current phase
        - to_state: Requested phase
    """

    fatal = True


class RecoveryError(DDEError):
    """Raised when an interrupted session cannot be resumed.

    Context should include:
        - session_id: The session being resumed
        - reason: Why recovery is impossible
    """

    pass


class SchemaDriftError(RecoveryError):
    """Raised when a checkpoint names agents the current registry does not know.

    Context should include:
        - session_id: The session being resumed
        - unknown_agents: Agent names absent from the declared set
    """

    fatal = True
