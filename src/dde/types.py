"""
Core types for the diligence engine.

This module defines the data structures shared across the engine:
- Enums for phases, modes, fact sources and warning classifications
- Frozen dataclasses for immutable records (FactEvent, AgentResult, Checkpoint)
- Mutable dataclasses for state tracking (AnalysisSession)
- Helper functions for ID generation and timestamps
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import orjson
from uuid6 import uuid7


def generate_id(prefix: str = "") -> str:
    """Generate a time-ordered unique ID using UUID7.

    Args:
        prefix: Optional prefix for the ID (e.g., "ses", "fev", "ckpt")

    Returns:
        A unique ID string, optionally prefixed.
    """
    uid = str(uuid7())
    return f"{prefix}_{uid}" if prefix else uid


def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


# ---------------------------------------------------------------------------
# Orchestration enums
# ---------------------------------------------------------------------------


class Phase(str, Enum):
    """Lifecycle states of one analysis run."""

    INIT = "init"
    EXTRACTION = "extraction"
    GATHERING = "gathering"
    ANALYSIS = "analysis"
    DEBATE = "debate"
    SYNTHESIS = "synthesis"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (Phase.COMPLETED, Phase.FAILED)


# Phases that schedule agents, in execution order.
WORK_PHASES: tuple[Phase, ...] = (
    Phase.EXTRACTION,
    Phase.GATHERING,
    Phase.ANALYSIS,
    Phase.DEBATE,
    Phase.SYNTHESIS,
)


class AnalysisMode(str, Enum):
    """How much of the pipeline a run executes.

    FULL runs every phase, LITE skips the debate phase and EXPRESS also
    skips synthesis.
    """

    FULL = "full"
    LITE = "lite"
    EXPRESS = "express"

    @property
    def phases(self) -> tuple[Phase, ...]:
        if self is AnalysisMode.FULL:
            return WORK_PHASES
        if self is AnalysisMode.LITE:
            return tuple(p for p in WORK_PHASES if p is not Phase.DEBATE)
        return tuple(p for p in WORK_PHASES if p not in (Phase.DEBATE, Phase.SYNTHESIS))


class SessionStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class FailureKind(str, Enum):
    """Closed set of reasons an agent execution can fail."""

    EXCEPTION = "exception"
    TIMEOUT = "timeout"
    INVALID_RESULT = "invalid_result"


class TerminationReason(str, Enum):
    """Why a run stopped scheduling work."""

    COMPLETED = "completed"
    COST_LIMIT_REACHED = "cost_limit_reached"
    CRITICAL_WARNING = "critical_warning"
    FAILED = "failed"


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"


class WarningCategory(str, Enum):
    FOUNDER_INTEGRITY = "founder_integrity"
    LEGAL_EXISTENTIAL = "legal_existential"
    FINANCIAL_CRITICAL = "financial_critical"
    MARKET_DEAD = "market_dead"
    PRODUCT_BROKEN = "product_broken"
    DEAL_STRUCTURE = "deal_structure"
    FACT_CONTRADICTION = "fact_contradiction"


class Recommendation(str, Enum):
    INVESTIGATE = "investigate"
    LIKELY_DEALBREAKER = "likely_dealbreaker"
    ABSOLUTE_DEALBREAKER = "absolute_dealbreaker"


# ---------------------------------------------------------------------------
# Fact enums
# ---------------------------------------------------------------------------


class FactSource(str, Enum):
    """Provenance of a fact claim."""

    DATA_ROOM = "DATA_ROOM"
    FINANCIAL_MODEL = "FINANCIAL_MODEL"
    FOUNDER_RESPONSE = "FOUNDER_RESPONSE"
    PITCH_DECK = "PITCH_DECK"
    CONTEXT_ENGINE = "CONTEXT_ENGINE"
    BA_OVERRIDE = "BA_OVERRIDE"


class FactCategory(str, Enum):
    FINANCIAL = "FINANCIAL"
    TRACTION = "TRACTION"
    TEAM = "TEAM"
    MARKET = "MARKET"
    PRODUCT = "PRODUCT"
    COMPETITION = "COMPETITION"
    LEGAL = "LEGAL"
    OTHER = "OTHER"

    @classmethod
    def from_key(cls, fact_key: str) -> FactCategory:
        """Category implied by the first segment of a dotted key."""
        prefix = fact_key.split(".", 1)[0].upper()
        try:
            return cls(prefix)
        except ValueError:
            return cls.OTHER


class FactEventType(str, Enum):
    CREATED = "CREATED"
    SUPERSEDED = "SUPERSEDED"
    DISPUTED = "DISPUTED"
    RESOLVED = "RESOLVED"
    DELETED = "DELETED"


class MatchType(str, Enum):
    NEW = "NEW"
    SUPERSEDE = "SUPERSEDE"
    IGNORE = "IGNORE"
    REVIEW_NEEDED = "REVIEW_NEEDED"


class ContradictionSignificance(str, Enum):
    MINOR = "minor"
    SIGNIFICANT = "significant"
    MAJOR = "major"


# ---------------------------------------------------------------------------
# Subject
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Subject:
    """The deal under analysis."""

    id: str
    name: str
    attributes: dict[str, Any] = field(default_factory=dict)

    def fingerprint(self) -> str:
        """Stable digest of the subject's inputs, used as the cache key."""
        payload = orjson.dumps(
            {"id": self.id, "name": self.name, "attributes": self.attributes},
            option=orjson.OPT_SORT_KEYS,
            default=str,
        )
        return hashlib.sha256(payload).hexdigest()


# ---------------------------------------------------------------------------
# Facts
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ExtractedFact:
    """A claim about a subject, as submitted by an agent."""

    fact_key: str
    value: Any
    display_value: str
    source: FactSource
    source_confidence: int = 80
    category: FactCategory | None = None
    unit: str | None = None
    extracted_text: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "fact_key": self.fact_key,
            "value": self.value,
            "display_value": self.display_value,
            "source": self.source.value,
            "source_confidence": self.source_confidence,
            "category": self.category.value if self.category else None,
            "unit": self.unit,
            "extracted_text": self.extracted_text,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExtractedFact:
        return cls(
            fact_key=data["fact_key"],
            value=data["value"],
            display_value=data["display_value"],
            source=FactSource(data["source"]),
            source_confidence=data.get("source_confidence", 80),
            category=FactCategory(data["category"]) if data.get("category") else None,
            unit=data.get("unit"),
            extracted_text=data.get("extracted_text"),
        )


@dataclass(frozen=True)
class FactEvent:
    """One immutable entry in the fact ledger."""

    id: str
    subject_id: str
    fact_key: str
    category: FactCategory
    value: Any
    display_value: str
    source: FactSource
    source_confidence: int
    event_type: FactEventType
    created_at: datetime
    created_by: str
    unit: str | None = None
    extracted_text: str | None = None
    supersedes_event_id: str | None = None
    related_fact_key: str | None = None
    reason: str | None = None

    @classmethod
    def create(
        cls,
        subject_id: str,
        fact: ExtractedFact,
        event_type: FactEventType,
        created_by: str,
        supersedes_event_id: str | None = None,
        related_fact_key: str | None = None,
        reason: str | None = None,
        category: FactCategory | None = None,
    ) -> FactEvent:
        """Create a new event from a submitted fact."""
        return cls(
            id=generate_id("fev"),
            subject_id=subject_id,
            fact_key=fact.fact_key,
            category=category or fact.category or FactCategory.from_key(fact.fact_key),
            value=fact.value,
            display_value=fact.display_value,
            source=fact.source,
            source_confidence=fact.source_confidence,
            event_type=event_type,
            created_at=utc_now(),
            created_by=created_by,
            unit=fact.unit,
            extracted_text=fact.extracted_text,
            supersedes_event_id=supersedes_event_id,
            related_fact_key=related_fact_key,
            reason=reason,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "subject_id": self.subject_id,
            "fact_key": self.fact_key,
            "category": self.category.value,
            "value": self.value,
            "display_value": self.display_value,
            "source": self.source.value,
            "source_confidence": self.source_confidence,
            "event_type": self.event_type.value,
            "created_at": self.created_at.isoformat(),
            "created_by": self.created_by,
            "unit": self.unit,
            "extracted_text": self.extracted_text,
            "supersedes_event_id": self.supersedes_event_id,
            "related_fact_key": self.related_fact_key,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class DisputeDetails:
    """The competing claim behind an open dispute."""

    conflicting_value: Any
    conflicting_display_value: str
    conflicting_source: FactSource
    conflicting_event_id: str
    related_fact_key: str | None = None
    reason: str | None = None


@dataclass(frozen=True)
class CurrentFact:
    """Resolved view of one fact key, derived by replaying its events."""

    subject_id: str
    fact_key: str
    category: FactCategory
    current_value: Any
    current_display_value: str
    current_source: FactSource
    current_confidence: int
    current_event_id: str
    unit: str | None
    is_disputed: bool
    dispute_details: DisputeDetails | None
    event_history: tuple[FactEvent, ...]
    first_seen_at: datetime
    last_updated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        dispute = None
        if self.dispute_details is not None:
            d = self.dispute_details
            dispute = {
                "conflicting_value": d.conflicting_value,
                "conflicting_display_value": d.conflicting_display_value,
                "conflicting_source": d.conflicting_source.value,
                "conflicting_event_id": d.conflicting_event_id,
                "related_fact_key": d.related_fact_key,
                "reason": d.reason,
            }
        return {
            "subject_id": self.subject_id,
            "fact_key": self.fact_key,
            "category": self.category.value,
            "current_value": self.current_value,
            "current_display_value": self.current_display_value,
            "current_source": self.current_source.value,
            "current_confidence": self.current_confidence,
            "current_event_id": self.current_event_id,
            "unit": self.unit,
            "is_disputed": self.is_disputed,
            "dispute_details": dispute,
            "event_count": len(self.event_history),
            "first_seen_at": self.first_seen_at.isoformat(),
            "last_updated_at": self.last_updated_at.isoformat(),
        }


@dataclass(frozen=True)
class ContradictionInfo:
    """How far a new claim departs from the current value."""

    significance: ContradictionSignificance
    existing_value: Any
    new_value: Any
    delta: float | None = None

    @property
    def numeric(self) -> bool:
        return self.delta is not None


@dataclass(frozen=True)
class MatchOutcome:
    """Result of matching one submitted fact against the current view."""

    type: MatchType
    fact: ExtractedFact
    reason: str
    existing: CurrentFact | None = None
    contradiction: ContradictionInfo | None = None
    fuzzy: bool = False


# ---------------------------------------------------------------------------
# Agents and warnings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AgentResult:
    """Outcome of one agent execution.

    Failures are values: a failed agent produces a result with
    success=False and a failure_kind rather than raising.
    """

    agent_name: str
    success: bool
    data: dict[str, Any] | None = None
    error: str | None = None
    failure_kind: FailureKind | None = None
    cost: float = 0.0
    execution_time_ms: float = 0.0
    facts: tuple[ExtractedFact, ...] = ()

    @classmethod
    def ok(
        cls,
        agent_name: str,
        data: dict[str, Any] | None = None,
        cost: float = 0.0,
        facts: tuple[ExtractedFact, ...] | list[ExtractedFact] = (),
    ) -> AgentResult:
        return cls(
            agent_name=agent_name,
            success=True,
            data=data or {},
            cost=cost,
            facts=tuple(facts),
        )

    @classmethod
    def failure(
        cls,
        agent_name: str,
        kind: FailureKind,
        error: str,
        cost: float = 0.0,
        execution_time_ms: float = 0.0,
    ) -> AgentResult:
        return cls(
            agent_name=agent_name,
            success=False,
            error=error,
            failure_kind=kind,
            cost=cost,
            execution_time_ms=execution_time_ms,
        )

    @property
    def findings_count(self) -> int:
        """Number of findings a successful agent reported in data["findings"]."""
        if not self.success or not self.data:
            return 0
        findings = self.data.get("findings")
        return len(findings) if isinstance(findings, list) else 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_name": self.agent_name,
            "success": self.success,
            "data": self.data,
            "error": self.error,
            "failure_kind": self.failure_kind.value if self.failure_kind else None,
            "cost": self.cost,
            "execution_time_ms": self.execution_time_ms,
            "facts": [f.to_dict() for f in self.facts],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentResult:
        kind = data.get("failure_kind")
        return cls(
            agent_name=data["agent_name"],
            success=data["success"],
            data=data.get("data"),
            error=data.get("error"),
            failure_kind=FailureKind(kind) if kind else None,
            cost=data.get("cost", 0.0),
            execution_time_ms=data.get("execution_time_ms", 0.0),
            facts=tuple(ExtractedFact.from_dict(f) for f in data.get("facts", [])),
        )


@dataclass(frozen=True)
class EarlyWarning:
    """A red flag raised by a detection rule or an unresolved fact dispute."""

    id: str
    timestamp: datetime
    agent_name: str
    severity: Severity
    category: WarningCategory
    title: str
    description: str
    evidence: tuple[str, ...]
    confidence: int
    recommendation: Recommendation
    questions_to_ask: tuple[str, ...] = ()

    @classmethod
    def create(
        cls,
        agent_name: str,
        severity: Severity,
        category: WarningCategory,
        title: str,
        description: str,
        evidence: tuple[str, ...] | list[str] = (),
        confidence: int = 85,
        recommendation: Recommendation = Recommendation.INVESTIGATE,
        questions_to_ask: tuple[str, ...] | list[str] = (),
    ) -> EarlyWarning:
        return cls(
            id=generate_id("ew"),
            timestamp=utc_now(),
            agent_name=agent_name,
            severity=severity,
            category=category,
            title=title,
            description=description,
            evidence=tuple(evidence),
            confidence=confidence,
            recommendation=recommendation,
            questions_to_ask=tuple(questions_to_ask),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "agent_name": self.agent_name,
            "severity": self.severity.value,
            "category": self.category.value,
            "title": self.title,
            "description": self.description,
            "evidence": list(self.evidence),
            "confidence": self.confidence,
            "recommendation": self.recommendation.value,
            "questions_to_ask": list(self.questions_to_ask),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EarlyWarning:
        return cls(
            id=data["id"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            agent_name=data["agent_name"],
            severity=Severity(data["severity"]),
            category=WarningCategory(data["category"]),
            title=data["title"],
            description=data["description"],
            evidence=tuple(data.get("evidence", [])),
            confidence=data.get("confidence", 85),
            recommendation=Recommendation(data.get("recommendation", "investigate")),
            questions_to_ask=tuple(data.get("questions_to_ask", [])),
        )


# ---------------------------------------------------------------------------
# Run state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StateTransition:
    """Record of one phase change."""

    from_state: Phase
    to_state: Phase
    trigger: str
    timestamp: datetime
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "from": self.from_state.value,
            "to": self.to_state.value,
            "trigger": self.trigger,
            "timestamp": self.timestamp.isoformat(),
            "metadata": self.metadata,
        }


@dataclass(frozen=True)
class FailedAgent:
    agent: str
    error: str
    retries: int = 0


@dataclass(frozen=True)
class Checkpoint:
    """Snapshot of a run sufficient to resume it after a crash."""

    id: str
    session_id: str
    state: Phase
    completed_agents: tuple[str, ...]
    pending_agents: tuple[str, ...]
    failed_agents: tuple[FailedAgent, ...]
    results: dict[str, AgentResult]
    total_cost: float
    cost_by_agent: dict[str, float]
    start_time: datetime
    created_at: datetime
    cost_by_phase: dict[str, float] = field(default_factory=dict)
    warnings: tuple[EarlyWarning, ...] = ()

    @classmethod
    def create(
        cls,
        session_id: str,
        state: Phase,
        completed_agents: list[str] | tuple[str, ...],
        pending_agents: list[str] | tuple[str, ...],
        failed_agents: list[FailedAgent] | tuple[FailedAgent, ...],
        results: dict[str, AgentResult],
        total_cost: float,
        start_time: datetime,
        cost_by_agent: dict[str, float] | None = None,
        cost_by_phase: dict[str, float] | None = None,
        warnings: tuple[EarlyWarning, ...] | list[EarlyWarning] = (),
    ) -> Checkpoint:
        return cls(
            id=generate_id("ckpt"),
            session_id=session_id,
            state=state,
            completed_agents=tuple(completed_agents),
            pending_agents=tuple(pending_agents),
            failed_agents=tuple(failed_agents),
            results=dict(results),
            total_cost=total_cost,
            cost_by_agent=dict(cost_by_agent or {}),
            start_time=start_time,
            created_at=utc_now(),
            cost_by_phase=dict(cost_by_phase or {}),
            warnings=tuple(warnings),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "state": self.state.value,
            "completed_agents": list(self.completed_agents),
            "pending_agents": list(self.pending_agents),
            "failed_agents": [
                {"agent": f.agent, "error": f.error, "retries": f.retries}
                for f in self.failed_agents
            ],
            "results": {name: r.to_dict() for name, r in self.results.items()},
            "total_cost": self.total_cost,
            "cost_by_agent": self.cost_by_agent,
            "start_time": self.start_time.isoformat(),
            "created_at": self.created_at.isoformat(),
            "cost_by_phase": self.cost_by_phase,
            "warnings": [w.to_dict() for w in self.warnings],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Checkpoint:
        return cls(
            id=data["id"],
            session_id=data["session_id"],
            state=Phase(data["state"]),
            completed_agents=tuple(data.get("completed_agents", [])),
            pending_agents=tuple(data.get("pending_agents", [])),
            failed_agents=tuple(
                FailedAgent(agent=f["agent"], error=f["error"], retries=f.get("retries", 0))
                for f in data.get("failed_agents", [])
            ),
            results={
                name: AgentResult.from_dict(r) for name, r in data.get("results", {}).items()
            },
            total_cost=data.get("total_cost", 0.0),
            cost_by_agent=data.get("cost_by_agent", {}),
            start_time=datetime.fromisoformat(data["start_time"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            cost_by_phase=data.get("cost_by_phase", {}),
            warnings=tuple(EarlyWarning.from_dict(w) for w in data.get("warnings", [])),
        )


@dataclass
class AnalysisSession:
    """Durable record of one analysis run (mutable)."""

    id: str
    subject_id: str
    mode: AnalysisMode
    status: SessionStatus
    phase_state: Phase
    total_agents: int
    started_at: datetime
    completed_agents: int = 0
    total_cost: float = 0.0
    completed_at: datetime | None = None
    subject_fingerprint: str | None = None
    summary: dict[str, Any] = field(default_factory=dict)
    results: dict[str, AgentResult] = field(default_factory=dict)
    error: str | None = None

    @classmethod
    def create(
        cls,
        subject: Subject,
        mode: AnalysisMode,
        total_agents: int,
    ) -> AnalysisSession:
        return cls(
            id=generate_id("ses"),
            subject_id=subject.id,
            mode=mode,
            status=SessionStatus.RUNNING,
            phase_state=Phase.INIT,
            total_agents=total_agents,
            started_at=utc_now(),
            subject_fingerprint=subject.fingerprint(),
        )

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> AnalysisSession:
        results = orjson.loads(row["results_json"]) if row.get("results_json") else {}
        return cls(
            id=row["id"],
            subject_id=row["subject_id"],
            mode=AnalysisMode(row["mode"]),
            status=SessionStatus(row["status"]),
            phase_state=Phase(row["phase_state"]),
            total_agents=row["total_agents"],
            started_at=datetime.fromisoformat(row["started_at"]),
            completed_agents=row["completed_agents"],
            total_cost=row["total_cost"],
            completed_at=_parse_dt(row.get("completed_at")),
            subject_fingerprint=row.get("subject_fingerprint"),
            summary=orjson.loads(row["summary_json"]) if row.get("summary_json") else {},
            results={name: AgentResult.from_dict(r) for name, r in results.items()},
            error=row.get("error"),
        )


@dataclass(frozen=True)
class ProgressUpdate:
    """Emitted after every agent completion and every phase change."""

    session_id: str
    phase: Phase
    current_agent: str | None
    completed: int
    total: int
    cost_so_far: float
