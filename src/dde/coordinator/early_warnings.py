"""
Early warning detection.

Each successful agent result is checked against the declarative rules
scoped to that agent. A matching rule yields an EarlyWarning; nothing here
touches the fact store. Warnings are soft: they are surfaced as soon as
they are found and only stop the run when fail-fast is enabled, through
RunCircuit.

Rule paths are parsed once into a FieldPath. A path is a dotted sequence
of keys with at most one ``*`` segment, which applies the rest of the
path to every element of a list; the condition holds if it holds for
any element.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import orjson

from dde.budget import BudgetTracker
from dde.logging import get_logger
from dde.types import (
    AgentResult,
    EarlyWarning,
    MatchOutcome,
    MatchType,
    Recommendation,
    Severity,
    TerminationReason,
    WarningCategory,
)

logger = get_logger(__name__)

WILDCARD = "*"

# Top-level result fields quoted as supporting evidence.
DEFAULT_EVIDENCE_FIELDS: tuple[str, ...] = (
    "evidence",
    "concerns",
    "red_flags",
    "risks",
    "issues",
    "critical_issues",
    "financial_red_flags",
    "structural_red_flags",
    "competitive_risks",
)
EVIDENCE_PER_FIELD = 3
MAX_EVIDENCE = 5


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()


@dataclass(frozen=True)
class FieldPath:
    """A parsed path into an agent's result data."""

    raw: str
    head: tuple[str, ...]
    tail: tuple[str, ...] | None = None

    @classmethod
    def parse(cls, path: str) -> FieldPath:
        tokens = path.split(".")
        if not path or any(not t for t in tokens):
            raise ValueError(f"Invalid field path: {path!r}")
        wildcards = [i for i, t in enumerate(tokens) if t == WILDCARD]
        if len(wildcards) > 1:
            raise ValueError(f"Field path may contain at most one wildcard: {path!r}")
        if not wildcards:
            return cls(raw=path, head=tuple(tokens))
        i = wildcards[0]
        return cls(raw=path, head=tuple(tokens[:i]), tail=tuple(tokens[i + 1 :]))

    @property
    def has_wildcard(self) -> bool:
        return self.tail is not None

    def resolve(self, data: Any) -> Any:
        """Value at this path, MISSING if absent.

        A wildcard path resolves to the list of values found under each
        element, skipping elements where the rest of the path is absent.
        """
        value = _walk(data, self.head)
        if self.tail is None or value is MISSING:
            return value
        if not isinstance(value, list):
            return MISSING
        if not self.tail:
            return list(value)
        found = [_walk(item, self.tail) for item in value]
        return [v for v in found if v is not MISSING]

    def candidates(self, data: Any) -> list[Any]:
        """Values a condition is tested against."""
        value = self.resolve(data)
        if self.tail is None:
            return [value]
        return value if value is not MISSING else []

    def __str__(self) -> str:
        return self.raw


def _walk(value: Any, tokens: Iterable[str]) -> Any:
    for token in tokens:
        if isinstance(value, dict):
            if token not in value:
                return MISSING
            value = value[token]
        elif isinstance(value, list) and token.isdigit():
            index = int(token)
            if index >= len(value):
                return MISSING
            value = value[index]
        else:
            return MISSING
    return value


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_blank(value: Any) -> bool:
    if value is MISSING or value is None:
        return True
    if isinstance(value, (str, list, dict, tuple)):
        return len(value) == 0
    return False


class RuleCondition(str, Enum):
    EQUALS = "equals"
    BELOW = "below"
    ABOVE = "above"
    CONTAINS = "contains"
    EXISTS = "exists"
    EMPTY = "empty"

    def check(self, value: Any, threshold: Any = None) -> bool:
        if self is RuleCondition.EXISTS:
            return not _is_blank(value)
        if self is RuleCondition.EMPTY:
            return _is_blank(value)
        if value is MISSING:
            return False
        if self is RuleCondition.EQUALS:
            return _as_text(value) == _as_text(threshold)
        if self is RuleCondition.BELOW:
            return _is_number(value) and _is_number(threshold) and value < threshold
        if self is RuleCondition.ABOVE:
            return _is_number(value) and _is_number(threshold) and value > threshold
        # CONTAINS: case-insensitive substring, any of several needles
        needles = threshold if isinstance(threshold, (list, tuple)) else [threshold]
        haystacks = value if isinstance(value, list) else [value]
        return any(
            _as_text(n).lower() in _as_text(h).lower() for n in needles for h in haystacks
        )


@dataclass(frozen=True)
class DetectionRule:
    """One declarative red-flag check on one agent's output."""

    agent_name: str
    field_path: str
    condition: RuleCondition
    severity: Severity
    category: WarningCategory
    title: str
    description_template: str
    recommendation: Recommendation = Recommendation.INVESTIGATE
    threshold: Any = None
    questions_to_ask: tuple[str, ...] = ()
    evidence_fields: tuple[str, ...] = DEFAULT_EVIDENCE_FIELDS
    path: FieldPath = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "path", FieldPath.parse(self.field_path))

    def evaluate(self, data: dict[str, Any]) -> tuple[bool, Any]:
        """Whether the rule fires, and the value that fired it."""
        for candidate in self.path.candidates(data):
            if self.condition.check(candidate, self.threshold):
                return True, candidate
        return False, MISSING


def _render(value: Any) -> str:
    if isinstance(value, str):
        return value
    return orjson.dumps(value, default=str).decode()


def extract_evidence(data: dict[str, Any], rule: DetectionRule) -> list[str]:
    """Triggering value first, then a few items from the evidence fields."""
    evidence: list[str] = []
    value = rule.path.resolve(data)
    if value is not MISSING:
        evidence.append(f"{rule.field_path}: {_render(value)}")

    for name in rule.evidence_fields:
        items = data.get(name)
        if isinstance(items, list) and items:
            evidence.extend(_render(item) for item in items[:EVIDENCE_PER_FIELD])

    return evidence[:MAX_EVIDENCE]


def detect_warnings(
    agent_name: str,
    result: AgentResult,
    rules: Sequence[DetectionRule],
) -> list[EarlyWarning]:
    """Evaluate the rules scoped to ``agent_name`` against one result."""
    if not result.success or not result.data:
        return []

    warnings: list[EarlyWarning] = []
    for rule in rules:
        if rule.agent_name != agent_name:
            continue
        fired, value = rule.evaluate(result.data)
        if not fired:
            continue
        shown = "" if value is MISSING else _render(value)
        warnings.append(
            EarlyWarning.create(
                agent_name=agent_name,
                severity=rule.severity,
                category=rule.category,
                title=rule.title,
                description=rule.description_template.replace("{value}", shown),
                evidence=extract_evidence(result.data, rule),
                recommendation=rule.recommendation,
                questions_to_ask=rule.questions_to_ask,
            )
        )

    if warnings:
        logger.info(
            "Early warnings detected",
            agent=agent_name,
            count=len(warnings),
            critical=sum(1 for w in warnings if w.severity is Severity.CRITICAL),
        )
    return warnings


def warning_for_dispute(outcome: MatchOutcome, agent_name: str) -> EarlyWarning | None:
    """Critical warning for a fact contradiction that needs review."""
    if outcome.type is not MatchType.REVIEW_NEEDED:
        return None

    fact = outcome.fact
    existing = outcome.existing
    evidence = [f"{fact.fact_key} = {fact.display_value} ({fact.source.value})"]
    if existing is not None:
        evidence.append(
            f"{existing.fact_key} = {existing.current_display_value} "
            f"({existing.current_source.value})"
        )
    if outcome.contradiction is not None and outcome.contradiction.delta is not None:
        evidence.append(f"delta: {outcome.contradiction.delta:.1%}")

    return EarlyWarning.create(
        agent_name=agent_name,
        severity=Severity.CRITICAL,
        category=WarningCategory.FACT_CONTRADICTION,
        title=f"Contradictory facts: {fact.fact_key}",
        description=outcome.reason,
        evidence=evidence,
        confidence=fact.source_confidence,
        recommendation=Recommendation.INVESTIGATE,
        questions_to_ask=(
            f"Which value of {fact.fact_key} is correct?",
            "What document supports it?",
        ),
    )


@dataclass(frozen=True)
class WarningSummary:
    all: tuple[EarlyWarning, ...]
    critical: tuple[EarlyWarning, ...]
    high: tuple[EarlyWarning, ...]
    has_critical: bool
    summary: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": len(self.all),
            "critical": len(self.critical),
            "high": len(self.high),
            "has_critical": self.has_critical,
            "summary": self.summary,
        }


def aggregate_warnings(warnings: Iterable[EarlyWarning]) -> WarningSummary:
    everything = tuple(warnings)
    critical = tuple(w for w in everything if w.severity is Severity.CRITICAL)
    high = tuple(w for w in everything if w.severity is Severity.HIGH)

    if critical:
        summary = f"{len(critical)} CRITICAL warning(s) detected - potential dealbreakers identified"
    elif high:
        summary = f"{len(high)} HIGH priority warning(s) - require investigation before proceeding"
    elif everything:
        summary = f"{len(everything)} warning(s) detected - review recommended"
    else:
        summary = "No early warnings detected"

    return WarningSummary(
        all=everything,
        critical=critical,
        high=high,
        has_critical=bool(critical),
        summary=summary,
    )


@dataclass
class RunCircuit:
    """Decides whether the next batch of a run may start.

    Owned by one run. Tripping only stops future batches; results already
    collected are kept.
    """

    budget: BudgetTracker
    fail_fast_on_critical: bool = False
    warnings: list[EarlyWarning] = field(default_factory=list)
    tripped: TerminationReason | None = None

    def record(self, warnings: Iterable[EarlyWarning]) -> None:
        self.warnings.extend(warnings)

    @property
    def has_critical(self) -> bool:
        return any(w.severity is Severity.CRITICAL for w in self.warnings)

    def check(self) -> TerminationReason | None:
        """Reason to halt before the next batch, or None to continue."""
        if self.tripped is not None:
            return self.tripped
        if self.budget.is_exceeded():
            self.tripped = TerminationReason.COST_LIMIT_REACHED
            logger.warning(
                "Cost limit reached",
                total=f"${self.budget.total_cost_usd:.4f}",
                limit=self.budget.budget_limit,
            )
        elif self.fail_fast_on_critical and self.has_critical:
            self.tripped = TerminationReason.CRITICAL_WARNING
            logger.warning(
                "Critical warning with fail-fast enabled",
                critical=sum(1 for w in self.warnings if w.severity is Severity.CRITICAL),
            )
        return self.tripped

    def summary(self) -> WarningSummary:
        return aggregate_warnings(self.warnings)
