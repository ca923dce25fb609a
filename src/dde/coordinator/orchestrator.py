"""
Analysis orchestrator.

Runs one deal through the phase lifecycle:
1. Extraction - agents pull claims out of the deal's documents
2. Gathering - external enrichment is computed, then context agents run
3. Analysis - the specialist agents
4. Debate - adversarial review, only in full mode with more than one finding
5. Synthesis - scoring and final memo (skipped in express mode)

Inside each phase the BatchScheduler runs agents in dependency order. After
every batch the new facts go to the FactStore, dispute warnings are raised
and a checkpoint is written, so dependents see a consolidated fact view and
a crash loses at most the batch in flight. Before every batch RunCircuit
may halt the run for cost or, with fail-fast enabled, for a critical
warning; completed work is always kept.
"""

from __future__ import annotations

import inspect
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime
from functools import partial
from types import MappingProxyType
from typing import Any

from dde.agents.base import Agent, AgentContext, AgentRegistry
from dde.budget import BudgetTracker
from dde.config import Settings, get_settings
from dde.coordinator.checkpoint import (
    CheckpointManager,
    build_checkpoint,
    plan_recovery,
)
from dde.coordinator.early_warnings import (
    DetectionRule,
    RunCircuit,
    aggregate_warnings,
    detect_warnings,
    warning_for_dispute,
)
from dde.coordinator.scheduler import BatchScheduler, ResultMap
from dde.coordinator.state_machine import PhaseStateMachine, should_debate
from dde.coordinator.warning_rules import DEFAULT_RULES
from dde.exceptions import FactStoreError, PersistenceError, RecoveryError
from dde.facts.store import FactStore
from dde.logging import get_logger, log_context
from dde.persistence.session_store import SessionStore
from dde.types import (
    AgentResult,
    AnalysisMode,
    AnalysisSession,
    CurrentFact,
    EarlyWarning,
    MatchType,
    Phase,
    ProgressUpdate,
    SessionStatus,
    StateTransition,
    Subject,
    TerminationReason,
)

logger = get_logger(__name__)

ProgressCallback = Callable[[ProgressUpdate], Awaitable[None] | None]
WarningCallback = Callable[[EarlyWarning], Awaitable[None] | None]
Enricher = Callable[[Subject], Awaitable[dict[str, Any]]]


@dataclass
class RunOptions:
    """Per-run configuration."""

    mode: AnalysisMode = AnalysisMode.FULL
    fail_fast_on_critical: bool = False
    max_cost_usd: float | None = None
    force_refresh: bool = False
    on_progress: ProgressCallback | None = None
    on_warning: WarningCallback | None = None

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> RunOptions:
        values: dict[str, Any] = {
            "mode": AnalysisMode(settings.DEFAULT_MODE),
            "fail_fast_on_critical": settings.FAIL_FAST_ON_CRITICAL,
            "max_cost_usd": settings.MAX_BUDGET_USD,
        }
        values.update(overrides)
        return cls(**values)


@dataclass
class AnalysisResult:
    """What a run returns, including partial output on early termination."""

    session_id: str
    subject_id: str
    success: bool
    results: dict[str, AgentResult]
    total_cost: float
    total_time_ms: float
    summary: dict[str, Any]
    termination: TerminationReason
    warnings: list[EarlyWarning] = field(default_factory=list)
    has_critical_warnings: bool = False
    from_cache: bool = False
    cache_age_seconds: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "subject_id": self.subject_id,
            "success": self.success,
            "results": {name: r.to_dict() for name, r in self.results.items()},
            "total_cost": self.total_cost,
            "total_time_ms": self.total_time_ms,
            "summary": self.summary,
            "termination": self.termination.value,
            "warnings": [w.to_dict() for w in self.warnings],
            "has_critical_warnings": self.has_critical_warnings,
            "from_cache": self.from_cache,
            "cache_age_seconds": self.cache_age_seconds,
        }


@dataclass
class FactStats:
    submitted: int = 0
    new: int = 0
    superseded: int = 0
    ignored: int = 0
    disputed: int = 0
    rejected: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "submitted": self.submitted,
            "new": self.new,
            "superseded": self.superseded,
            "ignored": self.ignored,
            "disputed": self.disputed,
            "rejected": self.rejected,
        }


@dataclass
class RunContext:
    """All mutable state of one run, owned by the entry point that made it."""

    session: AnalysisSession
    subject: Subject
    options: RunOptions
    machine: PhaseStateMachine
    budget: BudgetTracker
    circuit: RunCircuit
    results: ResultMap
    agents: list[Agent]
    start_time: datetime
    started: float = field(default_factory=time.perf_counter)
    enrichment: dict[str, Any] = field(default_factory=dict)
    facts: tuple[CurrentFact, ...] = ()
    fact_stats: FactStats = field(default_factory=FactStats)
    skipped: set[str] = field(default_factory=set)
    degraded: list[str] = field(default_factory=list)
    debate_skipped: bool = False
    termination: TerminationReason | None = None

    @property
    def agent_names(self) -> list[str]:
        return [a.name for a in self.agents]

    @property
    def required_names(self) -> list[str]:
        """Agents the run still owes a result for."""
        return [a.name for a in self.agents if a.name not in self.skipped]

    @property
    def findings_count(self) -> int:
        return sum(r.findings_count for r in self.results.values())

    @property
    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.started) * 1000


@dataclass(frozen=True)
class InterruptedSession:
    session: AnalysisSession
    last_checkpoint_at: datetime | None

    @property
    def can_resume(self) -> bool:
        return self.last_checkpoint_at is not None


async def _call(callback: Callable[[Any], Awaitable[None] | None] | None, arg: Any) -> None:
    """Invoke a user callback; its failures never affect the run."""
    if callback is None:
        return
    try:
        maybe = callback(arg)
        if inspect.isawaitable(maybe):
            await maybe
    except Exception:
        logger.exception("Run callback failed")


class AnalysisOrchestrator:
    """Coordinates agents, facts, warnings and checkpoints for analysis runs.

    One orchestrator serves many runs; nothing run-specific is stored on it.
    """

    def __init__(
        self,
        registry: AgentRegistry,
        fact_store: FactStore,
        session_store: SessionStore,
        settings: Settings | None = None,
        rules: Sequence[DetectionRule] = DEFAULT_RULES,
        enricher: Enricher | None = None,
    ) -> None:
        self.registry = registry
        self.fact_store = fact_store
        self.session_store = session_store
        self.settings = settings or get_settings()
        self.rules = tuple(rules)
        self.enricher = enricher
        self.checkpoints = CheckpointManager(session_store, self.settings.CHECKPOINT_RETENTION)
        self.scheduler = BatchScheduler(
            agent_timeout=self.settings.AGENT_TIMEOUT_SECONDS,
            max_concurrency=self.settings.MAX_CONCURRENT_AGENTS,
        )

        unknown = registry.unknown_dependencies()
        if unknown:
            logger.warning("Agents depend on unregistered agents", unknown=unknown)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run_analysis(
        self,
        subject: Subject,
        options: RunOptions | None = None,
    ) -> AnalysisResult:
        """Run a full analysis of ``subject``.

        Returns:
            The result, partial if the run stopped early or failed. A
            cached result is returned instead when one is fresh and
            ``force_refresh`` is off.

        Raises:
            InvalidTransitionError: On a phase sequencing bug.
            PersistenceError: If the session row cannot be created.
        """
        options = options or RunOptions.from_settings(self.settings)

        if not options.force_refresh:
            cached = await self._cached_result(subject, options.mode)
            if cached is not None:
                return cached

        agents = self.registry.for_mode(options.mode)
        session = AnalysisSession.create(subject, options.mode, len(agents))
        await self.session_store.create_session(session)
        ctx = self._new_context(session, subject, options, agents)

        with log_context(session_id=session.id):
            logger.info(
                "Starting analysis",
                subject_id=subject.id,
                mode=options.mode.value,
                agents=len(agents),
            )
            await self._checkpoint(ctx)
            return await self._execute(ctx)

    async def resume_analysis(
        self,
        session_id: str,
        subject: Subject,
        options: RunOptions | None = None,
    ) -> AnalysisResult:
        """Resume an interrupted run from its latest checkpoint.

        Only agents that neither completed nor failed before the crash run
        again. Enrichment is recomputed since it is never checkpointed;
        warnings, fact contradictions included, come back from the
        checkpoint.

        Raises:
            RecoveryError: If the session cannot be resumed. A session
                without a checkpoint is marked failed first.
            SchemaDriftError: If the checkpoint names agents that are no
                longer registered; the session is marked failed first.
        """
        session = await self.session_store.get_session(session_id)
        if session is None:
            raise RecoveryError("Unknown session", context={"session_id": session_id})
        if session.status is not SessionStatus.RUNNING or session.phase_state.is_terminal:
            raise RecoveryError(
                "Session is not resumable",
                context={"session_id": session_id, "status": session.status.value},
            )
        if session.subject_id != subject.id:
            raise RecoveryError(
                "Subject does not match session",
                context={"session_id": session_id, "subject_id": subject.id},
            )

        options = options or RunOptions.from_settings(self.settings)
        if options.mode is not session.mode:
            logger.warning(
                "Resuming with the session's original mode",
                requested=options.mode.value,
                mode=session.mode.value,
            )
            options = replace(options, mode=session.mode)
        agents = self.registry.for_mode(session.mode)

        with log_context(session_id=session_id):
            checkpoint = await self.checkpoints.load_latest(session_id)
            if checkpoint is None:
                await self._mark_failed(session_id, "No checkpoint available for recovery")
                raise RecoveryError(
                    "No checkpoint found; session marked failed",
                    context={"session_id": session_id},
                )

            try:
                plan = plan_recovery(checkpoint, [a.name for a in agents])
            except RecoveryError as e:
                await self._mark_failed(session_id, str(e))
                raise

            logger.info(
                "Resuming analysis",
                state=plan.state.value,
                completed=len(plan.completed),
                failed=len(plan.failed),
                pending=list(plan.pending),
            )

            ctx = self._new_context(
                session,
                subject,
                options,
                agents,
                results=plan.results,
                budget=BudgetTracker.restore(
                    options.max_cost_usd,
                    checkpoint.total_cost,
                    checkpoint.cost_by_agent,
                    checkpoint.cost_by_phase,
                ),
                start_time=checkpoint.start_time,
            )
            if plan.state is not Phase.INIT:
                ctx.machine.restore(plan.state)
            ctx.circuit.record(checkpoint.warnings)

            return await self._execute(ctx, resume_from=plan.state)

    async def find_interrupted(self) -> list[InterruptedSession]:
        """Runs left in a non-terminal state, e.g. by a crash."""
        sessions = await self.session_store.find_interrupted()
        return [
            InterruptedSession(
                session=s,
                last_checkpoint_at=await self.session_store.last_checkpoint_at(s.id),
            )
            for s in sessions
        ]

    async def cancel_interrupted(self, session_id: str, reason: str | None = None) -> None:
        """Mark an interrupted run failed without attempting recovery."""
        session = await self.session_store.get_session(session_id)
        if session is None:
            raise RecoveryError("Unknown session", context={"session_id": session_id})
        if session.status is not SessionStatus.RUNNING:
            raise RecoveryError(
                "Session is not running",
                context={"session_id": session_id, "status": session.status.value},
            )
        await self.session_store.mark_failed(session_id, reason or "Cancelled by user")
        logger.info("Cancelled interrupted analysis", session_id=session_id)

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    def _new_context(
        self,
        session: AnalysisSession,
        subject: Subject,
        options: RunOptions,
        agents: list[Agent],
        results: Mapping[str, AgentResult] | None = None,
        budget: BudgetTracker | None = None,
        start_time: datetime | None = None,
    ) -> RunContext:
        budget = budget or BudgetTracker(budget_limit=options.max_cost_usd)
        machine = PhaseStateMachine(session.id, persist=self.session_store.record_transition)
        ctx = RunContext(
            session=session,
            subject=subject,
            options=options,
            machine=machine,
            budget=budget,
            circuit=RunCircuit(budget=budget, fail_fast_on_critical=options.fail_fast_on_critical),
            results=ResultMap(results),
            agents=agents,
            start_time=start_time or session.started_at,
        )
        machine.add_observer(partial(self._on_transition, ctx))
        return ctx

    async def _execute(
        self,
        ctx: RunContext,
        resume_from: Phase = Phase.INIT,
    ) -> AnalysisResult:
        phases = ctx.options.mode.phases
        start_index = phases.index(resume_from) if resume_from in phases else 0

        # Agents of phases already left behind without a result were skipped.
        passed = set(phases[:start_index])
        for agent in ctx.agents:
            if agent.phase in passed and agent.name not in ctx.results:
                ctx.skipped.add(agent.name)
                if agent.phase is Phase.DEBATE:
                    ctx.debate_skipped = True

        try:
            if (
                self.enricher is not None
                and Phase.GATHERING in phases
                and start_index > phases.index(Phase.GATHERING)
            ):
                await self._enrich(ctx)

            for phase in phases[start_index:]:
                reason = ctx.circuit.check()
                if reason is not None:
                    ctx.termination = reason
                    break

                if (
                    phase is Phase.DEBATE
                    and ctx.machine.state is not Phase.DEBATE
                    and not should_debate(ctx.findings_count, ctx.options.mode)
                ):
                    self._skip_debate(ctx)
                    continue

                if ctx.machine.state is not phase:
                    if phase is Phase.SYNTHESIS:
                        await ctx.machine.start_synthesis(debate_skipped=ctx.debate_skipped)
                    else:
                        await ctx.machine.enter(phase)

                with log_context(phase=phase.value):
                    if phase is Phase.GATHERING and self.enricher is not None:
                        await self._enrich(ctx)
                    halted = await self._run_phase(ctx, phase)

                if halted is not None:
                    ctx.termination = halted
                    break

            if ctx.termination is None:
                ctx.termination = TerminationReason.COMPLETED
            await ctx.machine.complete(
                trigger=ctx.termination.value,
                metadata={"total_cost": ctx.budget.total_cost_usd},
            )
            return await self._finish(ctx)

        except Exception as e:
            ctx.termination = TerminationReason.FAILED
            logger.error(
                "Analysis failed",
                error=str(e),
                phase=ctx.machine.state.value,
                exc_info=True,
            )
            await ctx.machine.fail(e)
            summary = self._summarize(ctx, error=str(e))
            await self._mark_failed(ctx.session.id, str(e), summary, dict(ctx.results))
            if getattr(e, "fatal", False):
                raise
            return self._build_result(ctx, summary, success=False)

    def _skip_debate(self, ctx: RunContext) -> None:
        debaters = [a.name for a in ctx.agents if a.phase is Phase.DEBATE]
        ctx.skipped.update(debaters)
        ctx.debate_skipped = True
        logger.info(
            "Skipping debate",
            findings=ctx.findings_count,
            skipped_agents=debaters,
        )

    async def _run_phase(self, ctx: RunContext, phase: Phase) -> TerminationReason | None:
        agents = [
            a for a in ctx.agents if a.phase is phase and a.name not in ctx.results
        ]
        if not agents:
            logger.debug("No agents to run in phase")
            return None

        scheduled = {a.name for a in agents}
        satisfied = (
            set(ctx.results)
            | ctx.skipped
            | {name for name in self.registry.names if name not in ctx.agent_names}
        ) - scheduled

        outcome = await self.scheduler.run(
            agents,
            ctx.results,
            partial(self._agent_context, ctx, phase),
            satisfied=satisfied,
            should_halt=ctx.circuit.check,
            on_agent_complete=partial(self._on_agent_complete, ctx, phase),
            after_batch=partial(self._after_batch, ctx, phase),
        )
        if outcome.plan.degraded:
            ctx.degraded.extend(outcome.plan.unresolved)
        return outcome.halted

    async def _agent_context(
        self,
        ctx: RunContext,
        phase: Phase,
        previous: Mapping[str, AgentResult],
    ) -> AgentContext:
        try:
            ctx.facts = tuple(await self.fact_store.get_current(ctx.subject.id))
        except PersistenceError as e:
            logger.error("Could not read current facts; using last known view", error=str(e))
        return AgentContext(
            session_id=ctx.session.id,
            subject=ctx.subject,
            mode=ctx.options.mode,
            phase=phase,
            previous_results=previous,
            facts=ctx.facts,
            enrichment=MappingProxyType(dict(ctx.enrichment)),
        )

    async def _enrich(self, ctx: RunContext) -> None:
        assert self.enricher is not None
        try:
            ctx.enrichment = dict(await self.enricher(ctx.subject))
        except Exception as e:
            logger.warning("Enrichment failed; continuing without it", error=str(e))
            ctx.enrichment = {}
        else:
            logger.info("Enrichment computed", keys=sorted(ctx.enrichment))

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    async def _on_agent_complete(
        self,
        ctx: RunContext,
        phase: Phase,
        result: AgentResult,
    ) -> None:
        ctx.budget.record_cost(result.agent_name, phase.value, result.cost)

        warnings = detect_warnings(result.agent_name, result, self.rules)
        ctx.circuit.record(warnings)
        for warning in warnings:
            await _call(ctx.options.on_warning, warning)

        await _call(ctx.options.on_progress, self._progress(ctx, result.agent_name))

    async def _after_batch(
        self,
        ctx: RunContext,
        phase: Phase,
        index: int,
        batch_results: list[AgentResult],
    ) -> None:
        for result in batch_results:
            if result.success and result.facts:
                await self._submit_facts(ctx, result)

        ctx.session.completed_agents = len(ctx.results)
        ctx.session.total_cost = ctx.budget.total_cost_usd
        await self._checkpoint(ctx)

    async def _submit_facts(self, ctx: RunContext, result: AgentResult) -> None:
        stats = ctx.fact_stats
        stats.submitted += len(result.facts)
        try:
            submission = await self.fact_store.submit_batch(
                ctx.subject.id, result.facts, created_by=result.agent_name
            )
        except (FactStoreError, PersistenceError) as e:
            stats.rejected += len(result.facts)
            logger.error(
                "Fact submission failed",
                agent=result.agent_name,
                facts=len(result.facts),
                error=str(e),
            )
            return

        stats.new += submission.count(MatchType.NEW)
        stats.superseded += submission.count(MatchType.SUPERSEDE)
        stats.ignored += submission.count(MatchType.IGNORE)
        stats.disputed += len(submission.disputes)

        for outcome in submission.disputes:
            warning = warning_for_dispute(outcome, result.agent_name)
            if warning is not None:
                ctx.circuit.record([warning])
                await _call(ctx.options.on_warning, warning)

    async def _checkpoint(self, ctx: RunContext) -> None:
        checkpoint = build_checkpoint(
            session_id=ctx.session.id,
            state=ctx.machine.state,
            required_agents=ctx.required_names,
            results=ctx.results,
            total_cost=ctx.budget.total_cost_usd,
            cost_by_agent=ctx.budget.by_agent,
            start_time=ctx.start_time,
            cost_by_phase=ctx.budget.by_phase,
            warnings=ctx.circuit.warnings,
        )
        await self.checkpoints.save(checkpoint)

    async def _on_transition(self, ctx: RunContext, transition: StateTransition) -> None:
        ctx.session.phase_state = transition.to_state
        await _call(ctx.options.on_progress, self._progress(ctx, None))

    def _progress(self, ctx: RunContext, agent_name: str | None) -> ProgressUpdate:
        return ProgressUpdate(
            session_id=ctx.session.id,
            phase=ctx.machine.state,
            current_agent=agent_name,
            completed=len(ctx.results),
            total=len(ctx.agents),
            cost_so_far=ctx.budget.total_cost_usd,
        )

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def _required_failures(self, ctx: RunContext) -> list[str]:
        return [
            a.name
            for a in ctx.agents
            if a.required and a.name in ctx.results and not ctx.results[a.name].success
        ]

    def _summarize(self, ctx: RunContext, error: str | None = None) -> dict[str, Any]:
        warnings = ctx.circuit.summary()
        executed = set(ctx.results)
        summary: dict[str, Any] = {
            "subject_id": ctx.subject.id,
            "mode": ctx.options.mode.value,
            "termination": (ctx.termination or TerminationReason.FAILED).value,
            "final_state": ctx.machine.state.value,
            "agents": {
                "total": len(ctx.agents),
                "succeeded": len(ctx.results.succeeded),
                "failed": len(ctx.results.failed),
                "not_run": sorted(
                    a.name for a in ctx.agents
                    if a.name not in executed and a.name not in ctx.skipped
                ),
                "skipped": sorted(ctx.skipped),
            },
            "failed_agents": {
                name: ctx.results[name].error for name in ctx.results.failed
            },
            "required_failures": self._required_failures(ctx),
            "findings": ctx.findings_count,
            "debate_skipped": ctx.debate_skipped,
            "degraded_agents": list(ctx.degraded),
            "cost": ctx.budget.get_breakdown(),
            "facts": ctx.fact_stats.to_dict(),
            "warnings": {
                **warnings.to_dict(),
                "items": [w.to_dict() for w in warnings.all],
            },
            "duration_ms": ctx.elapsed_ms,
        }
        if error is not None:
            summary["error"] = error
        return summary

    def _build_result(
        self,
        ctx: RunContext,
        summary: dict[str, Any],
        success: bool,
    ) -> AnalysisResult:
        warnings = ctx.circuit.summary()
        return AnalysisResult(
            session_id=ctx.session.id,
            subject_id=ctx.subject.id,
            success=success,
            results=dict(ctx.results),
            total_cost=ctx.budget.total_cost_usd,
            total_time_ms=ctx.elapsed_ms,
            summary=summary,
            termination=ctx.termination or TerminationReason.FAILED,
            warnings=list(warnings.all),
            has_critical_warnings=warnings.has_critical,
        )

    async def _finish(self, ctx: RunContext) -> AnalysisResult:
        summary = self._summarize(ctx)
        success = ctx.machine.state is Phase.COMPLETED and not self._required_failures(ctx)

        try:
            await self.session_store.complete_session(
                ctx.session.id, summary, dict(ctx.results), ctx.budget.total_cost_usd
            )
            if success and ctx.termination is TerminationReason.COMPLETED:
                await self.session_store.store_fingerprint(
                    ctx.subject.id,
                    ctx.subject.fingerprint(),
                    ctx.options.mode,
                    ctx.session.id,
                )
        except PersistenceError as e:
            logger.error("Failed to persist completed session", error=str(e))

        logger.info(
            "Analysis finished",
            termination=summary["termination"],
            success=success,
            succeeded=summary["agents"]["succeeded"],
            failed=summary["agents"]["failed"],
            total_cost=f"${ctx.budget.total_cost_usd:.4f}",
            warnings=summary["warnings"]["total"],
        )
        return self._build_result(ctx, summary, success=success)

    async def _mark_failed(
        self,
        session_id: str,
        error: str,
        summary: dict[str, Any] | None = None,
        results: dict[str, AgentResult] | None = None,
    ) -> None:
        try:
            await self.session_store.mark_failed(session_id, error, summary, results)
        except PersistenceError as e:
            logger.error("Failed to mark session failed", session_id=session_id, error=str(e))

    async def _cached_result(
        self,
        subject: Subject,
        mode: AnalysisMode,
    ) -> AnalysisResult | None:
        cached = await self.session_store.lookup_cached(
            subject.id, subject.fingerprint(), mode, self.settings.cache_ttl_seconds
        )
        if cached is None:
            return None

        session, age = cached
        stored = session.summary.get("warnings", {}).get("items", [])
        warnings = aggregate_warnings(EarlyWarning.from_dict(w) for w in stored)
        logger.info(
            "Returning cached analysis",
            subject_id=subject.id,
            session_id=session.id,
            age_seconds=round(age),
        )
        return AnalysisResult(
            session_id=session.id,
            subject_id=subject.id,
            success=True,
            results=dict(session.results),
            total_cost=session.total_cost,
            total_time_ms=0.0,
            summary=session.summary,
            termination=TerminationReason.COMPLETED,
            warnings=list(warnings.all),
            has_critical_warnings=warnings.has_critical,
            from_cache=True,
            cache_age_seconds=age,
        )
