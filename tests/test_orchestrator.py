"""
Tests for the analysis orchestrator.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest

from dde.agents.base import AgentContext, AgentRegistry, FunctionAgent
from dde.config import Settings
from dde.coordinator.checkpoint import build_checkpoint
from dde.coordinator.early_warnings import warning_for_dispute
from dde.coordinator.orchestrator import AnalysisOrchestrator, RunOptions
from dde.exceptions import PersistenceError, RecoveryError, SchemaDriftError
from dde.facts.store import FactStore
from dde.persistence.session_store import SessionStore
from dde.types import (
    AgentResult,
    AnalysisMode,
    AnalysisSession,
    EarlyWarning,
    ExtractedFact,
    FactSource,
    Phase,
    ProgressUpdate,
    SessionStatus,
    Severity,
    Subject,
    TerminationReason,
    WarningCategory,
)

Calls = dict[str, int]


def make_agent(
    name: str,
    phase: Phase,
    *,
    data: dict[str, Any] | None = None,
    cost: float = 0.0,
    deps: tuple[str, ...] = (),
    required: bool = True,
    facts: tuple[ExtractedFact, ...] = (),
    error: Exception | None = None,
    calls: Calls | None = None,
    seen: dict[str, AgentContext] | None = None,
) -> FunctionAgent:
    """Create an agent that counts its runs and records its context."""

    async def run(context: AgentContext) -> AgentResult:
        if calls is not None:
            calls[name] = calls.get(name, 0) + 1
        if seen is not None:
            seen[name] = context
        if error is not None:
            raise error
        return AgentResult.ok(name, data if data is not None else {"agent": name}, cost=cost, facts=facts)

    return FunctionAgent(name, phase, run, dependencies=deps, required=required)


def arr_fact(value: int, source: FactSource) -> ExtractedFact:
    return ExtractedFact(
        fact_key="financial.arr",
        value=value,
        display_value=f"{value // 1000}K€",
        source=source,
        source_confidence=80,
    )


def standard_agents(
    calls: Calls | None = None,
    seen: dict[str, AgentContext] | None = None,
    findings: int = 2,
    auditor_score: int = 70,
    auditor_cost: float = 0.0,
    gathering_facts: tuple[ExtractedFact, ...] = (),
) -> list[FunctionAgent]:
    """One agent per phase plus a second analyst."""
    return [
        make_agent(
            "deck_extractor",
            Phase.EXTRACTION,
            facts=(arr_fact(500_000, FactSource.PITCH_DECK),),
            cost=0.2,
            calls=calls,
            seen=seen,
        ),
        make_agent(
            "context_engine",
            Phase.GATHERING,
            deps=("deck_extractor",),
            facts=gathering_facts,
            calls=calls,
            seen=seen,
        ),
        make_agent(
            "financial_auditor",
            Phase.ANALYSIS,
            data={
                "overall_score": auditor_score,
                "findings": [f"finding {i}" for i in range(findings)],
            },
            cost=auditor_cost,
            calls=calls,
            seen=seen,
        ),
        make_agent(
            "team_investigator",
            Phase.ANALYSIS,
            data={"overall_team_score": 60},
            calls=calls,
            seen=seen,
        ),
        make_agent(
            "devils_advocate",
            Phase.DEBATE,
            data={"overall_skepticism": 40},
            calls=calls,
            seen=seen,
        ),
        make_agent(
            "synthesis_deal_scorer",
            Phase.SYNTHESIS,
            deps=("financial_auditor", "team_investigator", "devils_advocate"),
            data={"verdict": "invest", "overall_score": 72},
            calls=calls,
            seen=seen,
        ),
    ]


Builder = Callable[..., AnalysisOrchestrator]


@pytest.fixture
def build(
    fact_store: FactStore, session_store: SessionStore, mock_settings: Settings
) -> Builder:
    """Factory for orchestrators over the test stores."""

    def _build(agents: list[FunctionAgent], **kwargs: Any) -> AnalysisOrchestrator:
        return AnalysisOrchestrator(
            AgentRegistry(agents), fact_store, session_store, settings=mock_settings, **kwargs
        )

    return _build


async def path_of(session_store: SessionStore, session_id: str) -> list[Phase]:
    transitions = await session_store.get_transitions(session_id)
    return [transitions[0].from_state] + [t.to_state for t in transitions]


class TestFullRun:
    """Test a run through every phase."""

    @pytest.mark.asyncio
    async def test_happy_path(
        self,
        build: Builder,
        subject: Subject,
        session_store: SessionStore,
        fact_store: FactStore,
    ) -> None:
        """Test that every agent runs once and the run completes."""
        calls: Calls = {}
        orchestrator = build(standard_agents(calls))

        result = await orchestrator.run_analysis(subject, RunOptions(mode=AnalysisMode.FULL))

        assert result.success
        assert result.termination is TerminationReason.COMPLETED
        assert not result.from_cache
        assert calls == {
            "deck_extractor": 1,
            "context_engine": 1,
            "financial_auditor": 1,
            "team_investigator": 1,
            "devils_advocate": 1,
            "synthesis_deal_scorer": 1,
        }
        assert result.total_cost == pytest.approx(0.2)
        assert result.summary["agents"]["succeeded"] == 6
        assert result.summary["debate_skipped"] is False
        assert result.summary["degraded_agents"] == []

        assert await path_of(session_store, result.session_id) == [
            Phase.INIT,
            Phase.EXTRACTION,
            Phase.GATHERING,
            Phase.ANALYSIS,
            Phase.DEBATE,
            Phase.SYNTHESIS,
            Phase.COMPLETED,
        ]
        session = await session_store.get_session(result.session_id)
        assert session is not None
        assert session.status is SessionStatus.COMPLETED
        assert session.completed_agents == 6
        assert set(session.results) == set(result.results)

        fact = await fact_store.get_fact(subject.id, "financial.arr")
        assert fact is not None
        assert fact.current_value == 500_000
        assert result.summary["facts"]["new"] == 1

    @pytest.mark.asyncio
    async def test_later_phases_see_facts_and_results(
        self, build: Builder, subject: Subject
    ) -> None:
        """Test what agents receive in their context."""
        seen: dict[str, AgentContext] = {}
        orchestrator = build(standard_agents(seen=seen))

        await orchestrator.run_analysis(subject, RunOptions())

        assert seen["deck_extractor"].facts == ()
        assert [f.fact_key for f in seen["context_engine"].facts] == ["financial.arr"]
        assert seen["context_engine"].phase is Phase.GATHERING
        synth = seen["synthesis_deal_scorer"]
        assert set(synth.previous_results) >= {"financial_auditor", "devils_advocate"}
        assert synth.data_of("financial_auditor") == {
            "overall_score": 70,
            "findings": ["finding 0", "finding 1"],
        }

    @pytest.mark.asyncio
    async def test_checkpoints_written(
        self, build: Builder, subject: Subject, session_store: SessionStore
    ) -> None:
        """Test that checkpoints are written and pruned to retention."""
        orchestrator = build(standard_agents())

        result = await orchestrator.run_analysis(subject, RunOptions())

        checkpoints = await session_store.list_checkpoints(result.session_id)
        assert len(checkpoints) == 3
        assert checkpoints[0].pending_agents == ()
        assert len(checkpoints[0].completed_agents) == 6

    @pytest.mark.asyncio
    async def test_progress_updates(self, build: Builder, subject: Subject) -> None:
        """Test progress callbacks, including a failing one."""
        updates: list[ProgressUpdate] = []

        async def on_progress(update: ProgressUpdate) -> None:
            updates.append(update)
            raise RuntimeError("UI went away")

        orchestrator = build(standard_agents())

        result = await orchestrator.run_analysis(subject, RunOptions(on_progress=on_progress))

        assert result.success
        agent_updates = [u for u in updates if u.current_agent is not None]
        assert len(agent_updates) == 6
        assert agent_updates[-1].completed == 6
        assert updates[-1].phase is Phase.COMPLETED
        assert all(u.total == 6 for u in updates)


class TestModes:
    """Test how modes and findings shape the run."""

    @pytest.mark.asyncio
    async def test_debate_skipped_with_few_findings(
        self, build: Builder, subject: Subject, session_store: SessionStore
    ) -> None:
        """Test that one finding is not enough to debate."""
        calls: Calls = {}
        orchestrator = build(standard_agents(calls, findings=1))

        result = await orchestrator.run_analysis(subject, RunOptions())

        assert result.success
        assert "devils_advocate" not in calls
        assert calls["synthesis_deal_scorer"] == 1
        assert result.summary["debate_skipped"] is True
        assert result.summary["agents"]["skipped"] == ["devils_advocate"]
        assert result.summary["degraded_agents"] == []

        transitions = await session_store.get_transitions(result.session_id)
        skip = [t for t in transitions if t.to_state is Phase.SYNTHESIS]
        assert skip[0].from_state is Phase.ANALYSIS
        assert skip[0].trigger == "skip_debate"

    @pytest.mark.asyncio
    async def test_lite_mode(
        self, build: Builder, subject: Subject, session_store: SessionStore
    ) -> None:
        """Test that lite mode never debates but synthesizes."""
        calls: Calls = {}
        orchestrator = build(standard_agents(calls, findings=5))

        result = await orchestrator.run_analysis(subject, RunOptions(mode=AnalysisMode.LITE))

        assert result.success
        assert "devils_advocate" not in calls
        assert calls["synthesis_deal_scorer"] == 1
        assert result.summary["agents"]["total"] == 5
        assert Phase.DEBATE not in await path_of(session_store, result.session_id)

    @pytest.mark.asyncio
    async def test_express_mode(
        self, build: Builder, subject: Subject, session_store: SessionStore
    ) -> None:
        """Test that express mode stops after analysis."""
        calls: Calls = {}
        orchestrator = build(standard_agents(calls))

        result = await orchestrator.run_analysis(subject, RunOptions(mode=AnalysisMode.EXPRESS))

        assert result.success
        assert set(calls) == {
            "deck_extractor",
            "context_engine",
            "financial_auditor",
            "team_investigator",
        }
        path = await path_of(session_store, result.session_id)
        assert path[-2:] == [Phase.ANALYSIS, Phase.COMPLETED]

    @pytest.mark.asyncio
    async def test_default_options_from_settings(
        self, build: Builder, subject: Subject
    ) -> None:
        """Test that a run without options uses configured defaults."""
        orchestrator = build(standard_agents())

        result = await orchestrator.run_analysis(subject)

        assert result.summary["mode"] == "full"
        assert result.summary["cost"]["budget_limit"] == 25.0


class TestEarlyTermination:
    """Test halting for cost and critical warnings."""

    @pytest.mark.asyncio
    async def test_cost_limit_keeps_completed_work(
        self, build: Builder, subject: Subject, session_store: SessionStore
    ) -> None:
        """Test that reaching the budget stops before the next batch."""
        calls: Calls = {}
        orchestrator = build(standard_agents(calls))

        result = await orchestrator.run_analysis(subject, RunOptions(max_cost_usd=0.2))

        assert result.termination is TerminationReason.COST_LIMIT_REACHED
        assert result.success
        assert calls == {"deck_extractor": 1}
        assert list(result.results) == ["deck_extractor"]
        assert result.summary["agents"]["not_run"] == [
            "context_engine",
            "devils_advocate",
            "financial_auditor",
            "synthesis_deal_scorer",
            "team_investigator",
        ]

        transitions = await session_store.get_transitions(result.session_id)
        assert transitions[-1].from_state is Phase.EXTRACTION
        assert transitions[-1].to_state is Phase.COMPLETED
        assert transitions[-1].trigger == "cost_limit_reached"

    @pytest.mark.asyncio
    async def test_cost_limit_inside_phase(self, build: Builder, subject: Subject) -> None:
        """Test that the limit is also checked between batches of one phase."""
        calls: Calls = {}
        agents = standard_agents(calls, auditor_cost=5.0)
        agents.append(
            make_agent("auditor_followup", Phase.ANALYSIS, deps=("financial_auditor",), calls=calls)
        )
        orchestrator = build(agents)

        result = await orchestrator.run_analysis(subject, RunOptions(max_cost_usd=5.0))

        assert result.termination is TerminationReason.COST_LIMIT_REACHED
        assert "auditor_followup" not in calls
        assert calls["team_investigator"] == 1

    @pytest.mark.asyncio
    async def test_fail_fast_on_critical_warning(self, build: Builder, subject: Subject) -> None:
        """Test that a critical warning stops new batches when fail-fast is on."""
        calls: Calls = {}
        warnings: list[EarlyWarning] = []
        agents = standard_agents(calls, auditor_score=10)
        agents.append(
            make_agent("auditor_followup", Phase.ANALYSIS, deps=("financial_auditor",), calls=calls)
        )
        orchestrator = build(agents)

        result = await orchestrator.run_analysis(
            subject,
            RunOptions(fail_fast_on_critical=True, on_warning=warnings.append),
        )

        assert result.termination is TerminationReason.CRITICAL_WARNING
        assert result.has_critical_warnings
        assert calls["team_investigator"] == 1
        assert "auditor_followup" not in calls
        assert "synthesis_deal_scorer" not in calls
        assert "financial_auditor" in result.results
        assert [w.title for w in warnings] == ["Financial Metrics Below Viability Threshold"]
        assert warnings[0].severity is Severity.CRITICAL

    @pytest.mark.asyncio
    async def test_critical_warning_without_fail_fast(
        self, build: Builder, subject: Subject
    ) -> None:
        """Test that warnings alone never stop the run."""
        calls: Calls = {}
        orchestrator = build(standard_agents(calls, auditor_score=10))

        result = await orchestrator.run_analysis(subject, RunOptions())

        assert result.termination is TerminationReason.COMPLETED
        assert result.has_critical_warnings
        assert calls["synthesis_deal_scorer"] == 1
        assert result.summary["warnings"]["critical"] == 1


class TestFailures:
    """Test agent and infrastructure failures."""

    @pytest.mark.asyncio
    async def test_required_agent_failure(self, build: Builder, subject: Subject) -> None:
        """Test that a failed required agent fails the run but not the pipeline."""
        calls: Calls = {}
        agents = standard_agents(calls)
        agents[3] = make_agent(
            "team_investigator", Phase.ANALYSIS, error=ValueError("bad json"), calls=calls
        )
        orchestrator = build(agents)

        result = await orchestrator.run_analysis(subject, RunOptions())

        assert not result.success
        assert result.termination is TerminationReason.COMPLETED
        assert calls["synthesis_deal_scorer"] == 1
        assert result.summary["required_failures"] == ["team_investigator"]
        assert result.summary["failed_agents"] == {"team_investigator": "ValueError: bad json"}

    @pytest.mark.asyncio
    async def test_optional_agent_failure(self, build: Builder, subject: Subject) -> None:
        """Test that an optional agent may fail without failing the run."""
        agents = standard_agents()
        agents.append(
            make_agent(
                "web_scraper", Phase.GATHERING, required=False, error=ConnectionError("403")
            )
        )
        orchestrator = build(agents)

        result = await orchestrator.run_analysis(subject, RunOptions())

        assert result.success
        assert not result.results["web_scraper"].success
        assert result.summary["required_failures"] == []

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_session(
        self,
        build: Builder,
        subject: Subject,
        fact_store: FactStore,
        session_store: SessionStore,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test that an infrastructure bug yields a failed partial result."""
        orchestrator = build(standard_agents())

        async def broken(subject_id: str) -> list:
            raise RuntimeError("index corrupted")

        monkeypatch.setattr(fact_store, "get_current", broken)

        result = await orchestrator.run_analysis(subject, RunOptions())

        assert not result.success
        assert result.termination is TerminationReason.FAILED
        assert "index corrupted" in result.summary["error"]
        session = await session_store.get_session(result.session_id)
        assert session is not None
        assert session.status is SessionStatus.FAILED
        assert session.phase_state is Phase.FAILED

    @pytest.mark.asyncio
    async def test_fact_read_failure_uses_last_view(
        self,
        build: Builder,
        subject: Subject,
        fact_store: FactStore,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test that a failed fact read does not stop the run."""
        orchestrator = build(standard_agents())

        async def unavailable(subject_id: str) -> list:
            raise PersistenceError("database is locked")

        monkeypatch.setattr(fact_store, "get_current", unavailable)

        result = await orchestrator.run_analysis(subject, RunOptions())

        assert result.success


class TestFactsAndWarnings:
    """Test fact submission during a run."""

    @pytest.mark.asyncio
    async def test_contradiction_raises_critical_warning(
        self, build: Builder, subject: Subject
    ) -> None:
        """Test that a disputed fact becomes a critical warning."""
        seen: dict[str, AgentContext] = {}
        warnings: list[EarlyWarning] = []
        orchestrator = build(
            standard_agents(
                seen=seen,
                gathering_facts=(arr_fact(1_000_000, FactSource.DATA_ROOM),),
            )
        )

        result = await orchestrator.run_analysis(subject, RunOptions(on_warning=warnings.append))

        assert result.summary["facts"]["disputed"] == 1
        [dispute] = [w for w in result.warnings if w.category is WarningCategory.FACT_CONTRADICTION]
        assert dispute.severity is Severity.CRITICAL
        assert dispute.agent_name == "context_engine"
        assert dispute in warnings

        [arr] = seen["financial_auditor"].facts
        assert arr.is_disputed
        assert arr.current_value == 500_000


class TestEnrichment:
    """Test the gathering enrichment hook."""

    @pytest.mark.asyncio
    async def test_enrichment_visible_to_agents(self, build: Builder, subject: Subject) -> None:
        """Test that enrichment computed in gathering reaches agents."""
        seen: dict[str, AgentContext] = {}
        calls: Calls = {}

        async def enricher(s: Subject) -> dict[str, Any]:
            calls["enricher"] = calls.get("enricher", 0) + 1
            return {"web": {"mentions": 12}}

        orchestrator = build(standard_agents(seen=seen), enricher=enricher)

        await orchestrator.run_analysis(subject, RunOptions())

        assert calls == {"enricher": 1}
        assert seen["deck_extractor"].enrichment == {}
        assert seen["context_engine"].enrichment == {"web": {"mentions": 12}}
        assert seen["synthesis_deal_scorer"].enrichment == {"web": {"mentions": 12}}

    @pytest.mark.asyncio
    async def test_enrichment_failure_is_soft(self, build: Builder, subject: Subject) -> None:
        """Test that a failing enricher leaves the run intact."""
        seen: dict[str, AgentContext] = {}

        async def enricher(s: Subject) -> dict[str, Any]:
            raise ConnectionError("search API down")

        orchestrator = build(standard_agents(seen=seen), enricher=enricher)

        result = await orchestrator.run_analysis(subject, RunOptions())

        assert result.success
        assert seen["context_engine"].enrichment == {}


class TestResultCache:
    """Test returning cached analyses."""

    @pytest.mark.asyncio
    async def test_second_run_served_from_cache(self, build: Builder, subject: Subject) -> None:
        """Test that identical inputs reuse a completed session."""
        calls: Calls = {}
        orchestrator = build(standard_agents(calls, auditor_score=10))

        first = await orchestrator.run_analysis(subject, RunOptions())
        second = await orchestrator.run_analysis(subject, RunOptions())

        assert second.from_cache
        assert second.session_id == first.session_id
        assert second.cache_age_seconds is not None
        assert set(second.results) == set(first.results)
        assert second.has_critical_warnings
        assert [w.title for w in second.warnings] == ["Financial Metrics Below Viability Threshold"]
        assert calls["deck_extractor"] == 1

    @pytest.mark.asyncio
    async def test_cached_run_keeps_fact_contradictions(
        self, build: Builder, subject: Subject
    ) -> None:
        """Test that contradiction warnings come back with a cached result."""
        orchestrator = build(
            standard_agents(gathering_facts=(arr_fact(1_000_000, FactSource.DATA_ROOM),))
        )

        first = await orchestrator.run_analysis(subject, RunOptions())
        second = await orchestrator.run_analysis(subject, RunOptions())

        assert first.success
        assert first.has_critical_warnings
        assert second.from_cache
        assert second.has_critical_warnings
        assert {w.id for w in second.warnings} == {w.id for w in first.warnings}
        contradiction = next(
            w for w in second.warnings if w.category is WarningCategory.FACT_CONTRADICTION
        )
        assert contradiction.severity is Severity.CRITICAL
        assert contradiction.agent_name == "context_engine"

    @pytest.mark.asyncio
    async def test_force_refresh(self, build: Builder, subject: Subject) -> None:
        """Test that force_refresh bypasses the cache."""
        orchestrator = build(standard_agents())

        first = await orchestrator.run_analysis(subject, RunOptions())
        second = await orchestrator.run_analysis(subject, RunOptions(force_refresh=True))

        assert not second.from_cache
        assert second.session_id != first.session_id

    @pytest.mark.asyncio
    async def test_changed_inputs_miss_cache(self, build: Builder, subject: Subject) -> None:
        """Test that a different fingerprint or mode runs again."""
        orchestrator = build(standard_agents())

        first = await orchestrator.run_analysis(subject, RunOptions())
        changed = Subject(id=subject.id, name=subject.name, attributes={"stage": "series_a"})
        other_inputs = await orchestrator.run_analysis(changed, RunOptions())
        other_mode = await orchestrator.run_analysis(subject, RunOptions(mode=AnalysisMode.LITE))

        assert not other_inputs.from_cache
        assert not other_mode.from_cache
        assert len({first.session_id, other_inputs.session_id, other_mode.session_id}) == 3

    @pytest.mark.asyncio
    async def test_partial_runs_not_cached(self, build: Builder, subject: Subject) -> None:
        """Test that early-terminated and failed runs are never served."""
        agents = standard_agents()
        agents[2] = make_agent("financial_auditor", Phase.ANALYSIS, error=ValueError("x"))
        orchestrator = build(agents)

        await orchestrator.run_analysis(subject, RunOptions())
        capped = await orchestrator.run_analysis(subject, RunOptions(max_cost_usd=0.1))
        again = await orchestrator.run_analysis(subject, RunOptions())

        assert not capped.from_cache
        assert not again.from_cache


class TestRecovery:
    """Test resuming interrupted sessions."""

    async def crash_after(
        self,
        orchestrator: AnalysisOrchestrator,
        session_store: SessionStore,
        subject: Subject,
        state: Phase,
        done: dict[str, AgentResult],
        mode: AnalysisMode = AnalysisMode.FULL,
        warnings: tuple[EarlyWarning, ...] = (),
        cost_by_phase: dict[str, float] | None = None,
    ) -> AnalysisSession:
        """Leave behind a running session whose last checkpoint holds ``done``."""
        agents = orchestrator.registry.for_mode(mode)
        session = AnalysisSession.create(subject, mode, len(agents))
        await session_store.create_session(session)
        await session_store.save_checkpoint(
            build_checkpoint(
                session_id=session.id,
                state=state,
                required_agents=[a.name for a in agents],
                results=done,
                total_cost=sum(r.cost for r in done.values()),
                cost_by_agent={n: r.cost for n, r in done.items()},
                start_time=session.started_at,
                cost_by_phase=cost_by_phase,
                warnings=warnings,
            )
        )
        return session

    @pytest.mark.asyncio
    async def test_resume_keeps_dispute_warnings(
        self,
        build: Builder,
        subject: Subject,
        fact_store: FactStore,
        session_store: SessionStore,
    ) -> None:
        """Test that a contradiction found before the crash still halts the resumed run."""
        calls: Calls = {}
        orchestrator = build(standard_agents(calls))
        await fact_store.submit_batch(
            subject.id, [arr_fact(500_000, FactSource.PITCH_DECK)], created_by="deck_extractor"
        )
        submission = await fact_store.submit_batch(
            subject.id, [arr_fact(900_000, FactSource.DATA_ROOM)], created_by="context_engine"
        )
        [dispute] = submission.disputes
        warning = warning_for_dispute(dispute, "context_engine")
        done = {
            "deck_extractor": AgentResult.ok("deck_extractor", cost=0.2),
            "context_engine": AgentResult.ok("context_engine"),
        }
        session = await self.crash_after(
            orchestrator, session_store, subject, Phase.GATHERING, done, warnings=(warning,)
        )

        result = await orchestrator.resume_analysis(
            session.id, subject, RunOptions(fail_fast_on_critical=True)
        )

        assert result.termination is TerminationReason.CRITICAL_WARNING
        assert result.has_critical_warnings
        assert [w.category for w in result.warnings] == [WarningCategory.FACT_CONTRADICTION]
        assert result.warnings[0].id == warning.id
        assert calls == {}
        assert result.summary["warnings"]["critical"] == 1

    @pytest.mark.asyncio
    async def test_resume_keeps_cost_per_phase(
        self, build: Builder, subject: Subject, session_store: SessionStore
    ) -> None:
        """Test that checkpointed phase costs carry into the resumed breakdown."""
        orchestrator = build(standard_agents(auditor_cost=1.0))
        done = {
            "deck_extractor": AgentResult.ok("deck_extractor", cost=0.2),
            "context_engine": AgentResult.ok("context_engine"),
        }
        session = await self.crash_after(
            orchestrator,
            session_store,
            subject,
            Phase.GATHERING,
            done,
            cost_by_phase={"extraction": 0.2, "gathering": 0.0},
        )

        result = await orchestrator.resume_analysis(session.id, subject, RunOptions())

        by_phase = result.summary["cost"]["by_phase"]
        assert by_phase["extraction"] == pytest.approx(0.2)
        assert by_phase["analysis"] == pytest.approx(1.0)
        assert result.total_cost == pytest.approx(1.2)

    @pytest.mark.asyncio
    async def test_resume_runs_only_pending(
        self, build: Builder, subject: Subject, session_store: SessionStore
    ) -> None:
        """Test that completed and failed agents are not rerun."""
        calls: Calls = {}
        orchestrator = build(standard_agents(calls))
        done = {
            "deck_extractor": AgentResult.ok("deck_extractor", cost=0.2),
            "context_engine": AgentResult.ok("context_engine"),
            "financial_auditor": AgentResult.ok(
                "financial_auditor", {"overall_score": 70, "findings": ["a", "b"]}, cost=1.0
            ),
        }
        session = await self.crash_after(orchestrator, session_store, subject, Phase.ANALYSIS, done)

        [interrupted] = await orchestrator.find_interrupted()
        assert interrupted.session.id == session.id
        assert interrupted.can_resume

        result = await orchestrator.resume_analysis(session.id, subject)

        assert result.success
        assert result.session_id == session.id
        assert calls == {"team_investigator": 1, "devils_advocate": 1, "synthesis_deal_scorer": 1}
        assert set(result.results) == {
            "deck_extractor",
            "context_engine",
            "financial_auditor",
            "team_investigator",
            "devils_advocate",
            "synthesis_deal_scorer",
        }
        assert result.total_cost == pytest.approx(1.2)

        path = await path_of(session_store, session.id)
        assert path == [Phase.ANALYSIS, Phase.DEBATE, Phase.SYNTHESIS, Phase.COMPLETED]
        stored = await session_store.get_session(session.id)
        assert stored is not None
        assert stored.status is SessionStatus.COMPLETED
        assert await orchestrator.find_interrupted() == []

    @pytest.mark.asyncio
    async def test_resume_keeps_failures(
        self, build: Builder, subject: Subject, session_store: SessionStore
    ) -> None:
        """Test that an agent that failed before the crash is not retried."""
        from dde.types import FailureKind

        calls: Calls = {}
        orchestrator = build(standard_agents(calls))
        done = {
            "deck_extractor": AgentResult.ok("deck_extractor"),
            "context_engine": AgentResult.failure(
                "context_engine", FailureKind.TIMEOUT, "Timed out after 5s"
            ),
        }
        session = await self.crash_after(orchestrator, session_store, subject, Phase.GATHERING, done)

        result = await orchestrator.resume_analysis(session.id, subject)

        assert "context_engine" not in calls
        assert not result.results["context_engine"].success
        assert result.summary["required_failures"] == ["context_engine"]

    @pytest.mark.asyncio
    async def test_resume_recomputes_enrichment(
        self, build: Builder, subject: Subject, session_store: SessionStore
    ) -> None:
        """Test that enrichment is rebuilt when resuming past gathering."""
        seen: dict[str, AgentContext] = {}

        async def enricher(s: Subject) -> dict[str, Any]:
            return {"web": "fresh"}

        orchestrator = build(standard_agents(seen=seen), enricher=enricher)
        done = {
            "deck_extractor": AgentResult.ok("deck_extractor"),
            "context_engine": AgentResult.ok("context_engine"),
        }
        session = await self.crash_after(orchestrator, session_store, subject, Phase.ANALYSIS, done)

        await orchestrator.resume_analysis(session.id, subject)

        assert seen["team_investigator"].enrichment == {"web": "fresh"}

    @pytest.mark.asyncio
    async def test_resume_uses_session_mode(
        self, build: Builder, subject: Subject, session_store: SessionStore
    ) -> None:
        """Test that a resumed run keeps the mode it started with."""
        calls: Calls = {}
        orchestrator = build(standard_agents(calls))
        session = await self.crash_after(
            orchestrator, session_store, subject, Phase.INIT, {}, mode=AnalysisMode.EXPRESS
        )

        result = await orchestrator.resume_analysis(
            session.id, subject, RunOptions(mode=AnalysisMode.FULL)
        )

        assert result.summary["mode"] == "express"
        assert "synthesis_deal_scorer" not in calls

    @pytest.mark.asyncio
    async def test_no_checkpoint_marks_failed(
        self, build: Builder, subject: Subject, session_store: SessionStore
    ) -> None:
        """Test that a session without checkpoints cannot be resumed."""
        orchestrator = build(standard_agents())
        session = AnalysisSession.create(subject, AnalysisMode.FULL, 6)
        await session_store.create_session(session)

        [interrupted] = await orchestrator.find_interrupted()
        assert not interrupted.can_resume

        with pytest.raises(RecoveryError):
            await orchestrator.resume_analysis(session.id, subject)

        stored = await session_store.get_session(session.id)
        assert stored is not None
        assert stored.status is SessionStatus.FAILED

    @pytest.mark.asyncio
    async def test_schema_drift(
        self, build: Builder, subject: Subject, session_store: SessionStore
    ) -> None:
        """Test a checkpoint naming an agent that was since removed."""
        orchestrator = build(standard_agents())
        done = {"legacy_scraper": AgentResult.ok("legacy_scraper")}
        session = AnalysisSession.create(subject, AnalysisMode.FULL, 7)
        await session_store.create_session(session)
        await session_store.save_checkpoint(
            build_checkpoint(
                session_id=session.id,
                state=Phase.GATHERING,
                required_agents=["legacy_scraper"],
                results=done,
                total_cost=0.0,
                cost_by_agent={},
                start_time=session.started_at,
            )
        )

        with pytest.raises(SchemaDriftError):
            await orchestrator.resume_analysis(session.id, subject)

        stored = await session_store.get_session(session.id)
        assert stored is not None
        assert stored.status is SessionStatus.FAILED

    @pytest.mark.asyncio
    async def test_completed_session_not_resumable(
        self, build: Builder, subject: Subject
    ) -> None:
        """Test that only running sessions can be resumed."""
        orchestrator = build(standard_agents())
        result = await orchestrator.run_analysis(subject, RunOptions())

        with pytest.raises(RecoveryError):
            await orchestrator.resume_analysis(result.session_id, subject)

    @pytest.mark.asyncio
    async def test_subject_mismatch(
        self, build: Builder, subject: Subject, session_store: SessionStore
    ) -> None:
        """Test that a session is resumed only for its own subject."""
        orchestrator = build(standard_agents())
        session = await self.crash_after(orchestrator, session_store, subject, Phase.INIT, {})

        with pytest.raises(RecoveryError):
            await orchestrator.resume_analysis(session.id, Subject(id="other", name="Other"))

    @pytest.mark.asyncio
    async def test_unknown_session(self, build: Builder, subject: Subject) -> None:
        """Test resuming a session that does not exist."""
        orchestrator = build(standard_agents())

        with pytest.raises(RecoveryError):
            await orchestrator.resume_analysis("ses_missing", subject)

    @pytest.mark.asyncio
    async def test_cancel_interrupted(
        self, build: Builder, subject: Subject, session_store: SessionStore
    ) -> None:
        """Test abandoning an interrupted session."""
        orchestrator = build(standard_agents())
        session = await self.crash_after(orchestrator, session_store, subject, Phase.INIT, {})

        await orchestrator.cancel_interrupted(session.id, "stale")

        stored = await session_store.get_session(session.id)
        assert stored is not None
        assert stored.status is SessionStatus.FAILED
        assert stored.error == "stale"
        with pytest.raises(RecoveryError):
            await orchestrator.cancel_interrupted(session.id)
