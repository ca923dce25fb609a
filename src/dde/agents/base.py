"""
Base classes for agents.

This module implements:
- AgentContext: read-only inputs for one agent execution
- Agent: abstract base class every analysis agent implements
- FunctionAgent: adapter turning an async callable into an Agent
- AgentRegistry: explicit name -> agent mapping, built once per engine

An agent either returns an AgentResult or raises; the scheduler turns
exceptions and timeouts into failed results.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from dde.exceptions import ConfigurationError
from dde.facts.current import format_facts_for_agents
from dde.logging import get_logger
from dde.types import WORK_PHASES, AgentResult, AnalysisMode, CurrentFact, Phase, Subject

logger = get_logger(__name__)


@dataclass(frozen=True)
class AgentContext:
    """What an agent sees when it runs.

    previous_results holds every result recorded before the agent's batch
    started, including failures of its dependencies.
    """

    session_id: str
    subject: Subject
    mode: AnalysisMode
    phase: Phase
    previous_results: Mapping[str, AgentResult] = field(
        default_factory=lambda: MappingProxyType({})
    )
    facts: tuple[CurrentFact, ...] = ()
    enrichment: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    def result_of(self, agent_name: str) -> AgentResult | None:
        return self.previous_results.get(agent_name)

    def data_of(self, agent_name: str) -> dict[str, Any] | None:
        """Data of a dependency, or None if it failed or never ran."""
        result = self.previous_results.get(agent_name)
        if result is None or not result.success:
            return None
        return result.data

    @property
    def facts_markdown(self) -> str:
        return format_facts_for_agents(self.facts)


class Agent(ABC):
    """Abstract base class for diligence agents.

    Subclasses declare their phase and the agents whose results they need.
    An agent that is not required may fail without failing the run.
    """

    dependencies: tuple[str, ...] = ()
    required: bool = True

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique name of this agent."""
        ...

    @property
    @abstractmethod
    def phase(self) -> Phase:
        """Phase in which this agent runs."""
        ...

    @abstractmethod
    async def run(self, context: AgentContext) -> AgentResult:
        """Execute the agent.

        Args:
            context: Subject, prior results and current facts.

        Returns:
            The agent's result. Facts to record go in AgentResult.facts.
        """
        ...

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name!r}, phase={self.phase.value!r})"


AgentFn = Callable[[AgentContext], Awaitable[AgentResult]]


class FunctionAgent(Agent):
    """Agent backed by a plain async function."""

    def __init__(
        self,
        name: str,
        phase: Phase,
        fn: AgentFn,
        dependencies: Iterable[str] = (),
        required: bool = True,
    ) -> None:
        self._name = name
        self._phase = phase
        self._fn = fn
        self.dependencies = tuple(dependencies)
        self.required = required

    @property
    def name(self) -> str:
        return self._name

    @property
    def phase(self) -> Phase:
        return self._phase

    async def run(self, context: AgentContext) -> AgentResult:
        return await self._fn(context)


class AgentRegistry:
    """Explicit registry of the agents an engine can schedule."""

    def __init__(self, agents: Iterable[Agent] = ()) -> None:
        self._agents: dict[str, Agent] = {}
        for agent in agents:
            self.register(agent)

    def register(self, agent: Agent) -> None:
        if agent.name in self._agents:
            raise ConfigurationError(
                "Agent registered twice", context={"agent": agent.name}
            )
        if agent.phase not in WORK_PHASES:
            raise ConfigurationError(
                "Agents must run in a work phase",
                context={"agent": agent.name, "phase": agent.phase.value},
            )
        self._agents[agent.name] = agent
        logger.debug("Registered agent", agent=agent.name, phase=agent.phase.value)

    def get(self, name: str) -> Agent:
        try:
            return self._agents[name]
        except KeyError:
            raise ConfigurationError("Unknown agent", context={"agent": name}) from None

    def __contains__(self, name: object) -> bool:
        return name in self._agents

    def __iter__(self) -> Iterator[Agent]:
        return iter(self._agents.values())

    def __len__(self) -> int:
        return len(self._agents)

    @property
    def names(self) -> list[str]:
        return list(self._agents)

    def for_phase(self, phase: Phase) -> list[Agent]:
        return [a for a in self._agents.values() if a.phase is phase]

    def for_mode(self, mode: AnalysisMode) -> list[Agent]:
        """Agents whose phase the mode executes, in registration order."""
        phases = set(mode.phases)
        return [a for a in self._agents.values() if a.phase in phases]

    def dependency_map(self, names: Iterable[str] | None = None) -> dict[str, tuple[str, ...]]:
        selected = self._agents if names is None else {n: self.get(n) for n in names}
        return {name: tuple(agent.dependencies) for name, agent in selected.items()}

    def unknown_dependencies(self) -> dict[str, list[str]]:
        """Dependencies that name no registered agent."""
        missing: dict[str, list[str]] = {}
        for agent in self._agents.values():
            unknown = [d for d in agent.dependencies if d not in self._agents]
            if unknown:
                missing[agent.name] = unknown
        return missing
