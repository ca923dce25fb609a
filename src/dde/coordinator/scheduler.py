"""
Dependency-aware batch scheduler.

Agents are layered into batches with Kahn's algorithm: every agent in a
batch depends only on agents in earlier batches (or on agents already
satisfied before scheduling started). If the remaining agents can make no
progress, because of a cycle or a dependency on an agent that is not
scheduled, they all go into one final degraded batch so every agent still
runs exactly once.

Within a batch agents start together and the batch is joined before the
next one begins. A failing or timed-out agent becomes a failed
AgentResult; it never stops its batch-mates, and its dependents still run
and see the failure in their context.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Awaitable, Callable, Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field, replace
from types import MappingProxyType

from dde.agents.base import Agent, AgentContext
from dde.exceptions import DuplicateResultError
from dde.logging import get_logger, log_context
from dde.types import AgentResult, FailureKind, TerminationReason

logger = get_logger(__name__)

HaltCheck = Callable[[], TerminationReason | None]
ContextFactory = Callable[[Mapping[str, AgentResult]], Awaitable[AgentContext]]
AgentCallback = Callable[[AgentResult], Awaitable[None] | None]
BatchCallback = Callable[[int, list[AgentResult]], Awaitable[None]]


@dataclass(frozen=True)
class ExecutionPlan:
    """Ordered batches of agent names."""

    batches: tuple[tuple[str, ...], ...]
    degraded: bool = False
    unresolved: tuple[str, ...] = ()

    @property
    def agent_names(self) -> list[str]:
        return [name for batch in self.batches for name in batch]


def plan_batches(
    agents: Sequence[str],
    dependencies: Mapping[str, Iterable[str]],
    satisfied: Iterable[str] = (),
) -> ExecutionPlan:
    """Layer agents into dependency-respecting batches.

    Args:
        agents: Agent names to schedule; order is kept within each batch.
        dependencies: Agent name -> names it depends on.
        satisfied: Names treated as already complete (earlier phases,
            checkpointed work, agents skipped by the mode).

    Returns:
        The plan. ``degraded`` is set when a cycle or missing dependency
        forced the remaining agents into one flat batch.
    """
    remaining = list(dict.fromkeys(agents))
    done = set(satisfied)
    deps = {name: tuple(dependencies.get(name, ())) for name in remaining}
    batches: list[tuple[str, ...]] = []

    while remaining:
        ready = [name for name in remaining if all(d in done for d in deps[name])]
        if not ready:
            blocking = {
                name: [d for d in deps[name] if d not in done] for name in remaining
            }
            logger.warning(
                "Unresolvable agent dependencies; running remaining agents in one batch",
                agents=remaining,
                blocking=blocking,
            )
            batches.append(tuple(remaining))
            return ExecutionPlan(
                batches=tuple(batches), degraded=True, unresolved=tuple(remaining)
            )
        batches.append(tuple(ready))
        done.update(ready)
        ready_set = set(ready)
        remaining = [name for name in remaining if name not in ready_set]

    return ExecutionPlan(batches=tuple(batches))


class ResultMap(Mapping[str, AgentResult]):
    """Results of one run, keyed by agent name; each key is written once."""

    def __init__(self, initial: Mapping[str, AgentResult] | None = None) -> None:
        self._results: dict[str, AgentResult] = dict(initial or {})

    def record(self, result: AgentResult) -> None:
        if result.agent_name in self._results:
            raise DuplicateResultError(
                "Result already recorded for agent",
                context={"agent": result.agent_name},
            )
        self._results[result.agent_name] = result

    def __getitem__(self, name: str) -> AgentResult:
        return self._results[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._results)

    def __len__(self) -> int:
        return len(self._results)

    def snapshot(self) -> Mapping[str, AgentResult]:
        """Read-only copy, unaffected by later writes."""
        return MappingProxyType(dict(self._results))

    @property
    def succeeded(self) -> list[str]:
        return [n for n, r in self._results.items() if r.success]

    @property
    def failed(self) -> list[str]:
        return [n for n, r in self._results.items() if not r.success]

    @property
    def total_cost(self) -> float:
        return sum(r.cost for r in self._results.values())


@dataclass
class ScheduleOutcome:
    plan: ExecutionPlan
    executed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    halted: TerminationReason | None = None


class BatchScheduler:
    """Runs agents batch by batch with per-agent timeouts."""

    def __init__(self, agent_timeout: float, max_concurrency: int = 12) -> None:
        self.agent_timeout = agent_timeout
        self.max_concurrency = max_concurrency

    async def run(
        self,
        agents: Sequence[Agent],
        results: ResultMap,
        context_factory: ContextFactory,
        *,
        satisfied: Iterable[str] = (),
        should_halt: HaltCheck | None = None,
        on_agent_complete: AgentCallback | None = None,
        after_batch: BatchCallback | None = None,
    ) -> ScheduleOutcome:
        """Plan and execute agents.

        should_halt is consulted before every batch; once it returns a
        reason no further batch starts. A batch already running is never
        interrupted. after_batch runs after the join and before the next
        batch, so its side effects (fact submission, checkpointing) are
        visible to dependents.
        """
        by_name = {agent.name: agent for agent in agents}
        plan = plan_batches(
            list(by_name),
            {name: agent.dependencies for name, agent in by_name.items()},
            satisfied,
        )
        outcome = ScheduleOutcome(plan=plan)

        for index, batch in enumerate(plan.batches):
            if should_halt is not None:
                reason = should_halt()
                if reason is not None:
                    outcome.halted = reason
                    outcome.skipped = [n for b in plan.batches[index:] for n in b]
                    logger.warning(
                        "Halting before batch",
                        batch=index,
                        reason=reason.value,
                        skipped=outcome.skipped,
                    )
                    break

            context = await context_factory(results.snapshot())
            logger.info("Starting batch", batch=index, agents=list(batch))
            batch_results = await self.run_batch(
                [by_name[name] for name in batch], context, results, on_agent_complete
            )
            outcome.executed.extend(batch)
            logger.info(
                "Batch finished",
                batch=index,
                succeeded=sum(1 for r in batch_results if r.success),
                failed=sum(1 for r in batch_results if not r.success),
            )

            if after_batch is not None:
                await after_batch(index, batch_results)

        return outcome

    async def run_batch(
        self,
        agents: Sequence[Agent],
        context: AgentContext,
        results: ResultMap,
        on_agent_complete: AgentCallback | None = None,
    ) -> list[AgentResult]:
        """Run one batch concurrently and record each result as it completes."""
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def execute(agent: Agent) -> AgentResult:
            async with semaphore:
                result = await self.execute_agent(agent, context)
            results.record(result)
            if on_agent_complete is not None:
                try:
                    maybe = on_agent_complete(result)
                    if inspect.isawaitable(maybe):
                        await maybe
                except Exception:
                    logger.exception("Agent completion callback failed", agent=agent.name)
            return result

        gathered = await asyncio.gather(
            *[execute(agent) for agent in agents],
            return_exceptions=True,
        )

        batch_results: list[AgentResult] = []
        for item in gathered:
            if isinstance(item, BaseException):
                raise item
            batch_results.append(item)
        return batch_results

    async def execute_agent(self, agent: Agent, context: AgentContext) -> AgentResult:
        """Run one agent under the timeout, converting failures to results."""
        start = time.perf_counter()

        def elapsed_ms() -> float:
            return (time.perf_counter() - start) * 1000

        with log_context(agent=agent.name):
            try:
                async with asyncio.timeout(self.agent_timeout):
                    result = await agent.run(context)
            except asyncio.TimeoutError:
                logger.warning("Agent timed out", timeout_seconds=self.agent_timeout)
                return AgentResult.failure(
                    agent.name,
                    FailureKind.TIMEOUT,
                    f"Timed out after {self.agent_timeout}s",
                    execution_time_ms=elapsed_ms(),
                )
            except Exception as e:
                logger.error("Agent failed", error=str(e), exc_info=True)
                return AgentResult.failure(
                    agent.name,
                    FailureKind.EXCEPTION,
                    f"{type(e).__name__}: {e}",
                    execution_time_ms=elapsed_ms(),
                )

            if not isinstance(result, AgentResult):
                logger.error("Agent returned an invalid result", type=type(result).__name__)
                return AgentResult.failure(
                    agent.name,
                    FailureKind.INVALID_RESULT,
                    f"Expected AgentResult, got {type(result).__name__}",
                    execution_time_ms=elapsed_ms(),
                )

            logger.debug("Agent finished", success=result.success, cost=result.cost)
            return replace(result, agent_name=agent.name, execution_time_ms=elapsed_ms())
