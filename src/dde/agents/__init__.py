"""
Agent package.

Agents are external units of analysis work. The engine only knows the
contract defined here:
- Agent: name, phase, dependencies and an async run(context)
- AgentContext: what an agent sees when it runs
- AgentRegistry: the explicit set of agents an orchestrator schedules
"""

from dde.agents.base import Agent, AgentContext, AgentRegistry, FunctionAgent

__all__ = ["Agent", "AgentContext", "AgentRegistry", "FunctionAgent"]
