"""Agent module - the reasoning engine adapter."""

from mapache.agent.runner import AgentRunner, RunResult

__all__ = ["AgentRunner", "RunResult"]
