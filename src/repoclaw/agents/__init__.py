"""Agent runner interface and the HTTP runner."""

from src.repoclaw.agents.base import AgentContext, AgentRunner, BaseAgentRunner
from src.repoclaw.agents.http import HttpAgentRunner

__all__ = [
    "AgentContext",
    "AgentRunner",
    "BaseAgentRunner",
    "HttpAgentRunner",
]
