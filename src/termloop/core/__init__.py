"""Orchestration core: run state, engine, executors and recovery."""

from .dispatcher import SessionDispatcher
from .engine import AgentEngine, RunResult
from .recovery import RollbackResult, SessionRecovery
from .state import Node, RunContext, RunState, StartMode

__all__ = [
    "AgentEngine",
    "Node",
    "RollbackResult",
    "RunContext",
    "RunResult",
    "RunState",
    "SessionDispatcher",
    "SessionRecovery",
    "StartMode",
]
