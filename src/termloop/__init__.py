"""termloop - the run loop of a terminal assistant."""

from .config import Settings, load_settings
from .core import AgentEngine, RunContext, RunResult, SessionDispatcher, StartMode

__version__ = "0.1.0"

__all__ = ["AgentEngine", "RunContext", "RunResult", "SessionDispatcher", "Settings", "StartMode", "load_settings"]
