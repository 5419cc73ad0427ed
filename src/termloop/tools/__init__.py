"""Built-in tools."""

from .registry import ToolDescriptor, ToolRegistry, ToolRoute, build_builtin_registry

__all__ = ["ToolDescriptor", "ToolRegistry", "ToolRoute", "build_builtin_registry"]
