from .registry import ToolRegistry
from .builtin import register_builtin_tools
__all__ = ["ToolRegistry", "register_builtin_tools"]
