from .registry import PermissionCallback, ToolOutcome, ToolRegistry, integer_prop, string_prop

__all__ = ["ToolRegistry", "ToolOutcome", "PermissionCallback", "string_prop", "integer_prop"]
