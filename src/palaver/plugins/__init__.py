"""Built-in plugins."""

from palaver.plugins.console import ConsolePlugin

__all__ = ["ConsolePlugin"]
