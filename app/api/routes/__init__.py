"""Route modules exposed by the API package."""

from . import tickets, workflows

__all__ = ["tickets", "workflows"]
