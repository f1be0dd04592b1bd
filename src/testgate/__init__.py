"""testgate - project-isolated test mode gate for assistant tool calls."""

__version__ = "0.1.0"
