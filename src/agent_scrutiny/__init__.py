"""Agent Scrutiny: review annotations and file-change notifications for agent hand-off."""

__version__ = "0.1.0"
