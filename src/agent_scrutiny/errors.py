"""Typed failures raised by the annotation store, watch registry and hand-off."""

from __future__ import annotations


class ScrutinyError(Exception):
    """Base class for all agent-scrutiny errors."""


class ValidationError(ScrutinyError):
    """Malformed or logically inconsistent feedback input."""


class NotFoundError(ScrutinyError):
    """A mutation targeted a key absent from the expected collection."""


class ConflictError(ScrutinyError):
    """A mutation violates a lifecycle rule."""


class StorageIOError(ScrutinyError):
    """A backing file could not be written."""


class WatcherError(ScrutinyError):
    """A native directory watcher failed to start."""


class AgentHandoffError(ScrutinyError):
    """The agent session could not be reached."""
