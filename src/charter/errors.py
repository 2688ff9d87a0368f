from __future__ import annotations


class CharterError(RuntimeError):
    """Base class for orchestrator failures."""


class ConfigurationError(CharterError):
    """Raised when configuration cannot be used to build a runnable plan."""


class PlanValidationError(ConfigurationError):
    """Raised when plan input does not have the expected structure."""


class StateError(CharterError):
    """Raised when task-state operations fail."""


class PlanBlockedError(StateError):
    """Raised when a blocked plan is advanced without being unblocked."""
