"""
Error taxonomy for the bandit core.
"""


class BanditError(Exception):
    """Base class for bandit errors."""


class ConfigurationError(BanditError):
    """A persisted model or configuration value is malformed."""


class ComputationError(BanditError):
    """A linear algebra step produced an undefined or non-finite result."""

    def __init__(self, message: str, arm_id: str = None):
        super().__init__(message)
        self.arm_id = arm_id


class PersistenceError(BanditError):
    """The persistence backend failed to read or write."""
