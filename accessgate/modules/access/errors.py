"""Exception hierarchy for the access-control engine.

Configuration errors are raised by administrative writes and by evaluation
of malformed stored configuration. ``AccessControlEngine.check_access``
turns them into denied decisions; only the administrative boundary sees
them as exceptions.
"""


class AccessControlError(Exception):
    """Base class for access-control errors."""


class ConfigurationError(AccessControlError, ValueError):
    """Stored or submitted configuration cannot be evaluated safely."""


class InvalidConditionError(ConfigurationError):
    """A condition uses an unknown operator or an unusable comparison value."""


class ConditionDepthError(ConfigurationError):
    """A condition tree nests deeper than the configured maximum."""

    def __init__(self, max_depth: int) -> None:
        super().__init__(f"Condition tree exceeds maximum depth of {max_depth}")
        self.max_depth = max_depth


class InvalidPermissionError(ConfigurationError):
    """A permission string is not of the form ``resource:action``."""


class RoleHierarchyCycleError(ConfigurationError):
    """Saving a role would introduce a cycle in the parent chain."""

    def __init__(self, cycle: list[str]) -> None:
        super().__init__(f"Role hierarchy cycle: {' -> '.join(cycle)}")
        self.cycle = cycle


class InvalidRequestAttributesError(AccessControlError, ValueError):
    """Request attributes violate the attribute registry."""


class NotFoundError(AccessControlError, LookupError):
    """An administrative lookup did not find an active record."""


class BackendUnavailableError(AccessControlError, RuntimeError):
    """Configuration could not be loaded from the repository."""
