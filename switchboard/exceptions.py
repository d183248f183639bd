"""Custom exception hierarchy for switchboard.

Separates the error families the framework distinguishes: registration
errors raised synchronously to whoever calls ``register``, plugin
lifecycle errors that must surface to the caller of load/unload/reload,
and configuration/storage errors from the host collaborators.

Guard rejections (cooldown, permissions, inhibitors) are ordinary
control flow and have no exception type.
"""

from enum import Enum
from typing import Any, List, Optional


class ErrorCategory(str, Enum):
    """Classification of errors for retry decisions."""
    TRANSIENT = "transient"          # Worth retrying (storage hiccup, network)
    PERMANENT = "permanent"          # Not worth retrying (bad definition)
    INFRASTRUCTURE = "infrastructure"  # Missing directory, bad config file


class SwitchboardError(Exception):
    """Base exception for all switchboard errors.

    Attributes:
        message: Human-readable error description.
        category: Error classification for retry/escalation decisions.
        module: Originating module name (e.g. "commands.base").
        context: Arbitrary key-value pairs for structured logging.
    """

    def __init__(
        self,
        message: str = "",
        *,
        category: ErrorCategory = ErrorCategory.PERMANENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.message = message
        self.category = category
        self.module = module
        self.context = context
        super().__init__(message)

    @property
    def is_retryable(self) -> bool:
        """Whether this error is worth retrying."""
        return self.category == ErrorCategory.TRANSIENT

    def __str__(self) -> str:
        parts = [self.message or self.__class__.__name__]
        if self.module:
            parts.append(f"[module={self.module}]")
        if self.context:
            ctx = ", ".join(f"{k}={v}" for k, v in self.context.items())
            parts.append(f"({ctx})")
        return " ".join(parts)

    def __repr__(self) -> str:
        cls = self.__class__.__name__
        return (
            f"{cls}({self.message!r}, category={self.category.value!r}, "
            f"module={self.module!r})"
        )


# ---------------------------------------------------------------------------
# Registry exceptions
# ---------------------------------------------------------------------------

class RegistrationError(SwitchboardError):
    """A command could not be registered.

    Raised for duplicate names, name/alias collisions and overload
    commands declared without any pattern.

    Attributes:
        command: Name of the command being registered.
    """

    def __init__(
        self,
        message: str = "",
        *,
        command: Optional[str] = None,
        category: ErrorCategory = ErrorCategory.PERMANENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.command = command
        super().__init__(
            message, category=category, module=module or "commands.base", **context
        )


# ---------------------------------------------------------------------------
# Plugin lifecycle exceptions
# ---------------------------------------------------------------------------

class PluginError(SwitchboardError):
    """Error raised by a plugin lifecycle operation.

    Attributes:
        plugin: Name of the plugin involved (if known).
    """

    def __init__(
        self,
        message: str = "",
        *,
        plugin: Optional[str] = None,
        category: ErrorCategory = ErrorCategory.PERMANENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.plugin = plugin
        super().__init__(
            message, category=category, module=module or "plugins", **context
        )


class PluginDependencyError(PluginError):
    """A plugin's dependencies are missing, cyclic, or still depended upon.

    Attributes:
        missing: Dependency names that were not loaded.
        dependents: Loaded plugins that block an unload.
    """

    def __init__(
        self,
        message: str = "",
        *,
        plugin: Optional[str] = None,
        missing: Optional[List[str]] = None,
        dependents: Optional[List[str]] = None,
        category: ErrorCategory = ErrorCategory.PERMANENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.missing = list(missing or [])
        self.dependents = list(dependents or [])
        super().__init__(
            message, plugin=plugin, category=category, module=module, **context
        )


class PluginStateError(PluginError):
    """The requested transition is not valid from the plugin's current state."""


class PluginLoadError(PluginError):
    """A plugin failed to import, ``on_load``/``on_unload`` raised, or its
    commands collided with the registry.

    The original exception is chained as ``__cause__``.
    """


# ---------------------------------------------------------------------------
# Configuration / storage exceptions
# ---------------------------------------------------------------------------

class ConfigurationError(SwitchboardError):
    """Invalid or missing configuration.

    Defaults to INFRASTRUCTURE because config issues are environmental
    and won't resolve by retrying.
    """

    def __init__(
        self,
        message: str = "",
        *,
        setting_name: Optional[str] = None,
        category: ErrorCategory = ErrorCategory.INFRASTRUCTURE,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.setting_name = setting_name
        super().__init__(
            message, category=category, module=module or "config", **context
        )


class StorageError(SwitchboardError):
    """Error reading or writing the key/value persistence collaborator.

    Attributes:
        operation: The store operation that failed ("get" or "set").
    """

    def __init__(
        self,
        message: str = "",
        *,
        operation: Optional[str] = None,
        category: ErrorCategory = ErrorCategory.TRANSIENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.operation = operation
        super().__init__(
            message, category=category, module=module or "store", **context
        )
