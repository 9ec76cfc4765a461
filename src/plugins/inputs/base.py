"""
Input Plugin Base - Abstract interface for resource input sources.

Input plugins provide mechanisms for users to declare resources:
- HTTP API: REST endpoints
- GitOps: Watch Git repositories
- File watcher: Watch local files

Declared resources are written to the resource store; reconciler plugins
pick them up from there.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass
class ValidationResult:
    """Result of a validation operation."""

    is_valid: bool
    error_message: Optional[str] = None


def validate_resource_type(resource_type: str) -> ValidationResult:
    """
    Validate that a reconciler is registered for a resource type.

    Input plugins use this before storing a resource nobody would reconcile.

    Args:
        resource_type: The resource type name (e.g. 'OpensearchComponentTemplate')

    Returns:
        ValidationResult with is_valid=True if a reconciler handles the type,
        or is_valid=False with an error message if not
    """
    from plugins.registry import get_registry

    registry = get_registry()
    if not registry.has_reconciler_for_resource_type(resource_type):
        return ValidationResult(
            is_valid=False,
            error_message=f"No reconciler plugin registered for resource "
            f"type '{resource_type}'",
        )
    return ValidationResult(is_valid=True)


class InputPlugin(ABC):
    """
    Abstract base class for input plugins.

    Input plugins are responsible for receiving resource declarations
    from external sources and storing them.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this plugin (e.g., 'http', 'gitops')."""
        pass

    @property
    @abstractmethod
    def version(self) -> str:
        """Plugin version string."""
        pass

    @abstractmethod
    async def initialize(self, config: Dict[str, Any]) -> None:
        """
        Initialize the plugin with configuration.

        Called once when the plugin is loaded.

        Args:
            config: Plugin-specific configuration dictionary
        """
        pass

    @abstractmethod
    async def start(self) -> None:
        """
        Start the input plugin.

        For HTTP plugins, this starts the HTTP server and returns when it
        stops.
        """
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Stop the input plugin gracefully."""
        pass

    @abstractmethod
    async def health_check(self) -> tuple[bool, str]:
        """
        Check if the input plugin is healthy.

        Returns:
            Tuple of (is_healthy, status_message).
        """
        pass

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """
        Load plugin-specific configuration from environment variables.

        Override this method in subclasses to define how the plugin
        loads its configuration from the environment.
        """
        return {}

    def set_db_manager(self, db_manager: Any) -> None:
        """
        Set the database manager for plugins that need database access.

        Args:
            db_manager: The DatabaseManager instance
        """
        pass

    def set_event_bus(self, event_bus: Any) -> None:
        """
        Set the event bus for plugins that stream events.

        Args:
            event_bus: The EventBus instance
        """
        pass
