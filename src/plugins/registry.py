"""
Plugin Registry - Discovery and registration of plugins.

This module provides the central registry for input and reconciler plugins,
handling discovery, registration, and instantiation.
"""

import logging
from importlib.metadata import entry_points
from typing import Any, Dict, Optional, Type

from plugins.inputs.base import InputPlugin
from plugins.reconcilers.base import ReconcilerPlugin

logger = logging.getLogger(__name__)

RECONCILER_ENTRY_POINT_GROUP = "opensearch_template_operator.reconcilers"


class PluginRegistry:
    """
    Central registry for all plugins.

    Handles discovery, registration, and instantiation of input and
    reconciler plugins.
    """

    def __init__(self):
        # Registered plugin classes (not instantiated)
        self._input_plugins: Dict[str, Type[InputPlugin]] = {}
        self._reconciler_plugins: Dict[str, Type[ReconcilerPlugin]] = {}

        # Cached plugin metadata to avoid repeated instantiation
        self._input_plugin_info: Dict[str, Dict[str, str]] = {}
        self._reconciler_plugin_info: Dict[str, Dict[str, Any]] = {}

        # Instantiated plugin instances
        self._input_instances: Dict[str, InputPlugin] = {}
        self._reconciler_instances: Dict[str, ReconcilerPlugin] = {}

        # Plugin configurations loaded from environment
        self._input_plugin_configs: Dict[str, Dict[str, Any]] = {}

        # Mapping from resource type name to reconciler plugin name
        self._resource_type_to_reconciler: Dict[str, str] = {}

    # Registration methods

    def register_input_plugin(self, plugin_class: Type[InputPlugin]) -> None:
        """
        Register an input plugin class.

        Args:
            plugin_class: The InputPlugin subclass to register
        """
        temp_instance = plugin_class()
        name = temp_instance.name
        version = temp_instance.version

        if name in self._input_plugins:
            logger.warning(f"Overwriting existing input plugin: {name}")

        self._input_plugins[name] = plugin_class
        self._input_plugin_info[name] = {"name": name, "version": version}
        self._input_plugin_configs[name] = plugin_class.load_config_from_env()
        logger.info(f"Registered input plugin: {name} v{version}")

    def register_reconciler_plugin(
        self, plugin_class: Type[ReconcilerPlugin]
    ) -> None:
        """
        Register a reconciler plugin class.

        Args:
            plugin_class: The ReconcilerPlugin subclass to register

        Raises:
            ValueError: If a resource type is already claimed by another reconciler
        """
        temp_instance = plugin_class()
        name = temp_instance.name
        resource_types = temp_instance.resource_types

        if name in self._reconciler_plugins:
            logger.warning(f"Overwriting existing reconciler plugin: {name}")

        for rt in resource_types:
            existing = self._resource_type_to_reconciler.get(rt)
            if existing and existing != name:
                raise ValueError(
                    f"Resource type '{rt}' is already claimed by "
                    f"reconciler '{existing}'. Cannot register '{name}'."
                )

        self._reconciler_plugins[name] = plugin_class
        self._reconciler_instances.pop(name, None)
        self._reconciler_plugin_info[name] = {
            "name": name,
            "resource_types": resource_types,
        }

        for rt in resource_types:
            self._resource_type_to_reconciler[rt] = name

        logger.info(
            f"Registered reconciler plugin: {name} "
            f"(resource types: {', '.join(resource_types)})"
        )

    # Instantiation methods

    async def get_input_plugin(
        self, name: str, config: Optional[Dict[str, Any]] = None
    ) -> InputPlugin:
        """
        Get an initialized input plugin instance.

        Args:
            name: The plugin name to retrieve
            config: Optional configuration to pass to initialize()

        Raises:
            ValueError: If the plugin name is not registered
        """
        if name not in self._input_plugins:
            available = ", ".join(self._input_plugins.keys()) or "none"
            raise ValueError(
                f"Unknown input plugin: {name}. Available plugins: {available}"
            )

        if name not in self._input_instances:
            plugin = self._input_plugins[name]()
            await plugin.initialize(config or {})
            self._input_instances[name] = plugin
            logger.info(f"Initialized input plugin: {name}")

        return self._input_instances[name]

    def get_reconciler_plugin(self, name: str) -> ReconcilerPlugin:
        """
        Get a reconciler plugin instance (not async, no initialize step).

        Raises:
            ValueError: If the reconciler name is not registered
        """
        if name not in self._reconciler_plugins:
            available = ", ".join(self._reconciler_plugins.keys()) or "none"
            raise ValueError(
                f"Unknown reconciler plugin: {name}. "
                f"Available reconcilers: {available}"
            )

        if name not in self._reconciler_instances:
            self._reconciler_instances[name] = self._reconciler_plugins[name]()
            logger.info(f"Instantiated reconciler plugin: {name}")

        return self._reconciler_instances[name]

    # Discovery methods

    def list_input_plugins(self) -> list[str]:
        """List all registered input plugin names."""
        return list(self._input_plugins.keys())

    def list_reconciler_plugins(self) -> list[str]:
        """List all registered reconciler plugin names."""
        return list(self._reconciler_plugins.keys())

    def has_input_plugin(self, name: str) -> bool:
        return name in self._input_plugins

    def has_reconciler_for_resource_type(self, resource_type_name: str) -> bool:
        """Check if any reconciler handles the given resource type."""
        return resource_type_name in self._resource_type_to_reconciler

    def get_reconciler_for_resource_type(
        self, resource_type_name: str
    ) -> Optional[ReconcilerPlugin]:
        """
        Get the reconciler instance for a resource type.

        Returns:
            A ReconcilerPlugin instance, or None if no reconciler handles it
        """
        reconciler_name = self._resource_type_to_reconciler.get(resource_type_name)
        if reconciler_name is None:
            return None
        return self.get_reconciler_plugin(reconciler_name)

    def get_input_plugin_info(self, name: str) -> Optional[Dict[str, str]]:
        return self._input_plugin_info.get(name)

    def get_reconciler_plugin_info(self, name: str) -> Optional[Dict[str, Any]]:
        """
        Get information about a registered reconciler plugin.

        Returns:
            Dictionary with 'name' and 'resource_types', or None if not found
        """
        return self._reconciler_plugin_info.get(name)

    def get_input_plugin_config(self, name: str) -> Dict[str, Any]:
        return self._input_plugin_configs.get(name, {})


# Global registry instance
_registry: Optional[PluginRegistry] = None


def get_registry() -> PluginRegistry:
    """Get the global plugin registry singleton."""
    global _registry
    if _registry is None:
        _registry = PluginRegistry()
    return _registry


def reset_registry() -> None:
    """Reset the global registry (mainly for testing)."""
    global _registry
    _registry = None


def register_builtin_plugins() -> None:
    """
    Register the built-in plugins and discover additional reconciler
    plugins via entry points.

    Called during application startup.
    """
    from plugins.inputs.http import HTTPInputPlugin
    from plugins.reconcilers.component_template import (
        ComponentTemplateReconcilerPlugin,
    )

    registry = get_registry()
    registry.register_input_plugin(HTTPInputPlugin)
    registry.register_reconciler_plugin(ComponentTemplateReconcilerPlugin)

    for ep in entry_points(group=RECONCILER_ENTRY_POINT_GROUP):
        try:
            reconciler_class = ep.load()
            if reconciler_class is ComponentTemplateReconcilerPlugin:
                continue
            registry.register_reconciler_plugin(reconciler_class)
        except Exception as e:
            logger.warning(f"Could not load reconciler plugin {ep.name}: {e}")
