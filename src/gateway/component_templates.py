"""
Component template operations against an OpenSearch cluster.

Drift detection compares a normalized form of both sides: OpenSearch echoes
settings back flattened, prefixed with "index." and with string values, and
omits empty sections, so the desired body is brought into the same shape
before comparing.
"""

import logging
from typing import Any, Dict

from gateway.client import OpenSearchClusterClient

logger = logging.getLogger(__name__)


def _settings_value(value: Any) -> Any:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, list):
        return [_settings_value(v) for v in value]
    if value is None:
        return None
    return str(value)


def _flatten_settings(settings: Dict[str, Any], prefix: str = "") -> Dict[str, Any]:
    flat: Dict[str, Any] = {}
    for key, value in settings.items():
        path = f"{prefix}.{key}" if prefix else key
        if isinstance(value, dict):
            flat.update(_flatten_settings(value, path))
        else:
            flat[path] = _settings_value(value)
    return flat


def normalize_settings(settings: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten index settings the way OpenSearch reports them."""
    return {
        key if key.startswith("index.") else f"index.{key}": value
        for key, value in _flatten_settings(settings).items()
    }


def _drop_none(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _drop_none(v) for k, v in value.items() if v is not None}
    if isinstance(value, list):
        return [_drop_none(v) for v in value]
    return value


def _drop_empty_sections(body: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in body.items() if v not in ({}, [])}


def comparable_template(body: Dict[str, Any]) -> Dict[str, Any]:
    """
    Return the normalized form of a component template body.

    Only empty top-level sections are dropped. Nested empty objects such as
    an alias without options are part of the content.
    """
    body = _drop_none(body)
    template = dict(body.get("template") or {})
    if template.get("settings"):
        template["settings"] = normalize_settings(template["settings"])
    return _drop_empty_sections(
        {**body, "template": _drop_empty_sections(template)}
    )


async def component_template_exists(
    client: OpenSearchClusterClient, name: str
) -> bool:
    return await client.component_template_exists(name)


async def should_update_component_template(
    client: OpenSearchClusterClient, name: str, desired: Dict[str, Any]
) -> bool:
    """
    Check whether the remote template differs from the desired body.

    A missing remote template always differs.
    """
    existing = await client.get_component_template(name)
    if existing is None:
        logger.debug(f"component template {name} does not exist in OpenSearch")
        return True

    if comparable_template(desired) == comparable_template(existing):
        return False

    logger.debug(f"component template {name} differs from the desired state")
    return True


async def create_or_update_component_template(
    client: OpenSearchClusterClient, name: str, desired: Dict[str, Any]
) -> None:
    await client.put_component_template(name, desired)


async def delete_component_template(
    client: OpenSearchClusterClient, name: str
) -> None:
    await client.delete_component_template(name)
