"""
Translate a declared component template spec into the OpenSearch request body.
"""

from typing import Any, Dict

# Declared alias option -> OpenSearch field
_ALIAS_FIELDS = {
    "filter": "filter",
    "routing": "routing",
    "indexRouting": "index_routing",
    "searchRouting": "search_routing",
    "isHidden": "is_hidden",
    "isWriteIndex": "is_write_index",
}


def _translate_alias(alias: Dict[str, Any]) -> Dict[str, Any]:
    return {
        wire: alias[declared]
        for declared, wire in _ALIAS_FIELDS.items()
        if alias.get(declared) is not None
    }


def translate_component_template_to_request(spec: Dict[str, Any]) -> Dict[str, Any]:
    """
    Build the body for PUT /_component_template/{name}.

    Args:
        spec: The declared component template spec (camelCase form)

    Returns:
        Request body in OpenSearch's wire format. Unset fields are omitted.
    """
    declared = spec.get("template") or {}
    template: Dict[str, Any] = {}

    if declared.get("settings"):
        template["settings"] = declared["settings"]
    if declared.get("mappings"):
        template["mappings"] = declared["mappings"]
    if declared.get("aliases"):
        template["aliases"] = {
            name: _translate_alias(options or {})
            for name, options in declared["aliases"].items()
        }

    request: Dict[str, Any] = {"template": template}
    if spec.get("version") is not None:
        request["version"] = spec["version"]
    if spec.get("allowAutoCreate") is not None:
        request["allow_auto_create"] = spec["allowAutoCreate"]
    if spec.get("_meta"):
        request["_meta"] = spec["_meta"]
    return request
