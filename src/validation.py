"""
Schema Validation - JSON Schema validation of declared resources.

Provides the schema of the OpensearchComponentTemplate spec and functions to
validate specs against it.
"""

import logging
from typing import Any, Dict, Optional, Tuple

from jsonschema import Draft7Validator, ValidationError

logger = logging.getLogger(__name__)

ALIAS_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "filter": {"type": "object"},
        "routing": {"type": "string"},
        "indexRouting": {"type": "string"},
        "searchRouting": {"type": "string"},
        "isHidden": {"type": "boolean"},
        "isWriteIndex": {"type": "boolean"},
    },
}

COMPONENT_TEMPLATE_SPEC_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "required": ["opensearchCluster", "template"],
    "properties": {
        "opensearchCluster": {
            "type": "object",
            "additionalProperties": False,
            "required": ["name"],
            "properties": {"name": {"type": "string", "minLength": 1}},
        },
        "name": {"type": "string"},
        "template": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "settings": {"type": "object"},
                "mappings": {"type": "object"},
                "aliases": {
                    "type": "object",
                    "additionalProperties": ALIAS_SCHEMA,
                },
            },
        },
        "version": {"type": "integer", "minimum": 0},
        "allowAutoCreate": {"type": "boolean"},
        "_meta": {"type": "object"},
    },
}


def validate_spec_against_schema(
    spec: Dict[str, Any], schema: Dict[str, Any]
) -> Tuple[bool, Optional[str]]:
    """
    Validate a resource spec against a JSON Schema.

    Args:
        spec: The resource specification to validate
        schema: The JSON Schema to validate against

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        validator = Draft7Validator(schema, format_checker=Draft7Validator.FORMAT_CHECKER)
        errors = sorted(
            validator.iter_errors(spec), key=lambda e: [str(p) for p in e.absolute_path]
        )

        if not errors:
            return True, None

        # Collect all validation errors
        error_messages = []
        for error in errors:
            path = ".".join(str(p) for p in error.absolute_path) or "(root)"
            error_messages.append(f"{path}: {error.message}")

        return False, "; ".join(error_messages)

    except ValidationError as e:
        return False, f"Validation error: {str(e)}"
    except Exception as e:
        logger.error(f"Unexpected error during validation: {e}")
        return False, f"Validation failed: {str(e)}"


def validate_component_template_spec(
    spec: Dict[str, Any],
) -> Tuple[bool, Optional[str]]:
    """Validate an OpensearchComponentTemplate spec."""
    return validate_spec_against_schema(spec, COMPONENT_TEMPLATE_SPEC_SCHEMA)
