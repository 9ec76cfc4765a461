"""
OpenSearch gateway.

HTTP client for OpenSearch clusters plus the component template operations
the reconciler needs.
"""

from gateway.client import (
    ClientBuildError,
    OpenSearchAPIError,
    OpenSearchClusterClient,
    create_client_for_cluster,
)
from gateway.component_templates import (
    component_template_exists,
    create_or_update_component_template,
    delete_component_template,
    should_update_component_template,
)
from gateway.translate import translate_component_template_to_request

__all__ = [
    "ClientBuildError",
    "OpenSearchAPIError",
    "OpenSearchClusterClient",
    "create_client_for_cluster",
    "component_template_exists",
    "create_or_update_component_template",
    "delete_component_template",
    "should_update_component_template",
    "translate_component_template_to_request",
]
