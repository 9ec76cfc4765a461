"""
Component template reconciler.

Keeps OpensearchComponentTemplate resources in sync with the component
templates of their OpenSearch cluster.
"""

from plugins.reconcilers.component_template.plugin import (
    FINALIZER,
    ComponentTemplateReconcilerPlugin,
)
from plugins.reconcilers.component_template.reconciler import (
    TRANSITIONS,
    ComponentTemplateReconciler,
    Outcome,
)

__all__ = [
    "FINALIZER",
    "TRANSITIONS",
    "ComponentTemplateReconciler",
    "ComponentTemplateReconcilerPlugin",
    "Outcome",
]
