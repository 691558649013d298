"""
Composable plan rules, loading, validation and revision.
"""

from importlib import import_module
from typing import Any

_EXPORTS = {
    "PlanValidator": "plangate.plan.validator",
    "PlanValidationResult": "plangate.plan.validator",
    "SectionValidationResult": "plangate.plan.validator",
    "PlanCompletionChecker": "plangate.plan.completion",
    "CompletenessResult": "plangate.plan.completion",
    "RepromptContext": "plangate.plan.completion",
    "PlanLoader": "plangate.plan.loader",
    "LoadedPlan": "plangate.plan.loader",
    "PlanSource": "plangate.plan.loader",
    "has_circular_dependencies": "plangate.plan.graph",
}

__all__ = sorted(_EXPORTS)


def __getattr__(name: str) -> Any:
    """Lazily import plan helpers so the schema module loads on its own."""
    if name in _EXPORTS:
        module = import_module(_EXPORTS[name])
        return getattr(module, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
