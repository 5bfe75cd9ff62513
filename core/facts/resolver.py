"""Merge extracted facts with merchant overrides."""

import copy
from typing import Any, Optional

from .scale_guardrails import derive_scale_guardrails
from .types import FACT_DEFAULTS

# Always recomputed, never taken from either input
DERIVED_FIELDS = ("scale_guardrails",)


def _is_cleared(value: Any) -> bool:
    return value is None or value == ""


def _overlay(base: dict, overrides: dict, defaults: Any) -> dict:
    """Overlay overrides onto base without mutating either."""
    result = copy.deepcopy(base)
    defaults = defaults if isinstance(defaults, dict) else {}

    for key, value in overrides.items():
        if key in DERIVED_FIELDS:
            continue

        default = defaults.get(key)
        if _is_cleared(value):
            result[key] = copy.deepcopy(default)
        elif isinstance(value, dict):
            current = result.get(key)
            if not isinstance(current, dict):
                current = copy.deepcopy(default) if isinstance(default, dict) else {}
            result[key] = _overlay(current, value, default)
        else:
            # Scalars and lists replace wholesale
            result[key] = copy.deepcopy(value)

    return result


def resolve_product_facts(extracted: dict, overrides: Optional[dict] = None) -> dict:
    """
    Produce the effective facts for a product.

    Per leaf field: a key absent from ``overrides`` inherits the extracted
    value, a key set to None or "" resets to the field default, and any
    other value replaces it. Nested objects merge key by key; lists replace.
    The result carries freshly derived ``scale_guardrails``.

    The function is pure and idempotent: resolving an already resolved dict
    with the same overrides returns an equal dict.

    Args:
        extracted: Validated extractor output
        overrides: Merchant overrides (may be None)

    Returns:
        New resolved facts dict
    """
    resolved = _overlay(extracted or {}, overrides or {}, FACT_DEFAULTS)
    resolved["scale_guardrails"] = derive_scale_guardrails(resolved)
    return resolved
