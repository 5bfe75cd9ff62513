"""Scale guardrail text derived from resolved facts.

Guardrails keep large products from collapsing to decor scale in renders.
"""

from typing import Any, Dict

SCALE_GUARDRAIL_TEMPLATES: Dict[str, str] = {
    "architectural": (
        "Architectural scale. Should relate to room structure (ceiling height, "
        "wall spans) and be clearly larger than standard furniture."
    ),
    "oversized": (
        "Oversized. Should visually dominate its placement area and be clearly "
        "larger than typical furniture pieces like dining chairs or side tables."
    ),
    "large": (
        "Large furniture scale. Should be comparable to major furniture pieces "
        "(sofas, dining tables, beds) in the room."
    ),
    "medium": (
        "Medium furniture scale. Should be comparable to chairs, side tables, "
        "or small cabinets."
    ),
    "small": (
        "Small scale. Should be noticeably smaller than chairs, appropriate for "
        "tabletops or shelves."
    ),
    "tiny": (
        "Tiny/decor scale. Small enough to sit on a tabletop or shelf alongside "
        "other objects."
    ),
    "unknown": (
        "Size the product to look plausible for its product kind, using nearby "
        "furniture as scale reference."
    ),
}


def format_cm(value: Any) -> str:
    """Format a centimetre value, passing through anything that is not numeric."""
    try:
        return f"{float(value):g}"
    except (TypeError, ValueError):
        return str(value)


def fact_section(facts: dict, key: str) -> dict:
    """Return a nested facts object, or {} when it is missing or not an object."""
    value = facts.get(key)
    return value if isinstance(value, dict) else {}


def derive_scale_guardrails(facts: dict) -> str:
    """
    Build the scale guardrail sentence for a set of facts.

    Args:
        facts: Resolved (or extracted) facts dict

    Returns:
        Guardrail text: class template, optional dimensions, optional kind prefix
    """
    scale_class = fact_section(facts, "relative_scale").get("class")
    if not isinstance(scale_class, str):
        scale_class = "unknown"
    guardrail = SCALE_GUARDRAIL_TEMPLATES.get(
        scale_class, SCALE_GUARDRAIL_TEMPLATES["unknown"]
    )

    dims = fact_section(facts, "dimensions_cm")
    h, w = dims.get("h"), dims.get("w")
    if h and w:
        guardrail += f" Approximate dimensions: {format_cm(h)}cm tall x {format_cm(w)}cm wide."
    elif h:
        guardrail += f" Approximate height: {format_cm(h)}cm."
    elif w:
        guardrail += f" Approximate width: {format_cm(w)}cm."

    kind = fact_section(facts, "identity").get("product_kind")
    if kind:
        guardrail = f"{kind}: {guardrail}"

    return guardrail
