"""Deterministic prompt pack construction from resolved facts."""

import logging
from typing import Dict, List, Optional

from .hashing import hash_json
from .scale_guardrails import fact_section, format_cm
from .types import PromptPack, PromptPackVariant

logger = logging.getLogger(__name__)

PROMPT_TEMPLATE_VERSION = 1


class PromptPackBuilder:
    """Builds the product context and variant prompts for a product."""

    # Controlled bracket of placement and scale alternatives, not creative variations
    VARIANT_CATALOG: List[Dict[str, Optional[str]]] = [
        {
            "id": "center-accurate",
            "hint": "Primary placement, best-guess scale",
            "placement": "primary",
            "scale": (
                "Size from the stated dimensions if known, otherwise follow the "
                "scale guardrails relative to room anchors."
            ),
            "anchor": (
                "Use the nearest strong in-frame scale reference (doorway, sofa, "
                "chair, benchtop, bed) and size the product relative to it."
            ),
        },
        {
            "id": "center-smaller",
            "hint": "Primary placement, conservative scale",
            "placement": "primary",
            "scale": "15-25% smaller than a best-guess size. Visibly smaller but still plausible.",
            "anchor": "Use the same anchor as the best-guess placement.",
        },
        {
            "id": "center-larger",
            "hint": "Primary placement, bold scale",
            "placement": "primary",
            "scale": "15-25% larger than a best-guess size. Visibly larger but still plausible.",
            "anchor": "Use the same anchor as the best-guess placement.",
        },
        {
            "id": "left-accurate",
            "hint": "Secondary placement, best-guess scale",
            "placement": "secondary",
            "scale": "Same scale logic as the primary placement, applied to a different valid location.",
            "anchor": "Choose the nearest strong scale reference for this alternate location.",
        },
        {
            "id": "left-larger",
            "hint": "Secondary placement, bold scale",
            "placement": "secondary",
            "scale": "15-25% larger than a best-guess size at this location. Still plausible.",
            "anchor": "Use the same anchor as the secondary placement.",
        },
        {
            "id": "right-accurate",
            "hint": "Alternative room anchor, best-guess scale",
            "placement": "alternative",
            "scale": "Same scale logic as the primary placement, using a different reference point.",
            "anchor": "Choose a different wall or furniture piece than the other placements.",
        },
        {
            "id": "context-heavy",
            "hint": "Near multiple scale cues",
            "placement": "primary",
            "scale": (
                "Place near several visible scale references to maximize scale "
                "accuracy. Do not change the viewpoint."
            ),
            "anchor": (
                "Use at least two in-frame anchors (e.g. sofa and doorway, chair and "
                "table) and keep the product consistent with both."
            ),
        },
        {
            "id": "prominent",
            "hint": "Prominent placement, maximum realism",
            "placement": "primary",
            "scale": (
                "Give the product a clear, unobstructed position. Prefer a "
                "conservative size if uncertain; believability over everything."
            ),
            "anchor": None,
        },
    ]

    # Material-specific rendering rules keyed by material_profile.primary
    MATERIAL_RULES: Dict[str, List[str]] = {
        "mirror": [
            "Reflections must match the room lighting and camera viewpoint.",
            "Reflect plausible room content at correct angles; do not invent details.",
            "Preserve the exact frame and mounting hardware.",
        ],
        "glass": [
            "Show real transparency with the background visible through the glass.",
            "Include edge highlights; it must not look like plastic.",
        ],
        "reclaimed_teak": [
            "Preserve the grain, weathering and knots exactly as shown.",
            "Teak is heavy and warm-toned; it should look substantial.",
        ],
        "wood": [
            "Preserve grain pattern and finish exactly as shown.",
        ],
        "ceramic": [
            "Preserve glaze pooling, edge breaks and surface texture.",
        ],
        "metal": [
            "Preserve patina, brushing direction or polish as shown.",
        ],
        "stone": [
            "Preserve veining and color variation; the product should look heavy.",
        ],
        "fabric": [
            "Preserve weave, pile and drape; fabric must fold naturally under gravity.",
        ],
    }

    CROPPING_DESCRIPTIONS = {
        "never_crop_product": "The entire product must be visible; never crop it.",
        "allow_small_crop": "A small crop at the frame edge is acceptable.",
        "allow_crop_if_needed": "Cropping the product at the frame edge is acceptable if needed.",
    }

    PLACEMENT_DESCRIPTIONS = {
        "primary": "Place it at its most expected location: {mode}.",
        "secondary": "Place it at a different valid location: {mode}.",
        "alternative": "Place it against a different wall or furniture anchor: {mode}.",
    }

    def build(
        self,
        resolved_facts: dict,
        trace_id: str = "",
        version: int = 1,
    ) -> PromptPack:
        """
        Build a prompt pack.

        Args:
            resolved_facts: Output of resolve_product_facts
            trace_id: Request correlation id for logs
            version: Pack version to stamp (callers pass previous + 1)

        Returns:
            PromptPack addressed by the hash of the resolved facts
        """
        product_context = self.build_product_context(resolved_facts)
        modes = self._ranked_modes(resolved_facts)

        variants = [
            PromptPackVariant(
                id=entry["id"],
                hint=entry["hint"],
                prompt=self._build_variation(entry, modes),
            )
            for entry in self.VARIANT_CATALOG
        ]

        pack = PromptPack(
            version=version,
            facts_hash=hash_json(resolved_facts),
            template_version=PROMPT_TEMPLATE_VERSION,
            product_context=product_context,
            variants=variants,
        )

        logger.info(
            f"[{trace_id}] Built prompt pack v{version} with {len(variants)} variants "
            f"(facts {pack.facts_hash[:12]})"
        )
        return pack

    def build_product_context(self, facts: dict) -> str:
        """Describe the product for every variant of the pack."""
        sections = [
            self._build_identity_section(facts),
            self._build_scale_section(facts),
            self._build_placement_section(facts),
            self._build_material_section(facts),
            self._build_rules_section(facts),
        ]
        return "\n\n".join(section for section in sections if section)

    def _build_identity_section(self, facts: dict) -> str:
        identity = fact_section(facts, "identity")
        title = identity.get("title") or "the product"
        line = f"Product: {title}"
        if identity.get("product_kind"):
            line += f" ({identity['product_kind']})"

        lines = [line]
        if identity.get("category_path"):
            lines.append(f"Category: {' > '.join(identity['category_path'])}")
        if identity.get("style_cues"):
            lines.append(f"Style: {', '.join(identity['style_cues'])}")
        return "\n".join(lines)

    def _build_scale_section(self, facts: dict) -> str:
        lines = [f"Scale: {facts.get('scale_guardrails') or ''}".rstrip()]

        dims = fact_section(facts, "dimensions_cm")
        if dims.get("d"):
            lines.append(f"Depth: {format_cm(dims['d'])}cm.")
        if dims.get("diameter"):
            lines.append(f"Diameter: {format_cm(dims['diameter'])}cm.")

        priority = fact_section(facts, "scale").get("priority")
        if priority == "strict_true_to_dimensions":
            lines.append("Stay true to the stated dimensions.")
        return "\n".join(lines)

    def _build_placement_section(self, facts: dict) -> str:
        placement = fact_section(facts, "placement")
        lines = []

        modes = self._ranked_modes(facts)
        if modes:
            lines.append(f"Valid placements: {', '.join(modes)}.")

        surfaces = [
            s["surface"] for s in placement.get("support_surfaces") or []
            if isinstance(s, dict) and s.get("surface")
        ]
        if surfaces:
            lines.append(f"Support surfaces: {', '.join(surfaces)}.")

        orientation = fact_section(facts, "orientation")
        if orientation.get("constraint") and orientation["constraint"] != "unknown":
            note = f" ({orientation['notes']})" if orientation.get("notes") else ""
            lines.append(f"Orientation: {orientation['constraint'].replace('_', ' ')}{note}.")

        return "\n".join(lines)

    def _build_material_section(self, facts: dict) -> str:
        material = fact_section(facts, "material_profile")
        primary = material.get("primary") or "unknown"
        if primary == "unknown":
            return ""

        details = [
            value for value in (material.get("sheen"), material.get("transparency"))
            if value and value != "unknown"
        ]
        line = f"Material: {primary.replace('_', ' ')}"
        if details:
            line += f", {', '.join(details)}"

        lines = [line + "."]
        lines.extend(self.MATERIAL_RULES.get(primary, []))
        return "\n".join(lines)

    def _build_rules_section(self, facts: dict) -> str:
        placement = fact_section(facts, "placement")
        behavior = fact_section(facts, "render_behavior")

        lines = [self.CROPPING_DESCRIPTIONS.get(
            behavior.get("cropping_policy"),
            self.CROPPING_DESCRIPTIONS["never_crop_product"],
        )]
        lines.extend(placement.get("constraints") or [])
        lines.extend(behavior.get("interaction_rules") or [])
        lines.extend(f"Do not: {rule}" for rule in placement.get("do_not_do") or [])
        return "\n".join(lines)

    def _ranked_modes(self, facts: dict) -> List[str]:
        """Allowed placement modes, most confident first."""
        allowed = fact_section(facts, "placement").get("allowed_modes") or []
        ranked = sorted(
            (m for m in allowed if isinstance(m, dict) and m.get("mode")),
            key=lambda m: m.get("confidence") or 0,
            reverse=True,
        )
        return [m["mode"] for m in ranked]

    def _build_variation(self, entry: dict, modes: List[str]) -> str:
        placement = entry["placement"]
        if placement == "secondary" and len(modes) > 1:
            mode = modes[1]
        elif modes:
            mode = modes[0]
        else:
            mode = "the most natural spot in the room"

        parts = [
            f"{entry['hint']}.",
            self.PLACEMENT_DESCRIPTIONS[placement].format(mode=mode),
            f"Scale: {entry['scale']}",
        ]
        parts.append(
            f"Anchor: {entry['anchor']}" if entry["anchor"]
            else "Anchor: choose whatever placement and scale look most realistic."
        )
        return " ".join(parts)


def build_prompt_pack(resolved_facts: dict, trace_id: str = "", version: int = 1) -> PromptPack:
    """Build a prompt pack with the default builder."""
    return PromptPackBuilder().build(resolved_facts, trace_id=trace_id, version=version)


def is_pack_current(pack: Optional[PromptPack], resolved_facts: dict) -> bool:
    """Check that a stored pack was built from these facts with the current templates."""
    if pack is None:
        return False
    return (
        pack.facts_hash == hash_json(resolved_facts)
        and pack.template_version == PROMPT_TEMPLATE_VERSION
        and pack.variant_count > 0
    )
