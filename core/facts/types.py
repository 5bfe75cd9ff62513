"""Data types for product placement facts and prompt packs."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .hashing import hash_json

ScaleClass = Literal[
    "tiny", "small", "medium", "large", "oversized", "architectural", "unknown"
]
CroppingPolicy = Literal[
    "never_crop_product", "allow_small_crop", "allow_crop_if_needed"
]


# ============================================================================
# Product facts schema (validated extractor output)
# ============================================================================


class Identity(BaseModel):
    """What the product is."""

    title: str
    product_kind: Optional[str] = None
    category_path: List[str]
    style_cues: List[str]

    @field_validator("title")
    @classmethod
    def title_must_not_be_empty(cls, v: str) -> str:
        """Validate that the title carries text."""
        if not v.strip():
            raise ValueError("title must be a non-empty string")
        return v


class Dimensions(BaseModel):
    """Physical dimensions in centimetres, when known."""

    h: Optional[float] = None
    w: Optional[float] = None
    d: Optional[float] = None
    diameter: Optional[float] = None
    thickness: Optional[float] = None


class PlacementOption(BaseModel):
    """A placement mode or support surface with its supporting evidence."""

    model_config = ConfigDict(extra="allow")

    mode: Optional[str] = None
    surface: Optional[str] = None
    confidence: float = 0.5
    evidence: Optional[str] = None


class Placement(BaseModel):
    """Where and how the product may be placed."""

    allowed_modes: List[PlacementOption] = []
    support_surfaces: List[PlacementOption] = []
    constraints: List[str] = []
    do_not_do: List[str] = []


class Orientation(BaseModel):
    constraint: str = "unknown"
    notes: Optional[str] = None


class ScalePolicy(BaseModel):
    priority: str = "prefer_true_to_dimensions"
    notes: Optional[str] = None


class RelativeScale(BaseModel):
    """Size class relative to ordinary furniture."""

    model_config = ConfigDict(populate_by_name=True)

    scale_class: ScaleClass = Field(alias="class")
    evidence: Optional[str] = None


class MaterialProfile(BaseModel):
    primary: str = "unknown"
    sheen: Optional[str] = "unknown"
    transparency: Optional[str] = "unknown"
    notes: Optional[str] = None


class RenderBehavior(BaseModel):
    cropping_policy: CroppingPolicy
    interaction_rules: List[str] = []


class ProductFacts(BaseModel):
    """Structured placement facts for one product."""

    identity: Identity
    dimensions_cm: Dimensions
    weight_class: str = "unknown"
    deformability: str = "unknown"
    placement: Placement
    orientation: Orientation
    scale: ScalePolicy
    relative_scale: RelativeScale
    material_profile: MaterialProfile
    render_behavior: RenderBehavior
    affordances: List[str]
    unknowns: List[str]
    scale_guardrails: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to a plain JSON-ready dict (``relative_scale.class`` keyed)."""
        return self.model_dump(by_alias=True)


# Value a field takes when an override clears it
FACT_DEFAULTS: dict = {
    "identity": {
        "title": "",
        "product_kind": None,
        "category_path": [],
        "style_cues": [],
    },
    "dimensions_cm": {
        "h": None,
        "w": None,
        "d": None,
        "diameter": None,
        "thickness": None,
    },
    "weight_class": "unknown",
    "deformability": "unknown",
    "placement": {
        "allowed_modes": [],
        "support_surfaces": [],
        "constraints": [],
        "do_not_do": [],
    },
    "orientation": {"constraint": "unknown", "notes": None},
    "scale": {"priority": "prefer_true_to_dimensions", "notes": None},
    "relative_scale": {"class": "unknown", "evidence": None},
    "material_profile": {
        "primary": "unknown",
        "sheen": "unknown",
        "transparency": "unknown",
        "notes": None,
    },
    "render_behavior": {
        "cropping_policy": "never_crop_product",
        "interaction_rules": [],
    },
    "affordances": [],
    "unknowns": [],
    "scale_guardrails": None,
}


# ============================================================================
# Merchant overrides (partial facts)
# ============================================================================


class _OverrideSection(BaseModel):
    """Every field optional; null or "" clears the field to its default."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    @field_validator("*", mode="before")
    @classmethod
    def blank_clears(cls, v):
        return None if v == "" else v


class IdentityOverrides(_OverrideSection):
    title: Optional[str] = None
    product_kind: Optional[str] = None
    category_path: Optional[List[str]] = None
    style_cues: Optional[List[str]] = None


class DimensionsOverrides(_OverrideSection):
    h: Optional[float] = Field(default=None, gt=0)
    w: Optional[float] = Field(default=None, gt=0)
    d: Optional[float] = Field(default=None, gt=0)
    diameter: Optional[float] = Field(default=None, gt=0)
    thickness: Optional[float] = Field(default=None, gt=0)


class PlacementOverrides(_OverrideSection):
    allowed_modes: Optional[List[PlacementOption]] = None
    support_surfaces: Optional[List[PlacementOption]] = None
    constraints: Optional[List[str]] = None
    do_not_do: Optional[List[str]] = None


class OrientationOverrides(_OverrideSection):
    constraint: Optional[str] = None
    notes: Optional[str] = None


class ScalePolicyOverrides(_OverrideSection):
    priority: Optional[str] = None
    notes: Optional[str] = None


class RelativeScaleOverrides(_OverrideSection):
    scale_class: Optional[ScaleClass] = Field(default=None, alias="class")
    evidence: Optional[str] = None


class MaterialProfileOverrides(_OverrideSection):
    primary: Optional[str] = None
    sheen: Optional[str] = None
    transparency: Optional[str] = None
    notes: Optional[str] = None


class RenderBehaviorOverrides(_OverrideSection):
    cropping_policy: Optional[CroppingPolicy] = None
    interaction_rules: Optional[List[str]] = None


class FactOverrides(_OverrideSection):
    """Merchant corrections to extracted facts.

    Same sections and enums as ProductFacts. Numbers given as strings are
    coerced, unknown keys are rejected, and ``scale_guardrails`` is derived
    so it cannot be overridden.
    """

    identity: Optional[IdentityOverrides] = None
    dimensions_cm: Optional[DimensionsOverrides] = None
    weight_class: Optional[str] = None
    deformability: Optional[str] = None
    placement: Optional[PlacementOverrides] = None
    orientation: Optional[OrientationOverrides] = None
    scale: Optional[ScalePolicyOverrides] = None
    relative_scale: Optional[RelativeScaleOverrides] = None
    material_profile: Optional[MaterialProfileOverrides] = None
    render_behavior: Optional[RenderBehaviorOverrides] = None
    affordances: Optional[List[str]] = None
    unknowns: Optional[List[str]] = None


def validate_overrides(overrides: Optional[dict]) -> Optional[dict]:
    """
    Check merchant overrides against the fact schema.

    Args:
        overrides: Raw override document (may be None)

    Returns:
        Normalized overrides holding only the keys the merchant sent

    Raises:
        pydantic.ValidationError: If a key is unknown or a value has the wrong type
    """
    if overrides is None:
        return None
    return FactOverrides.model_validate(overrides).model_dump(by_alias=True, exclude_unset=True)


# ============================================================================
# Extraction input
# ============================================================================


@dataclass
class ExtractionInput:
    """Source product data handed to the extractor."""

    title: str
    description: str = ""
    product_type: str = ""
    vendor: str = ""
    tags: List[str] = field(default_factory=list)
    metafields: Dict[str, str] = field(default_factory=dict)
    image_urls: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "ExtractionInput":
        """Create ExtractionInput from a stored product record."""
        return cls(
            title=data.get("title", ""),
            description=data.get("description", ""),
            product_type=data.get("product_type", ""),
            vendor=data.get("vendor", ""),
            tags=list(data.get("tags", [])),
            metafields=dict(data.get("metafields", {})),
            image_urls=list(data.get("image_urls", [])),
        )


# ============================================================================
# Prompt pack
# ============================================================================


@dataclass
class PromptPackVariant:
    """One named placement/scale variation."""

    id: str
    hint: str
    prompt: str

    def to_dict(self) -> dict:
        return {"id": self.id, "hint": self.hint, "prompt": self.prompt}

    @classmethod
    def from_dict(cls, data: dict) -> "PromptPackVariant":
        return cls(
            id=data.get("id", ""),
            hint=data.get("hint", ""),
            prompt=data.get("prompt", ""),
        )


@dataclass
class PromptPack:
    """Product context plus the variant prompts built from resolved facts."""

    version: int
    facts_hash: str
    product_context: str
    variants: List[PromptPackVariant]
    template_version: int = 1
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def variant_count(self) -> int:
        return len(self.variants)

    @property
    def content_hash(self) -> str:
        """Hash of the pack content (excludes the build timestamp)."""
        content = self.to_dict()
        del content["created_at"]
        return hash_json(content)

    def get_variant(self, variant_id: str) -> Optional[PromptPackVariant]:
        """Look up a variant by id."""
        for variant in self.variants:
            if variant.id == variant_id:
                return variant
        return None

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "version": self.version,
            "facts_hash": self.facts_hash,
            "template_version": self.template_version,
            "product_context": self.product_context,
            "variants": [v.to_dict() for v in self.variants],
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PromptPack":
        """Create PromptPack from dictionary."""
        created_at = data.get("created_at")
        if isinstance(created_at, str):
            created_at = datetime.fromisoformat(created_at)
        elif created_at is None:
            created_at = datetime.now()

        return cls(
            version=data.get("version", 1),
            facts_hash=data.get("facts_hash", ""),
            template_version=data.get("template_version", 1),
            product_context=data.get("product_context", ""),
            variants=[PromptPackVariant.from_dict(v) for v in data.get("variants", [])],
            created_at=created_at,
        )
