"""Product fact extraction with a multimodal LLM."""

import json
import logging
from typing import List, Optional

from pydantic import ValidationError

from core.azure.openai_service import AzureOpenAIService

from .types import ExtractionInput, ProductFacts

logger = logging.getLogger(__name__)

MAX_EXTRACTION_IMAGES = 3

EXTRACTOR_SYSTEM_PROMPT = """You extract product placement facts for a photorealistic product-in-room rendering system.

Extract as much as possible from the provided text and images.
If several placement modes are plausible, list each with a confidence between 0 and 1.
If something is unknown, mark it unknown. Do not guess.

Rules:
- No marketing copy and no prompts
- Never invent dimensions or scale
- Only set relative_scale.class when supported by evidence (title, text, tags, metafields, or obvious visual cues):
  "oversized", "XL", "floor mirror", "statement piece" -> oversized or large;
  "petite", "tabletop", "mini" -> small or tiny;
  plain furniture terms without size modifiers -> medium
- Be specific about material ("mirror", "glass", "reclaimed_teak", "ceramic", "metal") plus sheen and transparency

Respond with a single JSON object of this shape:
{
    "identity": {"title": "string", "product_kind": "string|null", "category_path": ["string"], "style_cues": ["string"]},
    "dimensions_cm": {"h": null, "w": null, "d": null, "diameter": null, "thickness": null},
    "weight_class": "very_heavy|heavy|medium|light|unknown",
    "deformability": "rigid|semi_rigid|flexible_drape|unknown",
    "placement": {
        "allowed_modes": [{"mode": "floor|wall|tabletop|shelf|hanging", "confidence": 0.0, "evidence": "string"}],
        "support_surfaces": [{"surface": "string", "confidence": 0.0, "evidence": "string"}],
        "constraints": ["string"],
        "do_not_do": ["string"]
    },
    "orientation": {"constraint": "upright_only|can_rotate_slightly|free_rotation|unknown", "notes": "string|null"},
    "scale": {"priority": "strict_true_to_dimensions|prefer_true_to_dimensions|flexible_if_no_reference", "notes": "string|null"},
    "relative_scale": {"class": "tiny|small|medium|large|oversized|architectural|unknown", "evidence": "string|null"},
    "material_profile": {"primary": "string", "sheen": "matte|satin|gloss|unknown", "transparency": "opaque|translucent|transparent|unknown", "notes": "string|null"},
    "render_behavior": {"cropping_policy": "never_crop_product|allow_small_crop|allow_crop_if_needed", "interaction_rules": ["string"]},
    "affordances": ["string"],
    "unknowns": ["string"]
}"""


class ExtractorOutputError(Exception):
    """Extractor output could not be parsed or failed schema validation."""

    PARSE_FAILED = "EXTRACTOR_OUTPUT_PARSE_FAILED"
    VALIDATION_FAILED = "EXTRACTOR_OUTPUT_VALIDATION_FAILED"

    def __init__(
        self,
        code: str,
        message: str,
        trace_id: str = "",
        issues: Optional[List[str]] = None,
        attempt: int = 1,
    ):
        super().__init__(message)
        self.code = code
        self.trace_id = trace_id
        self.issues = issues or []
        self.attempt = attempt

    def to_dict(self) -> dict:
        """Convert to dictionary for persistence as an error marker."""
        return {
            "code": self.code,
            "message": str(self),
            "trace_id": self.trace_id,
            "issues": self.issues,
            "attempt": self.attempt,
        }


def parse_json_response(text: str) -> dict:
    """
    Parse a JSON object from raw or markdown-fenced model output.

    Raises:
        ValueError: If no JSON object can be decoded
    """
    content = text.strip()

    # Clean response if wrapped in markdown code block
    if content.startswith("```"):
        content = content.split("```")[1]
        if content.startswith("json"):
            content = content[4:]
        content = content.strip()

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        start, end = content.find("{"), content.rfind("}")
        if start == -1 or end <= start:
            raise ValueError("No JSON object found in extractor output")
        parsed = json.loads(content[start:end + 1])

    if not isinstance(parsed, dict):
        raise ValueError("Extractor output is not a JSON object")
    return parsed


def format_issues(error: ValidationError) -> List[str]:
    issues = []
    for item in error.errors():
        path = ".".join(str(part) for part in item.get("loc", ()))
        issues.append(f"{path}: {item.get('msg', 'invalid')}")
    return issues


def build_user_prompt(source: ExtractionInput) -> str:
    """Render the product text the extractor sees."""
    metafields = "\n".join(f"{k}: {v}" for k, v in source.metafields.items()) or "(none)"
    return (
        f"Product Title: {source.title}\n\n"
        f"Product Description:\n{source.description or '(none)'}\n\n"
        f"Product Type: {source.product_type or '(none)'}\n"
        f"Vendor: {source.vendor or '(none)'}\n"
        f"Tags: {', '.join(source.tags) or '(none)'}\n\n"
        f"Metafields:\n{metafields}\n\n"
        "Analyze the product information and images above. Return the placement facts JSON."
    )


class ProductFactsExtractor:
    """Turns product text and images into validated ProductFacts."""

    def __init__(self, openai_service: AzureOpenAIService, max_attempts: int = 2):
        """
        Initialize the extractor.

        Args:
            openai_service: Azure OpenAI service used for the vision call
            max_attempts: Total attempts on parse/validation failure
        """
        self.openai_service = openai_service
        self.max_attempts = max_attempts

    async def extract_product_facts(
        self,
        source: ExtractionInput,
        trace_id: str = "",
    ) -> dict:
        """
        Extract placement facts for a product.

        Model errors propagate immediately. Unparseable or invalid output is
        retried, then surfaced; defaults are never substituted.

        Args:
            source: Product text and image URLs
            trace_id: Request correlation id for logs

        Returns:
            Validated facts as a plain dict

        Raises:
            ExtractorOutputError: If every attempt produced bad output
        """
        user_prompt = build_user_prompt(source)
        image_urls = source.image_urls[:MAX_EXTRACTION_IMAGES]
        last_error: Optional[ExtractorOutputError] = None

        for attempt in range(1, self.max_attempts + 1):
            response = await self.openai_service.vision_json(
                system_prompt=EXTRACTOR_SYSTEM_PROMPT,
                user_text=user_prompt,
                image_urls=image_urls,
            )

            try:
                data = parse_json_response(response)
            except ValueError as e:
                last_error = ExtractorOutputError(
                    ExtractorOutputError.PARSE_FAILED,
                    f"Extractor output was not valid JSON: {e}",
                    trace_id=trace_id,
                    attempt=attempt,
                )
                logger.warning(f"[{trace_id}] Extraction attempt {attempt} unparseable: {e}")
                continue

            try:
                facts = ProductFacts.model_validate(data)
            except ValidationError as e:
                issues = format_issues(e)
                last_error = ExtractorOutputError(
                    ExtractorOutputError.VALIDATION_FAILED,
                    f"Extractor output failed validation ({len(issues)} issues)",
                    trace_id=trace_id,
                    issues=issues,
                    attempt=attempt,
                )
                logger.warning(
                    f"[{trace_id}] Extraction attempt {attempt} invalid: {'; '.join(issues[:5])}"
                )
                continue

            logger.info(
                f"[{trace_id}] Extracted facts for '{source.title}' "
                f"(class={facts.relative_scale.scale_class}, attempt={attempt})"
            )
            return facts.to_dict()

        raise last_error
