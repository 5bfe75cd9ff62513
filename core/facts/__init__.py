"""Product fact resolution: extraction, merchant overrides, prompt packs.

Example usage:
    from core.facts import FactPipeline, resolve_product_facts, build_prompt_pack

    resolved = resolve_product_facts(extracted, {"dimensions_cm": {"h": 180}})
    pack = build_prompt_pack(resolved, version=2)
    print([v.id for v in pack.variants])
"""

from .extractor import ExtractorOutputError, ProductFactsExtractor, parse_json_response
from .hashing import canonical_json, hash_json
from .pipeline import FactPipeline, InvalidOverridesError, PipelineNotReadyError
from .prompt_pack import (
    PROMPT_TEMPLATE_VERSION,
    PromptPackBuilder,
    build_prompt_pack,
    is_pack_current,
)
from .resolver import resolve_product_facts
from .scale_guardrails import derive_scale_guardrails
from .types import (
    FACT_DEFAULTS,
    ExtractionInput,
    FactOverrides,
    ProductFacts,
    PromptPack,
    PromptPackVariant,
    validate_overrides,
)

__all__ = [
    # Types
    "ExtractionInput",
    "FactOverrides",
    "ProductFacts",
    "PromptPack",
    "PromptPackVariant",
    "FACT_DEFAULTS",
    # Pipeline
    "FactPipeline",
    "ProductFactsExtractor",
    "PromptPackBuilder",
    "build_prompt_pack",
    "is_pack_current",
    "resolve_product_facts",
    "validate_overrides",
    "derive_scale_guardrails",
    "parse_json_response",
    "canonical_json",
    "hash_json",
    "PROMPT_TEMPLATE_VERSION",
    # Exceptions
    "ExtractorOutputError",
    "PipelineNotReadyError",
    "InvalidOverridesError",
]
