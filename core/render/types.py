"""Data types for the render pipeline."""

import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Dict, List, Optional, Set

if TYPE_CHECKING:
    from core.facts.types import PromptPack
    from core.gemini.files_service import RemoteFileHandle

MAX_ERROR_MESSAGE_LENGTH = 500


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RenderConfig:
    """Configuration for render runs."""

    variant_timeout_seconds: float = 45.0
    signed_url_ttl_seconds: int = 3600
    heartbeat_interval_seconds: float = 15.0
    progress_interval_seconds: float = 3.0
    max_image_dimension: int = 2048
    jpeg_quality: int = 90
    output_prefix: str = "see-it-now"

    @classmethod
    def from_env(cls) -> "RenderConfig":
        """Load configuration from environment variables."""
        return cls(
            variant_timeout_seconds=float(os.getenv("SEE_IT_NOW_VARIANT_TIMEOUT_SECONDS", "45")),
            signed_url_ttl_seconds=int(os.getenv("SEE_IT_NOW_SIGNED_URL_TTL_SECONDS", "3600")),
            heartbeat_interval_seconds=float(os.getenv("SEE_IT_NOW_HEARTBEAT_SECONDS", "15")),
            progress_interval_seconds=float(os.getenv("SEE_IT_NOW_PROGRESS_SECONDS", "3")),
            max_image_dimension=int(os.getenv("SEE_IT_NOW_MAX_IMAGE_DIMENSION", "2048")),
        )

    def output_key(self, run_id: str, variant_id: str) -> str:
        """Object key for a variant's output image."""
        return f"{self.output_prefix}/{run_id}/{variant_id}.jpg"


# ============================================================================
# State machines
# ============================================================================


class RunStatus(str, Enum):
    """Render run status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    PARTIAL = "partial"
    FAILED = "failed"


class VariantStatus(str, Enum):
    """Per-variant status."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"


RUN_TRANSITIONS: Dict[RunStatus, Set[RunStatus]] = {
    RunStatus.PENDING: {RunStatus.RUNNING, RunStatus.FAILED},
    RunStatus.RUNNING: {RunStatus.COMPLETE, RunStatus.PARTIAL, RunStatus.FAILED},
    RunStatus.COMPLETE: set(),
    RunStatus.PARTIAL: set(),
    RunStatus.FAILED: set(),
}

VARIANT_TRANSITIONS: Dict[VariantStatus, Set[VariantStatus]] = {
    VariantStatus.PENDING: {
        VariantStatus.RUNNING,
        VariantStatus.FAILED,
        VariantStatus.TIMEOUT,
    },
    VariantStatus.RUNNING: {
        VariantStatus.SUCCESS,
        VariantStatus.FAILED,
        VariantStatus.TIMEOUT,
    },
    VariantStatus.SUCCESS: set(),
    VariantStatus.FAILED: set(),
    VariantStatus.TIMEOUT: set(),
}

TERMINAL_VARIANT_STATUSES = {
    VariantStatus.SUCCESS,
    VariantStatus.FAILED,
    VariantStatus.TIMEOUT,
}


class InvalidTransitionError(Exception):
    """A status write would move a state machine backwards or out of a terminal state."""

    def __init__(self, kind: str, current: str, target: str):
        super().__init__(f"Invalid {kind} transition: {current} -> {target}")
        self.kind = kind
        self.current = current
        self.target = target


def transition_run_status(current: RunStatus, target: RunStatus) -> RunStatus:
    """Validate a run status change and return the new status."""
    if target not in RUN_TRANSITIONS[current]:
        raise InvalidTransitionError("run", current.value, target.value)
    return target


def transition_variant_status(current: VariantStatus, target: VariantStatus) -> VariantStatus:
    """Validate a variant status change and return the new status."""
    if target not in VARIANT_TRANSITIONS[current]:
        raise InvalidTransitionError("variant", current.value, target.value)
    return target


def aggregate_run_status(statuses: List[VariantStatus]) -> RunStatus:
    """
    Derive the terminal run status from terminal variant statuses.

    Args:
        statuses: One status per variant

    Returns:
        COMPLETE if all succeeded, PARTIAL if some did, FAILED if none did
    """
    succeeded = sum(1 for s in statuses if s == VariantStatus.SUCCESS)
    if statuses and succeeded == len(statuses):
        return RunStatus.COMPLETE
    if succeeded > 0:
        return RunStatus.PARTIAL
    return RunStatus.FAILED


def truncate_error(message: Optional[str]) -> Optional[str]:
    if message is None:
        return None
    return message[:MAX_ERROR_MESSAGE_LENGTH]


# ============================================================================
# Variant outcomes and records
# ============================================================================


@dataclass
class VariantOutcome:
    """Result of one generation attempt; exactly one of success, failed, timeout."""

    variant_id: str
    status: VariantStatus
    latency_ms: int
    image_key: Optional[str] = None
    image_hash: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    @classmethod
    def success(cls, variant_id: str, latency_ms: int, image_key: str, image_hash: str) -> "VariantOutcome":
        return cls(
            variant_id=variant_id,
            status=VariantStatus.SUCCESS,
            latency_ms=latency_ms,
            image_key=image_key,
            image_hash=image_hash,
        )

    @classmethod
    def failed(cls, variant_id: str, latency_ms: int, error_message: str, error_code: str = "unknown") -> "VariantOutcome":
        return cls(
            variant_id=variant_id,
            status=VariantStatus.FAILED,
            latency_ms=latency_ms,
            error_code=error_code,
            error_message=truncate_error(error_message),
        )

    @classmethod
    def timeout(cls, variant_id: str, latency_ms: int, error_message: str = "Generation timed out") -> "VariantOutcome":
        return cls(
            variant_id=variant_id,
            status=VariantStatus.TIMEOUT,
            latency_ms=latency_ms,
            error_code="timeout",
            error_message=truncate_error(error_message),
        )

    @property
    def succeeded(self) -> bool:
        return self.status == VariantStatus.SUCCESS


@dataclass
class VariantResult:
    """Persisted per-variant record of a render run."""

    variant_id: str
    status: VariantStatus = VariantStatus.PENDING
    image_key: Optional[str] = None
    image_hash: Optional[str] = None
    latency_ms: Optional[int] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_VARIANT_STATUSES

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "variant_id": self.variant_id,
            "status": self.status.value,
            "image_key": self.image_key,
            "image_hash": self.image_hash,
            "latency_ms": self.latency_ms,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass
class RenderRun:
    """One request's attempt to produce all variants of a prompt pack."""

    shop_id: str
    product_asset_id: str
    room_session_id: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    trace_id: str = ""
    prompt_pack_version: int = 0
    model: str = ""
    status: RunStatus = RunStatus.PENDING
    product_image_hash: Optional[str] = None
    room_image_hash: Optional[str] = None
    resolved_facts_hash: Optional[str] = None
    prompt_pack_hash: Optional[str] = None
    variants: List[VariantResult] = field(default_factory=list)
    total_duration_ms: Optional[int] = None
    created_at: datetime = field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None

    @property
    def total_variants(self) -> int:
        return len(self.variants)

    @property
    def success_count(self) -> int:
        return sum(1 for v in self.variants if v.status == VariantStatus.SUCCESS)

    @property
    def fail_count(self) -> int:
        return sum(1 for v in self.variants if v.status == VariantStatus.FAILED)

    @property
    def timeout_count(self) -> int:
        return sum(1 for v in self.variants if v.status == VariantStatus.TIMEOUT)

    @property
    def is_complete(self) -> bool:
        """Check if run reached a terminal status."""
        return self.status in (RunStatus.COMPLETE, RunStatus.PARTIAL, RunStatus.FAILED)

    def get_variant(self, variant_id: str) -> Optional[VariantResult]:
        for variant in self.variants:
            if variant.variant_id == variant_id:
                return variant
        return None

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "shop_id": self.shop_id,
            "trace_id": self.trace_id,
            "product_asset_id": self.product_asset_id,
            "room_session_id": self.room_session_id,
            "prompt_pack_version": self.prompt_pack_version,
            "model": self.model,
            "status": self.status.value,
            "product_image_hash": self.product_image_hash,
            "room_image_hash": self.room_image_hash,
            "resolved_facts_hash": self.resolved_facts_hash,
            "prompt_pack_hash": self.prompt_pack_hash,
            "success_count": self.success_count,
            "fail_count": self.fail_count,
            "timeout_count": self.timeout_count,
            "total_duration_ms": self.total_duration_ms,
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "variants": [v.to_dict() for v in self.variants],
        }


@dataclass
class VariantSelection:
    """A customer's pick of one variant from a finished run."""

    shop_id: str
    product_asset_id: str
    room_session_id: str
    run_id: str
    variant_id: str
    image_key: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    trace_id: str = ""
    created_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "shop_id": self.shop_id,
            "product_asset_id": self.product_asset_id,
            "room_session_id": self.room_session_id,
            "run_id": self.run_id,
            "variant_id": self.variant_id,
            "image_key": self.image_key,
            "trace_id": self.trace_id,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class RunProgress:
    """Live tally of a run's variants."""

    total: int
    succeeded: int = 0
    failed: int = 0

    @property
    def in_flight(self) -> int:
        return self.total - self.succeeded - self.failed

    def record(self, outcome: VariantOutcome) -> None:
        if outcome.succeeded:
            self.succeeded += 1
        else:
            self.failed += 1

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "in_flight": self.in_flight,
        }


# ============================================================================
# Orchestrator input and output
# ============================================================================


@dataclass
class RenderInput:
    """Everything the orchestrator needs to fan out one run."""

    shop_id: str
    trace_id: str
    product_asset_id: str
    room_session_id: str
    product_ref: "RemoteFileHandle"
    room_ref: "RemoteFileHandle"
    resolved_facts: dict
    prompt_pack: "PromptPack"
    product_image_hash: Optional[str] = None
    room_image_hash: Optional[str] = None


@dataclass
class RenderRunResult:
    """Terminal summary of a run."""

    run_id: str
    status: RunStatus
    duration_ms: int
    outcomes: List[VariantOutcome] = field(default_factory=list)

    @property
    def successful(self) -> List[VariantOutcome]:
        return [o for o in self.outcomes if o.succeeded]

    @property
    def success_variant_ids(self) -> List[str]:
        return [o.variant_id for o in self.successful]
