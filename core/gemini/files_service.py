"""Cache of remote file handles on the Gemini Files API.

Images are uploaded once and referenced by URI from every generation call
until the handle nears expiry. Persisting a refreshed handle is left to the
caller.
"""

import inspect
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from io import BytesIO
from typing import Awaitable, Callable, Optional, Union

from google import genai
from google.genai import types

from core.images import validate_magic_bytes

from .config import GeminiConfig

logger = logging.getLogger(__name__)

# Raw bytes, or a coroutine function that loads them on a cache miss
ContentSource = Union[bytes, Callable[[], Awaitable[bytes]]]


@dataclass
class RemoteFileHandle:
    """Reference to an uploaded file on the model provider."""

    uri: str
    expires_at: datetime
    mime_type: str = ""
    name: str = ""
    source_key: Optional[str] = None
    refreshed: bool = False  # True when this call performed an upload

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "uri": self.uri,
            "expires_at": self.expires_at.isoformat(),
            "mime_type": self.mime_type,
            "name": self.name,
            "source_key": self.source_key,
        }


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class GeminiFilesService:
    """Uploads images to the Files API and reuses still-valid handles."""

    def __init__(self, config: GeminiConfig, client: Optional[genai.Client] = None):
        """
        Initialize the files service.

        Args:
            config: Gemini configuration
            client: Shared long-lived client (created lazily if omitted)
        """
        self.config = config
        self._client = client

    @property
    def client(self) -> genai.Client:
        """Get or create the Gemini client."""
        if self._client is None:
            if not self.config.is_configured():
                raise ValueError("Gemini is not configured. Set GEMINI_API_KEY.")
            self._client = genai.Client(api_key=self.config.api_key)
        return self._client

    @property
    def safety_margin(self) -> timedelta:
        return timedelta(minutes=self.config.file_safety_margin_minutes)

    def is_handle_valid(
        self,
        expires_at: Optional[datetime],
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Check whether a handle can still be used.

        Args:
            expires_at: Recorded expiry of the handle
            now: Current time (defaults to UTC now)

        Returns:
            True if now is before expiry minus the safety margin
        """
        if expires_at is None:
            return False
        now = _as_utc(now or datetime.now(timezone.utc))
        return now < _as_utc(expires_at) - self.safety_margin

    async def upload(
        self,
        data: bytes,
        mime_type: str,
        display_name: str,
        trace_id: str = "",
    ) -> RemoteFileHandle:
        """
        Upload image bytes to the Files API.

        Args:
            data: Image bytes
            mime_type: Declared MIME type (checked against magic bytes)
            display_name: Human-readable file name
            trace_id: Request correlation id for logs

        Returns:
            RemoteFileHandle for the new upload

        Raises:
            ImageValidationError: If the bytes do not match the MIME type
        """
        validate_magic_bytes(data, mime_type)

        uploaded = await self.client.aio.files.upload(
            file=BytesIO(data),
            config=types.UploadFileConfig(
                mime_type=mime_type,
                display_name=display_name,
            ),
        )

        expires_at = uploaded.expiration_time
        if expires_at is None:
            expires_at = datetime.now(timezone.utc) + timedelta(
                hours=self.config.file_validity_hours
            )

        logger.info(
            f"[{trace_id}] Uploaded {display_name} to Gemini Files API: "
            f"{uploaded.uri} (expires {_as_utc(expires_at).isoformat()})"
        )

        return RemoteFileHandle(
            uri=uploaded.uri,
            expires_at=_as_utc(expires_at),
            mime_type=uploaded.mime_type or mime_type,
            name=uploaded.name or "",
            refreshed=True,
        )

    async def ensure_remote_handle(
        self,
        existing_uri: Optional[str],
        existing_expiry: Optional[datetime],
        content: ContentSource,
        mime_type: str,
        filename: str,
        trace_id: str = "",
        existing_source_key: Optional[str] = None,
        source_key: Optional[str] = None,
    ) -> RemoteFileHandle:
        """
        Return a usable handle, uploading only when the cached one is stale.

        Args:
            existing_uri: Previously stored handle URI
            existing_expiry: Previously stored handle expiry
            content: Image bytes, or a coroutine function returning them;
                only awaited when an upload is needed
            mime_type: Image MIME type
            filename: Display name for an upload
            trace_id: Request correlation id for logs
            existing_source_key: Object key the stored handle was made from
            source_key: Object key of the current content

        Returns:
            RemoteFileHandle; ``refreshed`` tells the caller to persist it

        Raises:
            Exception: Upload errors propagate to the caller
        """
        same_source = (
            existing_source_key is None
            or source_key is None
            or existing_source_key == source_key
        )

        if existing_uri and same_source and self.is_handle_valid(existing_expiry):
            logger.info(f"[{trace_id}] Reusing Gemini file for {filename}: {existing_uri}")
            return RemoteFileHandle(
                uri=existing_uri,
                expires_at=_as_utc(existing_expiry),
                mime_type=mime_type,
                source_key=existing_source_key or source_key,
                refreshed=False,
            )

        reason = "missing" if not existing_uri else (
            "source changed" if not same_source else "expired"
        )
        logger.info(f"[{trace_id}] Gemini file for {filename} is {reason}, uploading")

        data = content
        if callable(content):
            data = content()
            if inspect.isawaitable(data):
                data = await data

        handle = await self.upload(data, mime_type, filename, trace_id)
        handle.source_key = source_key
        return handle
