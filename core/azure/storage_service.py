"""Azure Blob Storage service used as the object store for images."""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from azure.storage.blob import (
    BlobSasPermissions,
    BlobServiceClient,
    ContainerClient,
    ContentSettings,
    generate_blob_sas,
)

from .config import AzureConfig

logger = logging.getLogger(__name__)

DEFAULT_SIGNED_URL_TTL_SECONDS = 60 * 60


class AzureBlobStorageService:
    """Key-addressed object storage backed by a single blob container.

    The SDK client is synchronous; every network call is pushed to a worker
    thread so concurrent variant uploads do not block the event loop.
    """

    def __init__(self, config: AzureConfig):
        self.config = config
        self._client: Optional[BlobServiceClient] = None
        self._container: Optional[ContainerClient] = None

    @property
    def client(self) -> BlobServiceClient:
        """Get or create Blob Storage client."""
        if self._client is None:
            if not self.config.is_storage_configured():
                raise ValueError(
                    "Azure Blob Storage is not configured. "
                    "Set AZURE_STORAGE_CONNECTION_STRING or account name/key."
                )

            if self.config.storage_connection_string:
                self._client = BlobServiceClient.from_connection_string(
                    self.config.storage_connection_string
                )
            else:
                account_url = f"https://{self.config.storage_account_name}.blob.core.windows.net"
                self._client = BlobServiceClient(
                    account_url=account_url,
                    credential=self.config.storage_account_key,
                )

        return self._client

    def get_container(self) -> ContainerClient:
        """Get the container client, creating the container if necessary."""
        if self._container is None:
            container = self.client.get_container_client(self.config.storage_container)
            if not container.exists():
                container.create_container()
                logger.info(f"Created container: {self.config.storage_container}")
            self._container = container
        return self._container

    async def upload_buffer(
        self,
        data: bytes,
        key: str,
        content_type: str,
        metadata: Optional[dict] = None,
    ) -> str:
        """
        Upload raw bytes under an object key.

        Args:
            data: Object content
            key: Object key (e.g. "see-it-now/{run_id}/{variant_id}.jpg")
            content_type: MIME type stored with the object
            metadata: Optional blob metadata

        Returns:
            The object key
        """
        def _upload() -> None:
            blob_client = self.get_container().get_blob_client(key)
            blob_client.upload_blob(
                data,
                overwrite=True,
                content_settings=ContentSettings(content_type=content_type),
                metadata=metadata,
            )

        try:
            await asyncio.to_thread(_upload)
        except Exception as e:
            logger.error(f"Upload failed for {key}: {e}")
            raise

        logger.info(f"Uploaded blob: {key} ({len(data)} bytes)")
        return key

    async def download_buffer(self, key: str) -> bytes:
        """Download an object's content."""
        def _download() -> bytes:
            blob_client = self.get_container().get_blob_client(key)
            return blob_client.download_blob().readall()

        try:
            return await asyncio.to_thread(_download)
        except Exception as e:
            logger.error(f"Download failed for {key}: {e}")
            raise

    async def get_signed_read_url(
        self,
        key: str,
        ttl_seconds: int = DEFAULT_SIGNED_URL_TTL_SECONDS,
    ) -> str:
        """
        Mint a time-limited read URL for an object.

        Args:
            key: Object key
            ttl_seconds: URL lifetime in seconds

        Returns:
            SAS URL granting read access until expiry
        """
        account_name = self.config.storage_account_name or self.client.account_name
        account_key = self.config.storage_account_key or getattr(
            self.client.credential, "account_key", None
        )
        if not account_key:
            raise ValueError("Storage account key required for SAS generation")

        sas_token = generate_blob_sas(
            account_name=account_name,
            container_name=self.config.storage_container,
            blob_name=key,
            account_key=account_key,
            permission=BlobSasPermissions(read=True),
            expiry=datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds),
        )

        return (
            f"https://{account_name}.blob.core.windows.net/"
            f"{self.config.storage_container}/{key}?{sas_token}"
        )
