"""Azure configuration management."""

import os
from dataclasses import dataclass


@dataclass
class AzureConfig:
    """Azure service configuration."""

    # Azure OpenAI
    openai_endpoint: str
    openai_api_key: str
    openai_api_version: str = "2024-08-01-preview"

    # Model deployments
    extractor_deployment: str = "gpt-4o"

    # Azure Blob Storage
    storage_account_name: str = ""
    storage_account_key: str = ""
    storage_connection_string: str = ""

    # Single container; object keys carry the layout (see-it-now/{run_id}/...)
    storage_container: str = "see-it"

    @classmethod
    def from_env(cls) -> "AzureConfig":
        """Load configuration from environment variables."""
        return cls(
            # OpenAI
            openai_endpoint=os.getenv("AZURE_OPENAI_ENDPOINT", ""),
            openai_api_key=os.getenv("AZURE_OPENAI_API_KEY", ""),
            openai_api_version=os.getenv("AZURE_OPENAI_API_VERSION", "2024-08-01-preview"),
            extractor_deployment=os.getenv("AZURE_OPENAI_EXTRACTOR_DEPLOYMENT", "gpt-4o"),

            # Storage
            storage_account_name=os.getenv("AZURE_STORAGE_ACCOUNT_NAME", ""),
            storage_account_key=os.getenv("AZURE_STORAGE_ACCOUNT_KEY", ""),
            storage_connection_string=os.getenv("AZURE_STORAGE_CONNECTION_STRING", ""),

            # Container
            storage_container=os.getenv("AZURE_STORAGE_CONTAINER", "see-it"),
        )

    def is_openai_configured(self) -> bool:
        """Check if Azure OpenAI is properly configured."""
        return bool(self.openai_endpoint and self.openai_api_key)

    def is_storage_configured(self) -> bool:
        """Check if Azure Blob Storage is properly configured."""
        return bool(self.storage_connection_string or
                   (self.storage_account_name and self.storage_account_key))
