"""Batch provider clients.

Provides:
- BatchProvider, the abstract client the submitter and collector talk to
- OpenAIBatchClient for the OpenAI Files + Batches API
- StubBatchProvider, an in-memory fake for tests and local runs
- get_batch_provider() to pick one from settings
"""

from harmony.config import RewriteProviderKind, Settings, get_settings
from harmony.providers.base import (
    BatchProvider,
    ProviderBatchInfo,
    ProviderError,
    map_provider_status,
)
from harmony.providers.openai_batch import OpenAIBatchClient
from harmony.providers.stub import StubBatchProvider


# Process-wide stub so batches submitted by one tick are visible to the next
_stub_provider: StubBatchProvider | None = None


def get_stub_provider() -> StubBatchProvider:
    """Get or create the shared stub provider (completes batches on creation)."""
    global _stub_provider
    if _stub_provider is None:
        _stub_provider = StubBatchProvider(auto_complete=True)
    return _stub_provider


def reset_stub_provider() -> None:
    """Drop the shared stub provider (for tests)."""
    global _stub_provider
    _stub_provider = None


def get_batch_provider(settings: Settings | None = None) -> BatchProvider:
    """Get the configured batch provider.

    Returns:
        OpenAIBatchClient when REWRITE_PROVIDER=openai and an API key is set,
        otherwise the shared StubBatchProvider.
    """
    settings = settings or get_settings()
    if settings.rewrite_provider == RewriteProviderKind.OPENAI and settings.openai_rewrite_api_key:
        return OpenAIBatchClient(
            api_key=settings.openai_rewrite_api_key,
            base_url=settings.openai_base_url,
            timeout_s=settings.rewrite_provider_timeout_s,
        )
    return get_stub_provider()


__all__ = [
    "BatchProvider",
    "OpenAIBatchClient",
    "ProviderBatchInfo",
    "ProviderError",
    "StubBatchProvider",
    "get_batch_provider",
    "get_stub_provider",
    "map_provider_status",
    "reset_stub_provider",
]
