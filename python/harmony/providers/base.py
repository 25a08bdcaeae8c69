"""Batch provider abstraction.

A batch provider accepts a JSONL file of requests, runs them asynchronously,
and later exposes an output file with one JSON result per line. The pipeline
only needs four calls: upload the input file, create a batch, poll it, and
download a file by id.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass

from harmony.db.models import ProviderBatchStatus


@dataclass(frozen=True)
class ProviderBatchInfo:
    """Provider-side view of a batch."""

    id: str
    status: str
    output_file_id: str | None = None
    error_file_id: str | None = None


class ProviderError(Exception):
    """Provider call failed (non-2xx response or transport error)."""

    def __init__(self, message: str, status_code: int | None = None, body: str | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.body = body


class BatchProvider(ABC):
    """Abstract base class for batch provider implementations."""

    name: str = "openai"

    @abstractmethod
    def upload_jsonl(self, content: str, filename: str = "rewrite_jobs.jsonl") -> str:
        """Upload a JSONL input file.

        Returns:
            The provider file id.

        Raises:
            ProviderError: If the upload fails.
        """
        ...

    @abstractmethod
    def create_batch(
        self,
        input_file_id: str,
        endpoint: str,
        completion_window: str = "24h",
        metadata: dict[str, str] | None = None,
    ) -> str:
        """Create a batch over an uploaded file.

        Returns:
            The provider batch id.

        Raises:
            ProviderError: If creation fails.
        """
        ...

    @abstractmethod
    def get_batch(self, provider_batch_id: str) -> ProviderBatchInfo:
        """Poll a batch.

        Raises:
            ProviderError: If the poll fails.
        """
        ...

    @abstractmethod
    def download_file(self, file_id: str) -> str:
        """Download a file's content as text.

        Raises:
            ProviderError: If the download fails.
        """
        ...


def map_provider_status(status: str | None) -> ProviderBatchStatus:
    """Map a provider batch state onto the registry vocabulary."""
    s = (status or "").lower()
    if s == "completed":
        return ProviderBatchStatus.completed
    if s == "failed":
        return ProviderBatchStatus.failed
    if s in ("canceled", "cancelled"):
        return ProviderBatchStatus.canceled
    return ProviderBatchStatus.running
