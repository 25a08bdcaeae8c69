"""OpenAI Files + Batches client.

Uses httpx for HTTP operations against the OpenAI REST API. Each call opens a
short-lived client with a bounded timeout; any non-2xx response raises
ProviderError with the status and a bounded slice of the body.
"""

import httpx

from harmony.logging import get_logger
from harmony.providers.base import BatchProvider, ProviderBatchInfo, ProviderError

logger = get_logger(__name__)

MAX_ERROR_BODY_CHARS = 400


class OpenAIBatchClient(BatchProvider):
    """Production OpenAI batch client."""

    name = "openai"

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openai.com",
        timeout_s: float = 60.0,
    ):
        """Initialize the client.

        Args:
            api_key: OpenAI API key used for both submit and collect.
            base_url: API root without the /v1 suffix.
            timeout_s: Per-request timeout in seconds.
        """
        self._base_url = base_url.rstrip("/")
        self._api_url = f"{self._base_url}/v1"
        self._timeout = timeout_s
        self._headers = {"Authorization": f"Bearer {api_key}"}

    def _raise_for(self, response: httpx.Response, prefix: str) -> None:
        if 200 <= response.status_code < 300:
            return
        body = response.text[:MAX_ERROR_BODY_CHARS]
        raise ProviderError(
            f"{prefix}:{response.status_code}:{body}",
            status_code=response.status_code,
            body=body,
        )

    def upload_jsonl(self, content: str, filename: str = "rewrite_jobs.jsonl") -> str:
        """Upload batch input via POST /v1/files (purpose=batch)."""
        try:
            with httpx.Client() as client:
                response = client.post(
                    f"{self._api_url}/files",
                    headers=self._headers,
                    data={"purpose": "batch"},
                    files={"file": (filename, content.encode("utf-8"), "application/jsonl")},
                    timeout=self._timeout,
                )
        except httpx.HTTPError as e:
            raise ProviderError(f"openai_files_error:transport:{e}") from e

        self._raise_for(response, "openai_files_error")
        file_id = response.json().get("id")
        if not isinstance(file_id, str) or not file_id:
            raise ProviderError("openai_files_error:missing_file_id", response.status_code)
        return file_id

    def create_batch(
        self,
        input_file_id: str,
        endpoint: str,
        completion_window: str = "24h",
        metadata: dict[str, str] | None = None,
    ) -> str:
        """Create a batch via POST /v1/batches."""
        payload = {
            "input_file_id": input_file_id,
            "endpoint": endpoint,
            "completion_window": completion_window,
            "metadata": metadata or {},
        }
        try:
            with httpx.Client() as client:
                response = client.post(
                    f"{self._api_url}/batches",
                    headers=self._headers,
                    json=payload,
                    timeout=self._timeout,
                )
        except httpx.HTTPError as e:
            raise ProviderError(f"openai_batches_error:transport:{e}") from e

        self._raise_for(response, "openai_batches_error")
        batch_id = response.json().get("id")
        if not isinstance(batch_id, str) or not batch_id:
            raise ProviderError("openai_batches_error:missing_batch_id", response.status_code)
        return batch_id

    def get_batch(self, provider_batch_id: str) -> ProviderBatchInfo:
        """Poll a batch via GET /v1/batches/{id}."""
        try:
            with httpx.Client() as client:
                response = client.get(
                    f"{self._api_url}/batches/{provider_batch_id}",
                    headers=self._headers,
                    timeout=self._timeout,
                )
        except httpx.HTTPError as e:
            raise ProviderError(f"openai_batch_get_error:transport:{e}") from e

        self._raise_for(response, "openai_batch_get_error")
        data = response.json()
        return ProviderBatchInfo(
            id=data.get("id") or provider_batch_id,
            status=str(data.get("status") or ""),
            output_file_id=data.get("output_file_id") or None,
            error_file_id=data.get("error_file_id") or None,
        )

    def download_file(self, file_id: str) -> str:
        """Download file content via GET /v1/files/{id}/content."""
        try:
            with httpx.Client() as client:
                response = client.get(
                    f"{self._api_url}/files/{file_id}/content",
                    headers=self._headers,
                    timeout=self._timeout,
                )
        except httpx.HTTPError as e:
            raise ProviderError(f"openai_file_download_error:transport:{e}") from e

        self._raise_for(response, "openai_file_download_error")
        return response.text
