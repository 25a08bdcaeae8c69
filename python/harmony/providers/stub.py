"""In-memory batch provider for tests and local runs.

Files and batches live in dicts. A created batch stays ``in_progress`` until
a test (or ``auto_complete``) writes its output file.
"""

import json
from uuid import uuid4

from harmony.providers.base import BatchProvider, ProviderBatchInfo, ProviderError


class StubBatchProvider(BatchProvider):
    """Fake batch provider with deterministic behavior."""

    name = "openai"

    def __init__(self, auto_complete: bool = False):
        self.files: dict[str, str] = {}
        self.batches: dict[str, dict] = {}
        self.auto_complete = auto_complete
        self.fail_upload: str | None = None
        self.fail_create: str | None = None
        self.fail_get: str | None = None
        self.fail_download: str | None = None

    def upload_jsonl(self, content: str, filename: str = "rewrite_jobs.jsonl") -> str:
        if self.fail_upload:
            raise ProviderError(self.fail_upload, status_code=500)
        file_id = f"file-stub-{uuid4().hex[:12]}"
        self.files[file_id] = content
        return file_id

    def create_batch(
        self,
        input_file_id: str,
        endpoint: str,
        completion_window: str = "24h",
        metadata: dict[str, str] | None = None,
    ) -> str:
        if self.fail_create:
            raise ProviderError(self.fail_create, status_code=500)
        if input_file_id not in self.files:
            raise ProviderError(f"unknown input file {input_file_id}", status_code=404)
        batch_id = f"batch-stub-{uuid4().hex[:12]}"
        self.batches[batch_id] = {
            "id": batch_id,
            "status": "in_progress",
            "input_file_id": input_file_id,
            "endpoint": endpoint,
            "metadata": dict(metadata or {}),
            "output_file_id": None,
            "error_file_id": None,
        }
        if self.auto_complete:
            self.complete_with_echo(batch_id)
        return batch_id

    def get_batch(self, provider_batch_id: str) -> ProviderBatchInfo:
        if self.fail_get:
            raise ProviderError(self.fail_get, status_code=500)
        batch = self.batches.get(provider_batch_id)
        if batch is None:
            raise ProviderError(f"batch not found: {provider_batch_id}", status_code=404)
        return ProviderBatchInfo(
            id=batch["id"],
            status=batch["status"],
            output_file_id=batch["output_file_id"],
            error_file_id=batch["error_file_id"],
        )

    def download_file(self, file_id: str) -> str:
        if self.fail_download:
            raise ProviderError(self.fail_download, status_code=500)
        if file_id not in self.files:
            raise ProviderError(f"file not found: {file_id}", status_code=404)
        return self.files[file_id]

    # Test helper methods

    def input_lines(self, provider_batch_id: str) -> list[dict]:
        """Parsed request lines of a batch (test helper)."""
        content = self.files[self.batches[provider_batch_id]["input_file_id"]]
        return [json.loads(line) for line in content.splitlines() if line.strip()]

    def set_status(self, provider_batch_id: str, status: str) -> None:
        """Force a provider-side status (test helper)."""
        self.batches[provider_batch_id]["status"] = status

    def complete(self, provider_batch_id: str, results: list[dict]) -> str:
        """Mark a batch completed with the given output lines (test helper).

        Each result is written as one JSONL line, so callers control the exact
        shape (``custom_id``, ``response.body``, ``error``).
        """
        file_id = f"file-out-{uuid4().hex[:12]}"
        self.files[file_id] = "\n".join(json.dumps(r) for r in results)
        batch = self.batches[provider_batch_id]
        batch["status"] = "completed"
        batch["output_file_id"] = file_id
        return file_id

    def complete_with_echo(self, provider_batch_id: str, text: str | None = None) -> str:
        """Complete every line with a structured rewrite (test helper).

        Without ``text`` each line echoes the original message from its user
        payload.
        """
        results = []
        for line in self.input_lines(provider_batch_id):
            rewritten = text
            if rewritten is None:
                payload = json.loads(line["body"]["input"][0]["content"])
                rewritten = payload["original_message"]
            results.append(
                {
                    "custom_id": line["custom_id"],
                    "response": {
                        "status_code": 200,
                        "body": {"output_text": json.dumps({"rewritten_text": rewritten})},
                    },
                    "error": None,
                }
            )
        return self.complete(provider_batch_id, results)
