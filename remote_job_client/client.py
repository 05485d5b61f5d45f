from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Hashable, Optional, Protocol

from loguru import logger

from remote_job_client.cancellation import CancellationToken, OperationRegistry
from remote_job_client.errors import ErrorCategory
from remote_job_client.extraction import ChunkProgressCallback, ExtractionMerger
from remote_job_client.job_poller import JobPoller, ProgressCallback, StatusCallback
from remote_job_client.models import (
    ChunkingConfig,
    ExtractionResult,
    JobHandle,
    PollingConfig,
    RetryConfig,
    TransportRequest,
)
from remote_job_client.request_executor import RequestExecutor, RetryCallback
from remote_job_client.retry_policy import RetryPolicy
from remote_job_client.transport import AiohttpTransport, Transport

OFFLINE_MESSAGE = "AI API is offline. Entity generation from text is not available."


class SessionStore(Protocol):
    """Opaque per-conversation string store used to resume server-side sessions"""

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...


class InMemorySessionStore:
    def __init__(self):
        self._values: dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        self._values[key] = value


class RemoteJobClient:
    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        retry_config: Optional[RetryConfig] = None,
        polling_config: Optional[PollingConfig] = None,
        chunking_config: Optional[ChunkingConfig] = None,
        transport: Optional[Transport] = None,
        registry: Optional[OperationRegistry] = None,
        session_store: Optional[SessionStore] = None,
        on_status_change: Optional[StatusCallback] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.retry_config = retry_config or RetryConfig()
        self.polling_config = polling_config or PollingConfig()
        self.chunking_config = chunking_config or ChunkingConfig()
        self._owns_transport = transport is None
        self.transport = transport or AiohttpTransport()
        self.executor = RequestExecutor(self.transport, RetryPolicy(self.retry_config))
        self.registry = registry or OperationRegistry()
        self.session_store = session_store or InMemorySessionStore()
        self.on_status_change = on_status_change
        self.is_online = False
        self.logger = logger

    async def __aenter__(self) -> "RemoteJobClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_transport:
            await self.transport.close()

    def set_retry_config(self, **overrides: Any) -> None:
        """Partially override the retry configuration"""
        self.retry_config = self.retry_config.merged(**overrides)
        self.executor.policy = RetryPolicy(self.retry_config)

    def get_retry_config(self) -> RetryConfig:
        return self.retry_config

    def set_base_url(self, url: str) -> None:
        self.base_url = url.rstrip("/")

    def set_api_key(self, key: str) -> None:
        self.api_key = key

    @property
    def headers(self) -> dict[str, str]:
        if self.api_key:
            return {"Authorization": f"Bearer {self.api_key}"}
        return {}

    @asynccontextmanager
    async def operation(self, operation_id: Hashable) -> AsyncIterator[CancellationToken]:
        """Register a cancellable top-level operation for the duration of the block"""
        async with self.registry.track(operation_id) as token:
            yield token

    def cancel(self, operation_id: Hashable) -> bool:
        return self.registry.cancel(operation_id)

    async def check_health(self, token: Optional[CancellationToken] = None) -> Optional[dict]:
        """Check whether the API is reachable, trying /health and then the root"""
        for path in ("/health", "/"):
            request = TransportRequest(method="GET", url=f"{self.base_url}{path}", headers=self.headers)
            outcome = await self.executor.execute(request, self.retry_config.base_timeout, token)
            if outcome.is_success:
                self.is_online = True
                data = outcome.response.json_data
                return data if isinstance(data, dict) else {"status": "ok"}
            if outcome.is_cancelled:
                break

        self.is_online = False
        self.logger.info("API unavailable - entity extraction will not work")
        return None

    async def process_text(
        self,
        text: str,
        existing_entities: Optional[list[dict[str, Any]]] = None,
        reference_time: Optional[str] = None,
        token: Optional[CancellationToken] = None,
        on_chunk_progress: Optional[ChunkProgressCallback] = None,
        on_retry: Optional[RetryCallback] = None,
    ) -> ExtractionResult:
        """Extract entities from text, chunking large inputs"""
        if not self.is_online:
            await self.check_health(token)
        if not self.is_online:
            return ExtractionResult(
                success=False,
                error=OFFLINE_MESSAGE,
                category=ErrorCategory.network,
                remediation=RetryPolicy.remediation(ErrorCategory.network),
                original_text=text,
            )

        self.logger.info(f"Processing text with AI: {text[:100]!r}")
        merger = ExtractionMerger(
            self.executor,
            f"{self.base_url}/api/process-text",
            self.chunking_config,
            self.headers,
        )
        return await merger.extract(
            text,
            token,
            existing_entities=existing_entities,
            reference_time=reference_time,
            on_chunk_progress=on_chunk_progress,
            on_retry=on_retry,
        )

    def _job_poller(self) -> JobPoller:
        return JobPoller(
            self.executor,
            submit_url=f"{self.base_url}/api/generate-report",
            status_url=f"{self.base_url}/api/report-status/{{job_id}}",
            download_url=f"{self.base_url}/api/download-report/{{job_id}}/md",
            polling_config=self.polling_config,
            headers=self.headers,
        )

    async def generate_report(
        self,
        description: str,
        conversation_key: Optional[str] = None,
        token: Optional[CancellationToken] = None,
        on_progress: Optional[ProgressCallback] = None,
        on_status: Optional[StatusCallback] = None,
        on_retry: Optional[RetryCallback] = None,
    ) -> JobHandle:
        """Submit a report job and poll it to a terminal state.

        When `conversation_key` is given, the server conversation id is read
        from and saved to the session store so follow-up reports continue the
        same conversation.
        """
        body: dict[str, Any] = {
            "description": description,
            "vault_context": "",
            "force_new_report": True,
        }
        if conversation_key is not None:
            conversation_id = self.session_store.get(conversation_key)
            if conversation_id:
                body["conversation_id"] = conversation_id

        poller = self._job_poller()
        handle = await poller.submit(body, token, on_retry)
        if conversation_key is not None and handle.conversation_id:
            self.session_store.set(conversation_key, handle.conversation_id)

        handle = await poller.poll(handle, token, on_progress, on_status or self.on_status_change)
        if conversation_key is not None and handle.conversation_id:
            self.session_store.set(conversation_key, handle.conversation_id)
        return handle

    async def resume_report(
        self,
        job_id: str,
        token: Optional[CancellationToken] = None,
        on_progress: Optional[ProgressCallback] = None,
        on_status: Optional[StatusCallback] = None,
    ) -> JobHandle:
        return await self._job_poller().resume(
            job_id, token, on_progress, on_status or self.on_status_change
        )
