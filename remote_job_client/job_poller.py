"""
Submit long-running jobs and follow them to a terminal state.

The poll loop sleeps on the operation's cancellation token, so cancelling
wakes it immediately and no further request or callback happens afterwards.
Each status fetch and the final download use their own bounded retries;
transient status-fetch failures are tolerated up to a configured number in a
row before the job is declared failed.
"""
import inspect
from typing import Any, Callable, Optional

from loguru import logger
from pydantic import ValidationError

from remote_job_client.cancellation import CancellationToken, cancellable_sleep
from remote_job_client.content import extract_content, extract_ready_response, sanitize_markdown
from remote_job_client.errors import (
    ErrorCategory,
    NoJobId,
    OperationCancelled,
    ProtocolError,
    RemoteJobError,
)
from remote_job_client.models import (
    SERVER_STATUSES,
    JobHandle,
    JobProgress,
    JobStatus,
    PollingConfig,
    PollState,
    TransportRequest,
)
from remote_job_client.request_executor import RequestExecutor, RetryCallback
from remote_job_client.retry_policy import RetryPolicy

ACTIVE_STATUSES = (JobStatus.submitted, JobStatus.queued, JobStatus.processing)

# Keyword groups in a server-reported error and the hint shown for them
FAILURE_HINTS = (
    (
        ("ssl", "certificate", "n8n", "upstream", "unavailable"),
        "Backend service temporarily unavailable. Please try again in a few minutes.",
    ),
    (
        ("quota", "exhausted"),
        "Quota exhausted. Please upgrade your plan or wait for quota renewal.",
    ),
    (
        ("expired",),
        "Your license key or trial has expired. Please renew your subscription.",
    ),
    (
        ("inactive",),
        "Your license key is inactive. Please check your account status.",
    ),
)
DEFAULT_FAILURE_HINT = "The job failed on the server. Please try again or rephrase the request."
TIMED_OUT_HINT = (
    "The job may still be running on the server. Check again later using its job id."
)

StatusCallback = Callable[[JobStatus], Any]
ProgressCallback = Callable[[JobProgress, list[str]], Any]


def failure_hint(error_text: str) -> Optional[str]:
    lowered = error_text.lower()
    for keywords, hint in FAILURE_HINTS:
        if any(keyword in lowered for keyword in keywords):
            return hint
    return None


async def _invoke(callback: Optional[Callable[..., Any]], *args: Any) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class JobPoller:
    def __init__(
        self,
        executor: RequestExecutor,
        submit_url: str,
        status_url: str,
        download_url: str,
        polling_config: Optional[PollingConfig] = None,
        headers: Optional[dict[str, str]] = None,
    ):
        """
        Args:
            executor: Executor used for every request
            submit_url: Endpoint accepting the job submission (POST)
            status_url: Status endpoint template containing "{job_id}"
            download_url: Artifact endpoint template containing "{job_id}"
            polling_config: Poll tiers, time budget and per-call retry settings
            headers: Extra headers sent with every request
        """
        self.executor = executor
        self.submit_url = submit_url
        self.status_url = status_url
        self.download_url = download_url
        self.config = polling_config or PollingConfig()
        self.headers = headers or {}
        self.logger = logger

    def adaptive_interval(self, elapsed: float) -> float:
        """Poll fast at first, then back off for long-running jobs"""
        if elapsed < self.config.fast_threshold:
            return self.config.fast_interval
        if elapsed < self.config.medium_threshold:
            return self.config.medium_interval
        return self.config.slow_interval

    async def submit(
        self,
        body: dict[str, Any],
        token: Optional[CancellationToken] = None,
        on_retry: Optional[RetryCallback] = None,
    ) -> JobHandle:
        request = TransportRequest(
            method="POST",
            url=self.submit_url,
            headers={"Content-Type": "application/json", **self.headers},
            json_body=body,
        )
        outcome = await self.executor.execute_with_retry(
            request, token, on_retry, self.config.submit_retry
        )
        if not outcome.is_success:
            error = outcome.error
            if outcome.response is not None and isinstance(error, RemoteJobError):
                hint = failure_hint(outcome.response.text)
                if hint:
                    error.remediation = hint
            raise error

        data = outcome.response.json_data
        job_id = data.get("job_id") if isinstance(data, dict) else None
        if not job_id:
            raise NoJobId()

        handle = JobHandle(job_id=str(job_id), conversation_id=data.get("conversation_id"))
        handle.history.append(JobStatus.submitted)
        self.logger.info(f"Job {handle.job_id} submitted")
        return handle

    async def poll(
        self,
        handle: JobHandle,
        token: Optional[CancellationToken] = None,
        on_progress: Optional[ProgressCallback] = None,
        on_status: Optional[StatusCallback] = None,
    ) -> JobHandle:
        """Poll until the job reaches a terminal state; the returned handle says which"""
        state = PollState(elapsed=handle.elapsed)
        try:
            while state.elapsed < self.config.max_elapsed and handle.status in ACTIVE_STATUSES:
                if token is not None:
                    token.raise_if_cancelled()
                interval = self.adaptive_interval(state.elapsed)
                await cancellable_sleep(interval, token)
                state.elapsed += interval
                handle.elapsed = state.elapsed
                if token is not None:
                    token.raise_if_cancelled()

                try:
                    payload = await self._fetch_status(handle.job_id, token)
                except OperationCancelled:
                    raise
                except RemoteJobError as e:
                    if not e.category.retryable:
                        self.logger.error(f"Non-retryable error polling job {handle.job_id}: {e}")
                        self._fail(handle, e.message, e.remediation, e.category)
                        return handle
                    state.consecutive_error_count += 1
                    self.logger.warning(
                        f"Status poll error for job {handle.job_id} "
                        f"({state.consecutive_error_count}/{self.config.max_consecutive_errors}): {e}"
                    )
                    if state.consecutive_error_count >= self.config.max_consecutive_errors:
                        self._fail(
                            handle,
                            "Network connection lost after multiple retries.",
                            RetryPolicy.remediation(ErrorCategory.network),
                            ErrorCategory.network,
                        )
                        return handle
                    continue

                state.consecutive_error_count = 0
                await self._handle_payload(handle, payload, token, on_progress, on_status)

            if not handle.status.is_terminal:
                self.logger.warning(
                    f"Job {handle.job_id} still {handle.status.value} after {state.elapsed:.0f}s"
                )
                handle.error = f"Job did not finish within {self.config.max_elapsed:.0f} seconds"
                handle.remediation = TIMED_OUT_HINT
                handle.category = ErrorCategory.timeout
                handle.transition(JobStatus.timed_out)
        except OperationCancelled as e:
            self.logger.info(f"Polling for job {handle.job_id} cancelled")
            handle.error = e.message
            handle.category = ErrorCategory.cancelled
            handle.transition(JobStatus.cancelled)

        self.logger.info(
            f"Polling finished for job {handle.job_id}: {handle.status.value} "
            f"after {handle.elapsed:.0f}s"
        )
        return handle

    async def _handle_payload(
        self,
        handle: JobHandle,
        payload: dict[str, Any],
        token: Optional[CancellationToken],
        on_progress: Optional[ProgressCallback],
        on_status: Optional[StatusCallback],
    ) -> None:
        status = SERVER_STATUSES[payload["status"]]
        self.logger.debug(f"Job {handle.job_id} status: {payload}")
        if status in ACTIVE_STATUSES:
            handle.transition(status)
        await _invoke(on_status, status)

        intermediate = payload.get("intermediate_results")
        if isinstance(intermediate, list):
            handle.intermediate_results = [str(item) for item in intermediate]
        progress = payload.get("progress")
        if isinstance(progress, dict):
            try:
                handle.progress = JobProgress(
                    message=progress.get("message") or "Processing...",
                    percent=progress.get("percent") or 0,
                )
            except ValidationError as e:
                self.logger.warning(f"Ignoring malformed progress for job {handle.job_id}: {e}")
            else:
                await _invoke(on_progress, handle.progress, handle.intermediate_results)

        if status == JobStatus.failed:
            backend_error = payload.get("error") or "Unknown error"
            self.logger.error(f"Job {handle.job_id} failed with error: {backend_error}")
            self._fail(
                handle,
                f"Job failed: {backend_error}",
                failure_hint(backend_error) or DEFAULT_FAILURE_HINT,
                ErrorCategory.server_error,
            )
            return

        if payload.get("response_ready"):
            self.logger.info(f"Job {handle.job_id} response ready, retrieving result")
            handle.conversation_id = handle.conversation_id or payload.get("conversation_id")
            filename = f"response_{handle.job_id}.md"
            content = extract_ready_response(payload)
        elif status == JobStatus.completed:
            filename = payload.get("filename") or f"report_{handle.job_id}.md"
            content = None
        else:
            return

        if content is None:
            try:
                content = await self._download(handle.job_id, token)
            except OperationCancelled:
                raise
            except RemoteJobError as e:
                self.logger.error(f"Downloading result of job {handle.job_id} failed: {e}")
                self._fail(handle, f"Failed to download result: {e.message}", e.remediation, e.category)
                return
        handle.filename = filename
        self._complete(handle, content)

    async def _fetch_status(
        self, job_id: str, token: Optional[CancellationToken]
    ) -> dict[str, Any]:
        request = TransportRequest(
            method="GET",
            url=self.status_url.format(job_id=job_id),
            headers=dict(self.headers),
        )
        response = await self.executor.request(
            request, token, retry_config=self.config.status_retry
        )
        payload = response.json_data
        status = payload.get("status") if isinstance(payload, dict) else None
        if not isinstance(status, str) or status not in SERVER_STATUSES:
            raise ProtocolError(
                f"Unexpected status payload for job {job_id}: {response.text[:200]}",
                ErrorCategory.unknown,
            )
        return payload

    async def _download(self, job_id: str, token: Optional[CancellationToken]) -> str:
        request = TransportRequest(
            method="GET",
            url=self.download_url.format(job_id=job_id),
            headers=dict(self.headers),
        )
        response = await self.executor.request(
            request, token, retry_config=self.config.download_retry
        )
        content = extract_content(response.text)
        if not content:
            raise ProtocolError(f"No content received for job {job_id}", ErrorCategory.unknown)
        return content

    def _complete(self, handle: JobHandle, content: str) -> None:
        handle.content = sanitize_markdown(content)
        handle.transition(JobStatus.completed)
        self.logger.info(f"Job {handle.job_id} completed ({len(handle.content)} chars)")

    def _fail(
        self,
        handle: JobHandle,
        error: str,
        remediation: str,
        category: ErrorCategory,
    ) -> None:
        handle.error = error
        handle.remediation = remediation
        handle.category = category
        handle.transition(JobStatus.failed)

    async def run(
        self,
        body: dict[str, Any],
        token: Optional[CancellationToken] = None,
        on_progress: Optional[ProgressCallback] = None,
        on_status: Optional[StatusCallback] = None,
        on_retry: Optional[RetryCallback] = None,
    ) -> JobHandle:
        """Submit a job and poll it to completion.

        Submission failures (including NoJobId) are raised since there is no
        job to track yet; everything after that is reported on the handle.
        """
        handle = await self.submit(body, token, on_retry)
        return await self.poll(handle, token, on_progress, on_status)

    async def resume(
        self,
        job_id: str,
        token: Optional[CancellationToken] = None,
        on_progress: Optional[ProgressCallback] = None,
        on_status: Optional[StatusCallback] = None,
    ) -> JobHandle:
        """Pick up tracking of a job submitted earlier, e.g. before a restart"""
        handle = JobHandle(job_id=job_id, status=JobStatus.processing)
        return await self.poll(handle, token, on_progress, on_status)
