import asyncio
from typing import Any, Callable, Optional

from loguru import logger

from remote_job_client.cancellation import (
    CancellationToken,
    cancellable_sleep,
    race_with_cancellation,
)
from remote_job_client.errors import (
    ErrorCategory,
    OperationCancelled,
    RemoteJobError,
    RequestFailed,
)
from remote_job_client.models import (
    AttemptOutcome,
    OutcomeKind,
    RetryConfig,
    TransportRequest,
    TransportResponse,
)
from remote_job_client.retry_policy import RetryPolicy
from remote_job_client.transport import Transport

# on_retry(attempt, max_retries, category, delay)
RetryCallback = Callable[[int, int, ErrorCategory, float], Any]


class RequestExecutor:
    def __init__(self, transport: Transport, policy: Optional[RetryPolicy] = None):
        self.transport = transport
        self.policy = policy or RetryPolicy()
        self.logger = logger

    async def execute(
        self,
        request: TransportRequest,
        timeout: float,
        token: Optional[CancellationToken] = None,
    ) -> AttemptOutcome:
        """Issue a single bounded call and normalize its outcome"""
        try:
            response = await race_with_cancellation(self.transport.send(request), token, timeout)
        except OperationCancelled as e:
            self.logger.debug(f"{request.method} {request.url} cancelled")
            return AttemptOutcome.fatal(ErrorCategory.cancelled, error=e)
        except asyncio.TimeoutError as e:
            self.logger.warning(f"{request.method} {request.url} timed out after {timeout:.1f}s")
            return AttemptOutcome.retryable(ErrorCategory.timeout, error=e)
        except Exception as e:
            category = self.policy.classify(e)
            self.logger.warning(f"{request.method} {request.url} failed ({category.value}): {e}")
            if category.retryable:
                return AttemptOutcome.retryable(category, error=e)
            return AttemptOutcome.fatal(category, error=e)

        if response.ok:
            return AttemptOutcome.success(response)

        category = self.policy.classify(status_code=response.status)
        error = RuntimeError(f"HTTP {response.status}: {response.text[:200]}")
        self.logger.error(f"API error {response.status} at {request.url}: {response.text[:200]}")
        if category.retryable:
            return AttemptOutcome.retryable(category, response.status, error)
        return AttemptOutcome(
            kind=OutcomeKind.fatal_failure,
            response=response,
            category=category,
            status_code=response.status,
            error=error,
        )

    async def execute_with_retry(
        self,
        request: TransportRequest,
        token: Optional[CancellationToken] = None,
        on_retry: Optional[RetryCallback] = None,
        retry_config: Optional[RetryConfig] = None,
    ) -> AttemptOutcome:
        """Run `execute` under the retry policy.

        Returns a Success outcome, or a FatalFailure whose error is a
        RemoteJobError carrying category and remediation text.
        """
        policy = self.policy if retry_config is None else RetryPolicy(retry_config)
        config = policy.config
        timeout = config.base_timeout
        had_timeout = False
        last: Optional[AttemptOutcome] = None

        for attempt in range(1, config.max_retries + 1):
            if had_timeout:
                timeout = policy.compute_timeout(timeout, True)
                self.logger.debug(f"Increased timeout to {timeout:.1f}s after timeout error")

            self.logger.debug(
                f"{request.method} {request.url} attempt {attempt}/{config.max_retries} "
                f"with {timeout:.1f}s timeout"
            )
            outcome = await self.execute(request, timeout, token)
            if outcome.is_success:
                return outcome
            if outcome.kind == OutcomeKind.fatal_failure:
                return self._finalize_fatal(outcome)

            last = outcome
            had_timeout = outcome.category == ErrorCategory.timeout
            if attempt >= config.max_retries:
                break

            delay = policy.compute_delay(attempt)
            self.logger.warning(
                f"Retry attempt {attempt}/{config.max_retries} in {delay:.1f}s "
                f"(reason: {outcome.category.value})"
            )
            if on_retry is not None:
                on_retry(attempt, config.max_retries, outcome.category, delay)
            try:
                await cancellable_sleep(delay, token)
            except OperationCancelled as e:
                return AttemptOutcome.fatal(ErrorCategory.cancelled, error=e)

        return self._exhausted(last, config.max_retries)

    def _finalize_fatal(self, outcome: AttemptOutcome) -> AttemptOutcome:
        if isinstance(outcome.error, RemoteJobError):
            return outcome
        category = outcome.category or ErrorCategory.unknown
        error = RequestFailed(
            self.policy.describe(category, outcome.status_code, outcome.error),
            category,
            self.policy.remediation(category),
            outcome.status_code,
        )
        return outcome.model_copy(update={"error": error})

    def _exhausted(self, last: AttemptOutcome, attempts: int) -> AttemptOutcome:
        category = last.category or ErrorCategory.unknown
        description = self.policy.describe(category, last.status_code, last.error)
        error = RequestFailed(
            f"Request failed after {attempts} attempts: {description}",
            category,
            self.policy.remediation(category),
            last.status_code,
            attempts=attempts,
        )
        self.logger.error(f"All retries exhausted: {description}")
        return AttemptOutcome.fatal(category, last.status_code, error)

    async def request(
        self,
        request: TransportRequest,
        token: Optional[CancellationToken] = None,
        on_retry: Optional[RetryCallback] = None,
        retry_config: Optional[RetryConfig] = None,
    ) -> TransportResponse:
        """Like `execute_with_retry` but returns the response or raises the failure"""
        outcome = await self.execute_with_retry(request, token, on_retry, retry_config)
        if outcome.is_success:
            return outcome.response
        raise outcome.error
