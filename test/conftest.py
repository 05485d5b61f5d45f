import pytest

from remote_job_client.models import PollingConfig, RetryConfig
from remote_job_client.request_executor import RequestExecutor
from remote_job_client.retry_policy import RetryPolicy
from scripted_transport import ScriptedTransport


@pytest.fixture
def fast_retry() -> RetryConfig:
    """Retry settings small enough for tests to run instantly."""
    return RetryConfig(
        max_retries=3,
        base_delay=0.001,
        max_delay=0.005,
        base_timeout=1.0,
        max_timeout=2.0,
    )


@pytest.fixture
def fast_polling(fast_retry) -> PollingConfig:
    return PollingConfig(
        fast_interval=0.001,
        medium_interval=0.002,
        slow_interval=0.003,
        fast_threshold=0.005,
        medium_threshold=0.01,
        max_elapsed=5.0,
        max_consecutive_errors=3,
        submit_retry=fast_retry,
        status_retry=fast_retry.merged(max_retries=1),
        download_retry=fast_retry,
    )


@pytest.fixture
def transport() -> ScriptedTransport:
    return ScriptedTransport()


@pytest.fixture
def executor(transport, fast_retry) -> RequestExecutor:
    return RequestExecutor(transport, RetryPolicy(fast_retry))
