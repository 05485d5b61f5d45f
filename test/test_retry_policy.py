import asyncio

import aiohttp
import pytest
from pydantic import ValidationError

from remote_job_client.errors import ErrorCategory, OperationCancelled
from remote_job_client.models import RetryConfig
from remote_job_client.retry_policy import RetryPolicy, is_transient_message


class TestComputeDelay:
    def test_delay_within_jitter_bounds(self):
        """Each attempt's delay stays within +/-25% of the exponential base, capped."""
        config = RetryConfig()
        policy = RetryPolicy(config)

        for attempt in range(1, config.max_retries + 1):
            expected = config.base_delay * 2 ** (attempt - 1)
            low = min(expected * 0.75, config.max_delay)
            high = min(expected * 1.25, config.max_delay)
            for _ in range(200):
                delay = policy.compute_delay(attempt)
                assert low <= delay <= high

    def test_jitter_extremes(self):
        config = RetryConfig(base_delay=1.0, max_delay=100.0)
        assert RetryPolicy(config, random_source=lambda: 0.0).compute_delay(3) == pytest.approx(3.0)
        assert RetryPolicy(config, random_source=lambda: 1.0).compute_delay(3) == pytest.approx(5.0)
        assert RetryPolicy(config, random_source=lambda: 0.5).compute_delay(3) == pytest.approx(4.0)

    def test_delay_is_capped(self):
        config = RetryConfig(base_delay=1.0, max_delay=32.0)
        policy = RetryPolicy(config, random_source=lambda: 1.0)
        assert policy.compute_delay(10) == 32.0


class TestComputeTimeout:
    def test_grows_after_timeout(self):
        policy = RetryPolicy(RetryConfig(base_timeout=45.0, max_timeout=120.0))
        assert policy.compute_timeout(45.0, True) == pytest.approx(67.5)

    def test_capped_at_max(self):
        policy = RetryPolicy(RetryConfig(base_timeout=45.0, max_timeout=120.0))
        assert policy.compute_timeout(100.0, True) == 120.0

    def test_unchanged_without_timeout(self):
        policy = RetryPolicy()
        assert policy.compute_timeout(45.0, False) == 45.0

    def test_multiplier_of_one_keeps_timeout(self):
        policy = RetryPolicy(RetryConfig(timeout_multiplier_on_timeout=1.0))
        assert policy.compute_timeout(45.0, True) == 45.0


class TestClassify:
    @pytest.mark.parametrize(
        "status, category",
        [
            (429, ErrorCategory.rate_limited),
            (503, ErrorCategory.server_error),
            (500, ErrorCategory.server_error),
            (502, ErrorCategory.server_error),
            (504, ErrorCategory.gateway_timeout),
        ],
    )
    def test_retryable_statuses(self, status, category):
        result = RetryPolicy().classify(status_code=status)
        assert result == category
        assert result.retryable is True

    @pytest.mark.parametrize(
        "status, category",
        [
            (404, ErrorCategory.not_found),
            (401, ErrorCategory.auth_required),
            (403, ErrorCategory.auth_required),
            (400, ErrorCategory.client_fatal),
            (422, ErrorCategory.client_fatal),
        ],
    )
    def test_fatal_statuses(self, status, category):
        result = RetryPolicy().classify(status_code=status)
        assert result == category
        assert result.retryable is False

    def test_timeout_error(self):
        result = RetryPolicy().classify(asyncio.TimeoutError())
        assert result == ErrorCategory.timeout
        assert result.retryable is True

    def test_abort_message_is_timeout(self):
        assert RetryPolicy().classify(Exception("The operation was aborted")) == ErrorCategory.timeout

    def test_connection_error_is_network(self):
        error = aiohttp.ClientConnectionError("Cannot connect to host")
        assert RetryPolicy().classify(error) == ErrorCategory.network

    def test_transient_message_is_network(self):
        assert RetryPolicy().classify(Exception("read ECONNRESET")) == ErrorCategory.network

    def test_cancelled_is_not_retryable(self):
        result = RetryPolicy().classify(OperationCancelled())
        assert result == ErrorCategory.cancelled
        assert result.retryable is False

    def test_unknown_is_retryable(self):
        result = RetryPolicy().classify(ValueError("something odd"))
        assert result == ErrorCategory.unknown
        assert result.retryable is True


class TestRemediation:
    def test_distinct_hints(self):
        hints = {
            RetryPolicy.remediation(ErrorCategory.rate_limited),
            RetryPolicy.remediation(ErrorCategory.auth_required),
            RetryPolicy.remediation(ErrorCategory.server_error),
        }
        assert len(hints) == 3
        assert "wait" in RetryPolicy.remediation(ErrorCategory.rate_limited).lower()
        assert "credentials" in RetryPolicy.remediation(ErrorCategory.auth_required).lower()
        assert "try again later" in RetryPolicy.remediation(ErrorCategory.server_error).lower()

    def test_describe_service_unavailable(self):
        text = RetryPolicy.describe(ErrorCategory.server_error, 503)
        assert "temporarily unavailable" in text


def test_is_transient_message():
    assert is_transient_message("Failed to fetch")
    assert is_transient_message("503 Service Unavailable")
    assert not is_transient_message("Invalid input")


class TestRetryConfig:
    def test_defaults(self):
        config = RetryConfig()
        assert config.max_retries == 7
        assert config.base_delay == 1.0
        assert config.max_delay == 32.0

    def test_rejects_delay_bounds(self):
        with pytest.raises(ValidationError):
            RetryConfig(base_delay=10.0, max_delay=1.0)

    def test_rejects_timeout_bounds(self):
        with pytest.raises(ValidationError):
            RetryConfig(base_timeout=200.0, max_timeout=120.0)

    def test_merged_overrides_only_given_fields(self):
        config = RetryConfig().merged(max_retries=2)
        assert config.max_retries == 2
        assert config.max_delay == 32.0

    def test_merged_is_validated(self):
        with pytest.raises(ValidationError):
            RetryConfig().merged(max_delay=0.1)
