import asyncio

import pytest

from remote_job_client.cancellation import CancellationToken
from remote_job_client.errors import ErrorCategory, JobFailed, JobTimedOut, NoJobId, RequestFailed
from remote_job_client.job_poller import JobPoller, failure_hint
from remote_job_client.models import JobStatus, PollingConfig, TransportResponse

SUBMIT = "/api/generate-report"
STATUS = "/api/report-status/"
DOWNLOAD = "/api/download-report/"


def make_poller(executor, config):
    return JobPoller(
        executor,
        "http://api.test/api/generate-report",
        "http://api.test/api/report-status/{job_id}",
        "http://api.test/api/download-report/{job_id}/md",
        config,
    )


@pytest.fixture
def poller(executor, fast_polling):
    return make_poller(executor, fast_polling)


def unavailable():
    return TransportResponse(status=503, text="Service Unavailable")


class TestAdaptiveInterval:
    @pytest.mark.parametrize(
        "elapsed, interval",
        [(0, 2.0), (14.9, 2.0), (15, 3.0), (44.9, 3.0), (45, 5.0), (600, 5.0)],
    )
    def test_tiers(self, executor, elapsed, interval):
        assert make_poller(executor, PollingConfig()).adaptive_interval(elapsed) == interval

    def test_rejects_descending_thresholds(self):
        with pytest.raises(ValueError):
            PollingConfig(fast_threshold=60, medium_threshold=30)


@pytest.mark.asyncio
async def test_end_to_end_report(poller, transport):
    transport.add(SUBMIT, {"job_id": "abc123"})
    transport.add(
        STATUS,
        {"status": "processing", "progress": {"message": "Working", "percent": 10}},
        {"status": "completed", "filename": "r.md"},
    )
    transport.add(DOWNLOAD, "# Report")
    progress = []

    handle = await poller.run(
        {"description": "q"}, on_progress=lambda p, intermediate: progress.append(p.percent)
    )

    assert handle.status == JobStatus.completed
    assert handle.job_id == "abc123"
    assert handle.content == "# Report"
    assert handle.filename == "r.md"
    assert progress == [10]
    assert transport.calls_to(DOWNLOAD)[0].url.endswith("/abc123/md")
    handle.raise_for_status()


@pytest.mark.asyncio
async def test_status_sequence_is_reported_in_order(poller, transport):
    transport.add(SUBMIT, {"job_id": "j1"})
    transport.add(
        STATUS,
        {"status": "queued"},
        {"status": "processing"},
        {"status": "processing"},
        {"status": "completed"},
    )
    transport.add(DOWNLOAD, "# Done")
    seen = []

    async def on_status(status):
        seen.append(status)

    handle = await poller.run({}, on_status=on_status)

    assert seen == [JobStatus.queued, JobStatus.processing, JobStatus.processing, JobStatus.completed]
    assert handle.history == [
        JobStatus.submitted,
        JobStatus.queued,
        JobStatus.processing,
        JobStatus.processing,
        JobStatus.completed,
    ]
    assert handle.filename == "report_j1.md"


@pytest.mark.asyncio
async def test_missing_job_id(poller, transport):
    transport.add(SUBMIT, {"status": "accepted"})

    with pytest.raises(NoJobId):
        await poller.run({})

    assert len(transport.calls) == 1


@pytest.mark.asyncio
async def test_submit_failure_gets_keyword_hint(poller, transport):
    transport.add(SUBMIT, TransportResponse(status=403, text="Monthly quota exhausted"))

    with pytest.raises(RequestFailed) as exc_info:
        await poller.run({})

    assert "Quota exhausted" in exc_info.value.remediation
    assert transport.calls_to(STATUS) == []


@pytest.mark.asyncio
async def test_cancel_from_progress_callback_stops_polling(poller, transport):
    transport.add(SUBMIT, {"job_id": "j1"})
    transport.add(STATUS, {"status": "processing", "progress": {"message": "x", "percent": 5}})
    token = CancellationToken()
    calls = []

    def on_progress(progress, intermediate):
        calls.append(progress)
        token.cancel()

    handle = await poller.run({}, token=token, on_progress=on_progress)

    assert handle.status == JobStatus.cancelled
    assert len(calls) == 1
    assert len(transport.calls_to(STATUS)) == 1


@pytest.mark.asyncio
async def test_cancel_wakes_long_sleep(executor, transport):
    poller = make_poller(
        executor, PollingConfig(fast_interval=30, medium_interval=30, slow_interval=30)
    )
    transport.add(STATUS, {"status": "processing"})
    token = CancellationToken()
    asyncio.get_running_loop().call_later(0.01, token.cancel)

    handle = await asyncio.wait_for(poller.resume("j1", token=token), timeout=2)

    assert handle.status == JobStatus.cancelled
    assert transport.calls == []


@pytest.mark.asyncio
async def test_time_budget_gives_timed_out(executor, transport, fast_polling):
    poller = make_poller(executor, fast_polling.model_copy(update={"max_elapsed": 0.01}))
    transport.add(SUBMIT, {"job_id": "slow"})
    transport.add(STATUS, {"status": "processing"})

    handle = await poller.run({})

    assert handle.status == JobStatus.timed_out
    assert JobStatus.failed not in handle.history
    assert handle.category == ErrorCategory.timeout
    assert "still be running" in handle.remediation
    with pytest.raises(JobTimedOut):
        handle.raise_for_status()


@pytest.mark.asyncio
async def test_failed_job_gets_hint(poller, transport):
    transport.add(SUBMIT, {"job_id": "j1"})
    transport.add(STATUS, {"status": "failed", "error": "n8n upstream SSL certificate error"})

    handle = await poller.run({})

    assert handle.status == JobStatus.failed
    assert handle.error == "Job failed: n8n upstream SSL certificate error"
    assert "temporarily unavailable" in handle.remediation
    assert transport.calls_to(DOWNLOAD) == []
    with pytest.raises(JobFailed):
        handle.raise_for_status()


@pytest.mark.asyncio
async def test_consecutive_errors_fail_job(poller, transport):
    transport.add(SUBMIT, {"job_id": "j1"})
    transport.add(STATUS, unavailable())

    handle = await poller.run({})

    assert handle.status == JobStatus.failed
    assert handle.category == ErrorCategory.network
    assert "Network connection lost" in handle.error
    # max_consecutive_errors is 3 and each fetch makes a single attempt
    assert len(transport.calls_to(STATUS)) == 3


@pytest.mark.asyncio
async def test_recovers_after_intermittent_errors(poller, transport):
    transport.add(SUBMIT, {"job_id": "j1"})
    transport.add(
        STATUS,
        unavailable(),
        unavailable(),
        {"status": "processing"},
        unavailable(),
        unavailable(),
        {"status": "completed"},
    )
    transport.add(DOWNLOAD, "# Done")

    handle = await poller.run({})

    assert handle.status == JobStatus.completed
    assert handle.content == "# Done"


@pytest.mark.asyncio
async def test_not_found_status_fails_immediately(poller, transport):
    transport.add(SUBMIT, {"job_id": "gone"})
    transport.add(STATUS, TransportResponse(status=404, text="Job not found"))

    handle = await poller.run({})

    assert handle.status == JobStatus.failed
    assert handle.category == ErrorCategory.not_found
    assert len(transport.calls_to(STATUS)) == 1


@pytest.mark.asyncio
async def test_status_match_is_case_sensitive(poller, transport):
    transport.add(SUBMIT, {"job_id": "j1"})
    transport.add(STATUS, {"status": "COMPLETED"})
    transport.add(DOWNLOAD, "# Report")

    handle = await poller.run({})

    assert handle.status == JobStatus.failed
    assert transport.calls_to(DOWNLOAD) == []


@pytest.mark.asyncio
async def test_response_ready_inline(poller, transport):
    transport.add(SUBMIT, {"job_id": "j1"})
    transport.add(
        STATUS,
        {
            "status": "processing",
            "response_ready": True,
            "response_content": "Short answer",
            "conversation_id": "conv-9",
        },
    )

    handle = await poller.run({})

    assert handle.status == JobStatus.completed
    assert handle.content == "Short answer"
    assert handle.filename == "response_j1.md"
    assert handle.conversation_id == "conv-9"
    assert transport.calls_to(DOWNLOAD) == []


@pytest.mark.asyncio
async def test_response_ready_without_content_downloads(poller, transport):
    transport.add(SUBMIT, {"job_id": "j1"})
    transport.add(STATUS, {"status": "processing", "response_ready": True})
    transport.add(DOWNLOAD, {"markdown": "# From JSON"})

    handle = await poller.run({})

    assert handle.status == JobStatus.completed
    assert handle.content == "# From JSON"
    assert len(transport.calls_to(DOWNLOAD)) == 1


@pytest.mark.asyncio
async def test_download_failure_fails_job(poller, transport):
    transport.add(SUBMIT, {"job_id": "j1"})
    transport.add(STATUS, {"status": "completed"})
    transport.add(DOWNLOAD, TransportResponse(status=404, text="missing"))

    handle = await poller.run({})

    assert handle.status == JobStatus.failed
    assert handle.error.startswith("Failed to download result")
    assert JobStatus.completed not in handle.history


@pytest.mark.asyncio
async def test_downloaded_content_is_sanitized(poller, transport):
    transport.add(SUBMIT, {"job_id": "j1"})
    transport.add(STATUS, {"status": "completed"})
    transport.add(DOWNLOAD, "# Title\n<script>alert(1)</script>[x](javascript:void)")

    handle = await poller.run({})

    assert handle.content == "# Title\n[x](#)"


@pytest.mark.asyncio
async def test_resume_existing_job(poller, transport):
    transport.add(STATUS, {"status": "completed"})
    transport.add(DOWNLOAD, "# Resumed")

    handle = await poller.resume("old-job")

    assert handle.status == JobStatus.completed
    assert handle.content == "# Resumed"
    assert transport.calls_to(SUBMIT) == []
    assert transport.calls_to(STATUS)[0].url.endswith("/old-job")


def test_failure_hint_keywords():
    assert "Quota" in failure_hint("quota exhausted for this month")
    assert "expired" in failure_hint("Trial expired")
    assert "inactive" in failure_hint("key INACTIVE")
    assert failure_hint("something else") is None


@pytest.mark.asyncio
async def test_non_string_status_counts_as_fetch_error(poller, transport):
    transport.add(SUBMIT, {"job_id": "j1"})
    transport.add(STATUS, {"status": ["processing"]}, {"status": "completed"})
    transport.add(DOWNLOAD, "# Done")

    handle = await poller.run({})

    assert handle.status == JobStatus.completed
    assert handle.content == "# Done"
    assert len(transport.calls_to(STATUS)) == 2


@pytest.mark.asyncio
async def test_malformed_progress_is_ignored(poller, transport):
    transport.add(SUBMIT, {"job_id": "j1"})
    transport.add(
        STATUS,
        {"status": "processing", "progress": {"message": "x", "percent": "n/a"}},
        {"status": "completed"},
    )
    transport.add(DOWNLOAD, "# Done")
    progress = []

    handle = await poller.run({}, on_progress=lambda p, intermediate: progress.append(p))

    assert handle.status == JobStatus.completed
    assert handle.progress is None
    assert progress == []
