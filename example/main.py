import asyncio

from mock_job_server import JobServer
from remote_job_client.client import RemoteJobClient
from remote_job_client.models import JobStatus, PollingConfig
from remote_job_client.settings import configure_logging


async def status_changed(status):
    print(f"Status changed to: {status.value}")


async def progress_changed(progress, intermediate_results):
    print(f"Progress: {progress.percent}% - {progress.message}")
    for line in intermediate_results:
        print(f"  > {line}")


async def main():
    configure_logging("INFO")
    PORT = 8000
    server = JobServer(
        status_script=[
            {"status": "queued"},
            {"status": "processing", "progress": {"message": "Searching sources", "percent": 25}},
            {
                "status": "processing",
                "progress": {"message": "Writing report", "percent": 80},
                "intermediate_results": ["Found 12 sources"],
            },
            {"status": "completed", "filename": "acme.md"},
        ],
        report="# Acme Corp\n\nA report.",
        error_rate=0.1,
    )
    await server.start(port=PORT)
    print(f"Server started on http://localhost:{PORT}")

    config = PollingConfig(fast_interval=0.5, medium_interval=1.0, slow_interval=2.0, max_elapsed=60.0)

    async with RemoteJobClient(
        f"http://localhost:{PORT}", polling_config=config, on_status_change=status_changed
    ) as client:
        async with client.operation("report-1") as token:
            handle = await client.generate_report(
                "Tell me about Acme Corp",
                conversation_key="example",
                token=token,
                on_progress=progress_changed,
            )

    print(f"Final status: {handle.status.value}")
    print(f"Total time: {handle.elapsed:.1f}s")
    if handle.status == JobStatus.completed:
        print(handle.content)
    else:
        print(f"Error: {handle.error}\n{handle.remediation}")

    await server.stop()


if __name__ == "__main__":
    asyncio.run(main())
