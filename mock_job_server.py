import random
import uuid
from typing import Any, Optional

from aiohttp import web
from loguru import logger


class JobServer:
    """Scripted stand-in for the remote job API.

    Each status request consumes the next entry of `status_script`; the last
    entry repeats once the script runs out. `error_rate` makes status requests
    fail with 503 at random.
    """

    def __init__(
        self,
        status_script: Optional[list[dict[str, Any]]] = None,
        report: str = "# Report",
        error_rate: float = 0.0,
        extraction_responses: Optional[list[dict[str, Any]]] = None,
    ):
        self.status_script = list(status_script or [{"status": "completed"}])
        self.report = report
        self.error_rate = error_rate
        self.extraction_responses = list(extraction_responses or [])
        self.requests: list[tuple[str, str]] = []
        self.extraction_bodies: list[dict[str, Any]] = []
        self.report_bodies: list[dict[str, Any]] = []
        self.jobs: dict[str, int] = {}
        self.runner: Optional[web.AppRunner] = None
        self.app = web.Application()
        self.app.router.add_get("/health", self.handle_health)
        self.app.router.add_post("/api/process-text", self.handle_process_text)
        self.app.router.add_post("/api/generate-report", self.handle_generate)
        self.app.router.add_get("/api/report-status/{job_id}", self.handle_status)
        self.app.router.add_get("/api/download-report/{job_id}/md", self.handle_download)
        self.logger = logger

    async def handle_health(self, request):
        self.requests.append(("GET", request.path))
        return web.json_response({"status": "ok", "openai_configured": True})

    async def handle_process_text(self, request):
        self.requests.append(("POST", request.path))
        body = await request.json()
        self.extraction_bodies.append(body)
        if not self.extraction_responses:
            return web.json_response({"success": True, "operations": []})
        index = min(len(self.extraction_bodies) - 1, len(self.extraction_responses) - 1)
        return web.json_response(self.extraction_responses[index])

    async def handle_generate(self, request):
        self.requests.append(("POST", request.path))
        body = await request.json()
        self.report_bodies.append(body)
        job_id = uuid.uuid4().hex[:8]
        self.jobs[job_id] = 0
        self.logger.info(f"Accepted job {job_id}: {body.get('description', '')!r}")
        return web.json_response(
            {"job_id": job_id, "conversation_id": body.get("conversation_id") or f"conv-{job_id}"}
        )

    async def handle_status(self, request):
        self.requests.append(("GET", request.path))
        job_id = request.match_info["job_id"]
        if job_id not in self.jobs:
            return web.json_response({"error": "unknown job"}, status=404)

        if random.random() < self.error_rate:
            self.logger.info("Returning 503")
            return web.json_response({"error": "busy"}, status=503)

        step = min(self.jobs[job_id], len(self.status_script) - 1)
        self.jobs[job_id] += 1
        payload = self.status_script[step]
        self.logger.info(f"Returning {payload.get('status')} for job {job_id}")
        return web.json_response(payload)

    async def handle_download(self, request):
        self.requests.append(("GET", request.path))
        return web.Response(text=self.report, content_type="text/markdown")

    async def start(self, port: int = 8080):
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, "localhost", port)
        await site.start()
        self.logger.info(f"Server started on port {port}")
        return site

    async def stop(self):
        if self.runner is not None:
            await self.runner.cleanup()
