import json
from typing import Optional, Protocol

import aiohttp
from loguru import logger

from remote_job_client.models import TransportRequest, TransportResponse


class Transport(Protocol):
    """Anything able to issue one HTTP call and report status, text and json"""

    async def send(self, request: TransportRequest) -> TransportResponse: ...

    async def close(self) -> None: ...


def parse_json(text: str):
    """Best-effort JSON decoding of a response body"""
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return None


class AiohttpTransport:
    """Default transport backed by a lazily created aiohttp.ClientSession.

    Timeouts are enforced by the caller, so the session itself has none.
    """

    def __init__(self, session: Optional[aiohttp.ClientSession] = None):
        self._session = session
        self._owns_session = session is None
        self.logger = logger

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=None))
            self._owns_session = True
        return self._session

    async def send(self, request: TransportRequest) -> TransportResponse:
        session = await self._get_session()
        kwargs = {"headers": request.headers}
        if request.json_body is not None:
            kwargs["json"] = request.json_body

        async with session.request(request.method, request.url, **kwargs) as response:
            text = await response.text()
            self.logger.debug(f"{request.method} {request.url} -> {response.status}")
            return TransportResponse(status=response.status, text=text, json_data=parse_json(text))

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
