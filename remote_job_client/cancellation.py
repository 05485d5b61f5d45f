"""Cooperative cancellation shared by every waiting point of an operation.

A single token gates request timeouts, retry backoff and poll intervals, so
cancelling it wakes whichever of them is currently suspended.
"""
import asyncio
import inspect
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Hashable, Optional, TypeVar

from loguru import logger

from remote_job_client.errors import OperationCancelled

T = TypeVar("T")


class CancellationToken:
    def __init__(self):
        self._event = asyncio.Event()
        self._reason: Optional[str] = None
        self._callbacks: list[Callable[[str], Any]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "Cancelled by user") -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        for callback in self._callbacks:
            callback(reason)

    def add_callback(self, callback: Callable[[str], Any]) -> None:
        if self.cancelled:
            callback(self._reason or "")
        else:
            self._callbacks.append(callback)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelled(self._reason or "Operation was cancelled.")

    async def wait(self) -> None:
        await self._event.wait()


async def race_with_cancellation(
    awaitable: Awaitable[T],
    token: Optional[CancellationToken],
    timeout: Optional[float] = None,
) -> T:
    """Await `awaitable` unless the token fires or `timeout` expires first.

    Raises OperationCancelled on cancellation and asyncio.TimeoutError on
    expiry; in both cases the underlying task is cancelled.
    """
    if token is None:
        return await asyncio.wait_for(awaitable, timeout)

    if token.cancelled:
        if inspect.iscoroutine(awaitable):
            awaitable.close()
        token.raise_if_cancelled()
    work = asyncio.ensure_future(awaitable)
    cancel_waiter = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait(
            {work, cancel_waiter},
            timeout=timeout,
            return_when=asyncio.FIRST_COMPLETED,
        )
    except asyncio.CancelledError:
        work.cancel()
        raise
    finally:
        cancel_waiter.cancel()

    if work in done:
        return work.result()

    work.cancel()
    await asyncio.gather(work, return_exceptions=True)
    if cancel_waiter in done or token.cancelled:
        raise OperationCancelled(token.reason or "Operation was cancelled.")
    raise asyncio.TimeoutError()


async def cancellable_sleep(delay: float, token: Optional[CancellationToken]) -> None:
    """Sleep for `delay` seconds, waking early with OperationCancelled if the token fires"""
    if token is None:
        await asyncio.sleep(delay)
        return
    token.raise_if_cancelled()
    try:
        await asyncio.wait_for(token.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return
    raise OperationCancelled(token.reason or "Operation was cancelled.")


class OperationRegistry:
    """Maps an externally visible operation id to its cancellation token.

    Entries are added when an operation starts and removed on any terminal
    transition, cancellation included.
    """

    def __init__(self):
        self._tokens: dict[Hashable, CancellationToken] = {}
        self.logger = logger

    def start(self, operation_id: Hashable) -> CancellationToken:
        previous = self._tokens.pop(operation_id, None)
        if previous is not None:
            self.logger.debug(f"Replacing active operation {operation_id!r}")
            previous.cancel("Superseded by a new operation")
        token = CancellationToken()
        self._tokens[operation_id] = token
        return token

    def get(self, operation_id: Hashable) -> Optional[CancellationToken]:
        return self._tokens.get(operation_id)

    def cancel(self, operation_id: Hashable, reason: str = "Cancelled by user") -> bool:
        token = self._tokens.pop(operation_id, None)
        if token is None:
            return False
        self.logger.info(f"Cancelling operation {operation_id!r}")
        token.cancel(reason)
        return True

    def finish(self, operation_id: Hashable, token: Optional[CancellationToken] = None) -> None:
        current = self._tokens.get(operation_id)
        if current is not None and (token is None or current is token):
            del self._tokens[operation_id]

    def active(self) -> list[Hashable]:
        return list(self._tokens)

    def __contains__(self, operation_id: Hashable) -> bool:
        return operation_id in self._tokens

    @asynccontextmanager
    async def track(self, operation_id: Hashable) -> AsyncIterator[CancellationToken]:
        token = self.start(operation_id)
        try:
            yield token
        finally:
            self.finish(operation_id, token)
