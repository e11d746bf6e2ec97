"""Convergence point for every way a client can go away mid-download.

Signals handled:

* request aborted   - ``request.is_disconnected()`` polled before headers go out
* request closed    - the response body iterator is cancelled or closed
* response closed   - the ASGI call ends before the pipeline finished
* response errored  - sending to the client fails

The first one runs the cleanup callback; the rest are ignored.
"""
from __future__ import annotations

import asyncio
import logging
import threading
from typing import AsyncIterator, Callable, Optional

from starlette.requests import Request

from anysocial import config

logger = logging.getLogger(__name__)


class DisconnectSentinel:
    def __init__(self, cleanup: Callable[[], None], name: str = "request") -> None:
        self.name = name
        self.reason: Optional[str] = None
        self._cleanup = cleanup
        self._fired = False
        self._lock = threading.Lock()
        self._poller: Optional[asyncio.Future] = None

    @property
    def fired(self) -> bool:
        return self._fired

    def fire(self, reason: str = "manual") -> bool:
        """Run cleanup if nothing fired before; returns whether this call won."""
        with self._lock:
            if self._fired:
                return False
            self._fired = True
            self.reason = reason
        self.stop_polling()
        logger.info("%s: %s", self.name, reason)
        try:
            self._cleanup()
        except Exception:
            logger.exception("%s: cleanup after %r failed", self.name, reason)
        return True

    __call__ = fire

    def listen(self, request: Request, interval: Optional[float] = None) -> None:
        if self._poller is None and not self._fired:
            self._poller = asyncio.ensure_future(self._poll(request, interval or config.DISCONNECT_POLL_INTERVAL))

    def stop_polling(self) -> None:
        poller, self._poller = self._poller, None
        if poller is not None and not poller.done() and poller is not asyncio.current_task():
            poller.cancel()

    async def _poll(self, request: Request, interval: float) -> None:
        while not self._fired:
            if await request.is_disconnected():
                self.fire("request aborted")
                return
            await asyncio.sleep(interval)

    def attach(self, response) -> None:
        response.sentinel = self

    async def guard(self, body: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
        try:
            async for chunk in body:
                yield chunk
        except (asyncio.CancelledError, GeneratorExit):
            self.fire("request closed")
            raise


def watch(request: Optional[Request], response, cleanup: Callable[[], None]) -> DisconnectSentinel:
    """Arm a sentinel on ``request``/``response``; the returned object is the manual trigger."""
    sentinel = DisconnectSentinel(cleanup)
    if request is not None:
        sentinel.listen(request)
    if response is not None:
        sentinel.attach(response)
    return sentinel
