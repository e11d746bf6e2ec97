"""Byte pumps between pipeline stages.

A ``Coupling`` copies an ``asyncio.StreamReader`` (a process stdout) into a
sink: the stdin or extra input of another process (``WriterSink``) or the HTTP
response body (``ResponseSink``). At most one chunk is in flight per coupling
and the response sink holds a bounded number of chunks, so memory use does not
grow with media length.
"""
from __future__ import annotations

import asyncio
import collections
import logging
from typing import Callable, Deque, Optional, Union

from anysocial import config
from anysocial.process import PipeWriter

logger = logging.getLogger(__name__)

_CLOSED_ERRORS = (BrokenPipeError, ConnectionResetError)


class StreamTerminated(Exception):
    """The response can no longer be completed; the connection must be dropped."""


class WriterSink:
    """Writes into a process input pipe."""

    def __init__(self, writer: Union[asyncio.StreamWriter, PipeWriter], name: str = "pipe") -> None:
        self.name = name
        self._writer = writer
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed or self._writer.is_closing()

    async def send(self, data: bytes) -> None:
        if self.closed:
            raise BrokenPipeError(f"{self.name} is closed")
        self._writer.write(data)
        await self._writer.drain()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._writer.close()
        except (OSError, RuntimeError) as exc:
            logger.debug("%s: close failed: %s", self.name, exc)

    abort = close


class ResponseSink:
    """Bounded hand-off from the last pipeline stage to the response body."""

    def __init__(self, depth: Optional[int] = None) -> None:
        self._depth = depth or config.SINK_DEPTH
        self._chunks: Deque[bytes] = collections.deque()
        self._readable = asyncio.Event()
        self._writable = asyncio.Event()
        self._writable.set()
        self._eof = False
        self._aborted = False
        self.bytes_received = 0

    @property
    def closed(self) -> bool:
        return self._eof or self._aborted

    @property
    def aborted(self) -> bool:
        return self._aborted

    async def send(self, data: bytes) -> None:
        while len(self._chunks) >= self._depth and not self.closed:
            self._writable.clear()
            await self._writable.wait()
        if self.closed:
            raise BrokenPipeError("response is no longer writable")
        self._chunks.append(data)
        self.bytes_received += len(data)
        self._readable.set()

    async def receive(self) -> Optional[bytes]:
        """Next chunk, ``None`` at end of stream; raises ``StreamTerminated`` after abort."""
        while True:
            if self._aborted:
                raise StreamTerminated("pipeline torn down")
            if self._chunks:
                chunk = self._chunks.popleft()
                self._writable.set()
                return chunk
            if self._eof:
                return None
            self._readable.clear()
            await self._readable.wait()

    def close(self) -> None:
        self._eof = True
        self._readable.set()
        self._writable.set()

    def abort(self) -> None:
        self._aborted = True
        self._chunks.clear()
        self._readable.set()
        self._writable.set()


class Coupling:
    """Copies one stream into one sink until either side ends."""

    def __init__(
        self,
        source: asyncio.StreamReader,
        destination,
        on_error: Optional[Callable[[BaseException], None]] = None,
        name: str = "pipe",
    ) -> None:
        self.source = source
        self.destination = destination
        self.name = name
        self.bytes_forwarded = 0
        self.error: Optional[BaseException] = None
        self._on_error = on_error
        self._task: Optional[asyncio.Future] = None

    def start(self) -> "Coupling":
        self._task = asyncio.ensure_future(self._pump())
        return self

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def wait(self) -> None:
        if self._task is not None:
            await asyncio.wait({self._task})

    async def _pump(self) -> None:
        try:
            while True:
                chunk = await self.source.read(config.CHUNK_SIZE)
                if not chunk:
                    break
                await self.destination.send(chunk)
                self.bytes_forwarded += len(chunk)
        except _CLOSED_ERRORS as exc:
            logger.debug("%s: destination closed after %d bytes", self.name, self.bytes_forwarded)
            self._report(exc)
        except Exception as exc:
            logger.warning("%s: pipe error after %d bytes: %s", self.name, self.bytes_forwarded, exc)
            self._report(exc)
        finally:
            self.destination.close()

    def _report(self, exc: BaseException) -> None:
        if self.error is not None:
            return
        self.error = exc
        if self._on_error is not None:
            try:
                self._on_error(exc)
            except Exception:
                logger.exception("%s: error callback failed", self.name)


def couple(
    source: asyncio.StreamReader,
    destination,
    on_error: Optional[Callable[[BaseException], None]] = None,
    name: str = "pipe",
) -> Coupling:
    """Start forwarding ``source`` into ``destination``."""
    return Coupling(source, destination, on_error, name).start()


def is_closed_error(exc: BaseException) -> bool:
    return isinstance(exc, _CLOSED_ERRORS)
