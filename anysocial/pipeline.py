"""Per-request process pipelines.

A ``Pipeline`` owns everything one download spawns: process handles, pipe
couplings, sinks and temp files. It moves through

    INIT -> STREAMING -> COMPLETED | FAILED | ABORTED

and enters exactly one terminal state. Entering a terminal state runs
``cleanup()``, which may be invoked any number of times from any trigger site
(normal completion, participant failure, client disconnect) and only acts once.
"""
from __future__ import annotations

import asyncio
import contextlib
import glob
import logging
import os
import tempfile
import threading
import time
from enum import Enum
from functools import partial
from typing import Any, Dict, Iterator, List, Optional, Sequence

from starlette.requests import ClientDisconnect, Request
from starlette.responses import FileResponse, StreamingResponse
from starlette.types import Receive, Scope, Send

from anysocial import config
from anysocial.coupler import Coupling, ResponseSink, StreamTerminated, couple, is_closed_error
from anysocial.errors import DownloadError, ErrorCategory
from anysocial.process import EXTRACTOR, TRANSCODER, Arg, ProcessHandle, StdioSpec, spawn
from anysocial.sentinel import DisconnectSentinel, watch

logger = logging.getLogger(__name__)

# nginx's "client closed request"; never reaches a connected client.
CLIENT_CLOSED_REQUEST = 499
# Seconds a failed transcoder waits for its sources to report their own exit.
SOURCE_EXIT_GRACE = 1.0


class PipelineState(str, Enum):
    INIT = "init"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


TERMINAL_STATES = frozenset({PipelineState.COMPLETED, PipelineState.FAILED, PipelineState.ABORTED})


class ClientDisconnected(Exception):
    """The client went away before any response was sent."""


class TempFile:
    """Scratch file named ``<tag>_<millis>_<random><suffix>`` in the temp dir."""

    def __init__(self, tag: str, suffix: str = "", directory: Optional[str] = None) -> None:
        stamp = int(time.time() * 1000)
        fd, self.path = tempfile.mkstemp(prefix=f"{tag}_{stamp}_", suffix=suffix, dir=directory or config.TEMP_DIR)
        os.close(fd)
        self._removed = False

    def has_content(self) -> bool:
        try:
            return os.path.getsize(self.path) > 0
        except OSError:
            return False

    def unlink(self) -> None:
        """Remove the file and any side files yt-dlp left next to it (.part, .ytdl, .f137.mp4)."""
        if self._removed:
            return
        self._removed = True
        stem, _ = os.path.splitext(self.path)
        for path in {self.path, *glob.glob(glob.escape(stem) + ".*")}:
            try:
                os.remove(path)
            except FileNotFoundError:
                pass
            except OSError as exc:
                logger.warning("could not delete temp file %s: %s", path, exc)


class Pipeline:
    def __init__(self, name: str) -> None:
        self.name = name
        self.state = PipelineState.INIT
        self.processes: List[ProcessHandle] = []
        self.couplings: List[Coupling] = []
        self.sinks: List[Any] = []
        self.temp_files: List[TempFile] = []
        self.failure: Optional[DownloadError] = None
        self.final: Optional[ProcessHandle] = None
        self.output: Optional[ResponseSink] = None
        self.sentinel: Optional[DisconnectSentinel] = None
        self.headers_sent = False
        self.cleanup_runs = 0
        self._fatal: List[ProcessHandle] = []
        self._deferred: Optional[asyncio.Future] = None
        self._cleaned = False
        self._lock = threading.Lock()
        self._failed = asyncio.Event()

    def __repr__(self) -> str:
        return f"<Pipeline {self.name} {self.state.value}>"

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def response_writable(self) -> bool:
        return not self.finished or self.state is PipelineState.COMPLETED

    # -- building -----------------------------------------------------------

    async def spawn(
        self,
        executable: str,
        args: Sequence[Arg],
        stdio: StdioSpec = StdioSpec(),
        *,
        name: str,
        kind: str = EXTRACTOR,
        fatal: bool = True,
    ) -> ProcessHandle:
        if self.finished:
            raise self.failure or ClientDisconnected()
        try:
            handle = await spawn(executable, args, stdio, name=f"{self.name}/{name}", kind=kind)
        except DownloadError as exc:
            if fatal:
                self.fail(exc)
            raise
        self.processes.append(handle)
        if fatal:
            self._fatal.append(handle)
        if self.finished:
            # Torn down while the process was starting.
            handle.kill()
            raise self.failure or ClientDisconnected()
        if self.state is PipelineState.INIT:
            self.state = PipelineState.STREAMING
        handle.on_exit(partial(self._on_exit, fatal=fatal))
        return handle

    def couple(self, source: asyncio.StreamReader, destination, *, name: str, fatal: bool = True) -> Coupling:
        self.sinks.append(destination)
        coupling = couple(source, destination, partial(self._on_coupling_error, name=name, fatal=fatal), f"{self.name}/{name}")
        self.couplings.append(coupling)
        return coupling

    def temp_file(self, tag: str, suffix: str) -> TempFile:
        temp = TempFile(tag, suffix)
        self.temp_files.append(temp)
        if self.finished:
            temp.unlink()
        return temp

    def arm(self, request: Optional[Request], response=None) -> DisconnectSentinel:
        self.sentinel = watch(request, response, partial(self.abort, "client disconnected"))
        return self.sentinel

    # -- events -------------------------------------------------------------

    def _on_exit(self, handle: ProcessHandle, fatal: bool) -> None:
        code = handle.returncode
        if code == 0 or handle.killed:
            return
        if self._output_complete() and handle is not self.final:
            logger.debug("%s exited with %s after the output was complete", handle.name, code)
            return
        if not fatal:
            logger.warning("%s exited with %s; continuing with partial input", handle.name, code)
            return
        if handle.kind == TRANSCODER and any(p.kind == EXTRACTOR and p.running for p in self.processes):
            self._deferred = asyncio.ensure_future(self._fail_after_sources(handle))
            return
        self.fail(self._participant_error(handle))

    async def _fail_after_sources(self, handle: ProcessHandle) -> None:
        sources = [p.exited.wait() for p in self.processes if p.kind == EXTRACTOR and p.running]
        await asyncio.wait([asyncio.ensure_future(s) for s in sources], timeout=SOURCE_EXIT_GRACE)
        self.fail(self._participant_error(handle))

    def _output_complete(self) -> bool:
        # Upstream stages often die of a broken pipe once the final stage is done.
        return (
            self.final is not None
            and self.final.returncode == 0
            and self.output is not None
            and self.output.bytes_received > 0
        )

    def _participant_error(self, handle: ProcessHandle) -> DownloadError:
        if handle.kind == EXTRACTOR:
            return DownloadError.from_extractor(handle.stderr_text or f"{handle.name} exited with code {handle.returncode}")
        # A transcoder usually dies because an input did; report the root cause.
        for other in self.processes:
            if other.kind == EXTRACTOR and other.returncode not in (0, None) and not other.killed:
                return DownloadError.from_extractor(other.stderr_text)
        return DownloadError(
            ErrorCategory.TRANSCODE_FAILED,
            details=handle.stderr_text or f"{handle.name} exited with code {handle.returncode}",
        )

    def _on_coupling_error(self, exc: BaseException, name: str, fatal: bool) -> None:
        if is_closed_error(exc) or not fatal:
            return
        self.fail(DownloadError(ErrorCategory.FAILED, details=f"{name}: {exc}"))

    # -- terminal transitions -----------------------------------------------

    def _enter(self, state: PipelineState) -> bool:
        with self._lock:
            if self.state in TERMINAL_STATES:
                return False
            self.state = state
            return True

    def complete(self) -> bool:
        if not self._enter(PipelineState.COMPLETED):
            return False
        logger.info("%s: completed", self.name)
        self.cleanup()
        return True

    def fail(self, error: DownloadError) -> bool:
        if not self._enter(PipelineState.FAILED):
            return False
        self.failure = error
        self._failed.set()
        if self.headers_sent:
            logger.error("%s: failed mid-stream, dropping connection: %s", self.name, error.details or error.message)
        else:
            logger.error("%s: failed: %s", self.name, error.details or error.message)
        self.cleanup()
        return True

    def abort(self, reason: str = "aborted") -> bool:
        if not self._enter(PipelineState.ABORTED):
            return False
        logger.info("%s: aborted (%s)", self.name, reason)
        self._failed.set()
        self.cleanup()
        return True

    def cleanup(self) -> bool:
        """Kill, close and delete everything this pipeline owns. Idempotent."""
        with self._lock:
            if self._cleaned:
                return False
            self._cleaned = True
        self.cleanup_runs += 1
        if self.sentinel is not None:
            self.sentinel.stop_polling()
        for coupling in self.couplings:
            coupling.cancel()
        for sink in self.sinks:
            sink.abort()
        for handle in self.processes:
            handle.kill()
            handle.close_pipes()
        for temp in self.temp_files:
            temp.unlink()
        return True

    @contextlib.contextmanager
    def guard(self) -> Iterator["Pipeline"]:
        """Route any exception from wiring code into a terminal transition."""
        try:
            yield self
        except DownloadError as exc:
            self.fail(exc)
            raise
        except ClientDisconnected:
            self.abort("client disconnected")
            raise
        except asyncio.CancelledError:
            self.abort("request cancelled")
            raise
        except Exception as exc:
            logger.exception("%s: unexpected error", self.name)
            error = DownloadError(ErrorCategory.FAILED, details=str(exc))
            self.fail(error)
            raise error from exc

    # -- waiting --------------------------------------------------------------

    def check(self) -> None:
        if self.failure is not None:
            raise self.failure
        if self.state is PipelineState.ABORTED:
            raise ClientDisconnected()

    async def settle(self, timeout: Optional[float] = None) -> None:
        """Wait for every fatal participant to exit, failing the pipeline on timeout."""
        waiters = [asyncio.ensure_future(handle.wait()) for handle in self._fatal]
        if not waiters:
            return
        _, pending = await asyncio.wait(waiters, timeout=timeout or config.SETTLE_TIMEOUT)
        for waiter in pending:
            waiter.cancel()
        if pending:
            self.fail(DownloadError(ErrorCategory.FAILED, details="timed out waiting for media tools to exit"))
        if self._deferred is not None:
            await asyncio.wait({self._deferred})

    async def run_to_exit(self, handle: ProcessHandle) -> Optional[int]:
        await handle.wait()
        self.check()
        return handle.returncode

    async def first_output(self, sink: ResponseSink, timeout: Optional[float] = None) -> Optional[bytes]:
        """Wait for the first byte of media before headers are committed.

        Returns the first chunk, or ``None`` when nothing arrived within
        ``timeout`` and headers should be flushed anyway. Raises the pipeline's
        failure if it failed first.
        """
        receive = asyncio.ensure_future(sink.receive())
        failed = asyncio.ensure_future(self._failed.wait())
        try:
            await asyncio.wait({receive, failed}, timeout=timeout or config.FIRST_CHUNK_WAIT, return_when=asyncio.FIRST_COMPLETED)
        finally:
            failed.cancel()
        if not receive.done():
            receive.cancel()
            self.check()
            logger.info("%s: no output yet, sending headers", self.name)
            return None
        try:
            chunk = receive.result()
        except StreamTerminated:
            chunk = None
        self.check()
        if chunk is None:
            await self.settle()
            self.check()
            error = DownloadError(ErrorCategory.FAILED, details="no media data was produced")
            self.fail(error)
            raise error
        return chunk


def attachment_headers(filename: str) -> Dict[str, str]:
    return {
        "Content-Disposition": f'attachment; filename="{filename}"',
        "Cache-Control": "no-cache",
        "X-Content-Type-Options": "nosniff",
    }


class PipelineResponse(StreamingResponse):
    """Streams a pipeline's final stage and maps ASGI outcomes onto its state."""

    sentinel: Optional[DisconnectSentinel] = None

    def __init__(self, pipeline: Pipeline, sink: ResponseSink, filename: str, media_type: str) -> None:
        self.pipeline = pipeline
        self.sink = sink
        self._first: Optional[bytes] = None
        super().__init__(self._guarded(), media_type=media_type, headers=attachment_headers(filename))

    def prime(self, chunk: Optional[bytes]) -> None:
        self._first = chunk

    async def _guarded(self):
        body = self._stream()
        if self.sentinel is not None:
            body = self.sentinel.guard(body)
        try:
            async for chunk in body:
                yield chunk
        finally:
            await body.aclose()

    async def _stream(self):
        if self._first:
            chunk, self._first = self._first, None
            yield chunk
        while True:
            chunk = await self.sink.receive()
            if chunk is None:
                break
            yield chunk
        await self.pipeline.settle()
        if self.pipeline.failure is not None:
            raise StreamTerminated(self.pipeline.failure.message)
        self.pipeline.complete()

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        self.pipeline.headers_sent = True
        if self.sentinel is not None:
            self.sentinel.stop_polling()
        try:
            await super().__call__(scope, receive, send)
        except StreamTerminated as exc:
            # Returning without the final body message makes the server drop the connection.
            logger.warning("%s: terminating response: %s", self.pipeline.name, exc)
        except (ClientDisconnect, OSError) as exc:
            self._fire("response errored")
            logger.debug("%s: send failed: %s", self.pipeline.name, exc)
        finally:
            if not self.pipeline.finished:
                self._fire("response closed")

    def _fire(self, reason: str) -> None:
        if self.sentinel is not None:
            self.sentinel.fire(reason)
        else:
            self.pipeline.abort(reason)


class RelayFileResponse(FileResponse):
    """Sends a finished temp file, then deletes it whatever happened while sending."""

    sentinel: Optional[DisconnectSentinel] = None

    def __init__(self, pipeline: Pipeline, path: str, filename: str, media_type: str) -> None:
        self.pipeline = pipeline
        super().__init__(path, media_type=media_type, filename=filename, headers={"Cache-Control": "no-cache"})

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        self.pipeline.headers_sent = True
        if self.sentinel is not None:
            self.sentinel.stop_polling()
        try:
            await super().__call__(scope, receive, send)
        except (ClientDisconnect, OSError) as exc:
            logger.warning("%s: sending file failed: %s", self.pipeline.name, exc)
            if self.sentinel is not None:
                self.sentinel.fire("response errored")
        finally:
            if not self.pipeline.complete():
                self.pipeline.cleanup()
