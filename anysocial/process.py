"""Spawned external processes with named stdio channels.

``spawn`` starts an extractor or transcoder under the running event loop and
returns a ``ProcessHandle`` that owns every pipe of the child. Extra input
channels (``StdioSpec.extra_inputs``) are plain OS pipes whose read ends are
handed to the child; arguments refer to them with ``PipeRef(name)``, which is
rewritten to ``pipe:<fd>`` at spawn time.

Each child leads its own process group. yt-dlp runs ffmpeg itself for merged
formats, so ``kill()`` signals the whole group.
"""
from __future__ import annotations

import asyncio
import collections
import logging
import os
import re
import signal as signals
from dataclasses import dataclass
from typing import Callable, Deque, Dict, List, Optional, Sequence, Tuple, Union

from anysocial.errors import SpawnError

logger = logging.getLogger(__name__)

IGNORED = "ignored"
PIPED = "piped"
INHERIT = "inherit"

_MODES = {
    IGNORED: asyncio.subprocess.DEVNULL,
    PIPED: asyncio.subprocess.PIPE,
    INHERIT: None,
}

EXTRACTOR = "extractor"
TRANSCODER = "transcoder"

STDERR_TAIL_LINES = 40
_LINE_BREAK = re.compile(rb"[\r\n]+")


@dataclass(frozen=True)
class PipeRef:
    """Argument placeholder for an extra input channel."""

    name: str


@dataclass(frozen=True)
class StdioSpec:
    stdin: str = IGNORED
    stdout: str = PIPED
    stderr: str = PIPED
    extra_inputs: Tuple[str, ...] = ()


Arg = Union[str, PipeRef]
ExitCallback = Callable[["ProcessHandle"], None]


class _WritePipeProtocol(asyncio.Protocol):
    """Flow control for a write pipe: ``drain()`` waits while the transport is paused."""

    def __init__(self) -> None:
        self._paused = False
        self._lost = False
        self._exc: Optional[BaseException] = None
        self._waiters: List[asyncio.Future] = []

    def pause_writing(self) -> None:
        self._paused = True

    def resume_writing(self) -> None:
        self._paused = False
        self._wake()

    def connection_lost(self, exc: Optional[BaseException]) -> None:
        self._lost = True
        self._exc = exc
        self._wake()

    def _wake(self) -> None:
        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(None)

    async def drain(self) -> None:
        while not self._lost and self._paused:
            waiter = asyncio.get_running_loop().create_future()
            self._waiters.append(waiter)
            await waiter
        if self._lost:
            if isinstance(self._exc, (BrokenPipeError, ConnectionResetError)):
                raise self._exc
            raise BrokenPipeError("pipe closed")


class PipeWriter:
    """Writable end of an extra input pipe."""

    def __init__(self, transport: asyncio.WriteTransport, protocol: _WritePipeProtocol) -> None:
        self._transport = transport
        self._protocol = protocol

    def write(self, data: bytes) -> None:
        self._transport.write(data)

    async def drain(self) -> None:
        await self._protocol.drain()

    def is_closing(self) -> bool:
        return self._transport.is_closing()

    def close(self) -> None:
        self._transport.close()


class ProcessHandle:
    """One running external process and the pipes it owns."""

    def __init__(
        self,
        name: str,
        kind: str,
        argv: List[str],
        proc: asyncio.subprocess.Process,
        extra: Dict[str, PipeWriter],
        stdout: Optional[asyncio.StreamReader] = None,
        stdout_transport: Optional[asyncio.ReadTransport] = None,
    ) -> None:
        self.name = name
        self.kind = kind
        self.argv = argv
        self.extra = extra
        self.exited = asyncio.Event()
        self._proc = proc
        self._stdout = stdout
        self._stdout_transport = stdout_transport
        self._killed = False
        self._callbacks: List[ExitCallback] = []
        self._stderr_tail: Deque[str] = collections.deque(maxlen=STDERR_TAIL_LINES)
        self._stderr_task = asyncio.ensure_future(self._drain_stderr()) if proc.stderr else None
        self._exit_task = asyncio.ensure_future(self._watch())

    def __repr__(self) -> str:
        return f"<ProcessHandle {self.name} pid={self.pid} rc={self.returncode}>"

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._proc.returncode

    @property
    def signal(self) -> Optional[int]:
        code = self._proc.returncode
        return -code if code is not None and code < 0 else None

    @property
    def running(self) -> bool:
        return not self.exited.is_set()

    @property
    def killed(self) -> bool:
        return self._killed

    @property
    def stdin(self) -> Optional[asyncio.StreamWriter]:
        return self._proc.stdin

    @property
    def stdout(self) -> Optional[asyncio.StreamReader]:
        return self._stdout

    @property
    def stderr_text(self) -> str:
        return "\n".join(self._stderr_tail)

    def on_exit(self, callback: ExitCallback) -> None:
        if self.exited.is_set():
            callback(self)
        else:
            self._callbacks.append(callback)

    def kill(self) -> bool:
        """SIGKILL the process group once; a process that already exited is left alone."""
        if self._killed or self.exited.is_set():
            return False
        self._killed = True
        if not _kill_group(self._proc):
            return False
        logger.debug("killed %s (process group %s)", self.name, self.pid)
        return True

    def close_inputs(self) -> None:
        """Close stdin and the extra input pipes so the child sees EOF."""
        writers = list(self.extra.values())
        if self._proc.stdin is not None:
            writers.append(self._proc.stdin)
        for writer in writers:
            try:
                writer.close()
            except (OSError, RuntimeError) as exc:
                logger.debug("%s: closing pipe failed: %s", self.name, exc)

    def close_pipes(self) -> None:
        """Close every pipe, the stdout read end included."""
        self.close_inputs()
        if self._stdout_transport is not None and not self._stdout_transport.is_closing():
            self._stdout_transport.close()
        if self._stdout is not None and not self._stdout.at_eof():
            self._stdout.feed_eof()

    async def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        if timeout is None:
            await self.exited.wait()
        else:
            await asyncio.wait_for(self.exited.wait(), timeout)
        return self.returncode

    async def _drain_stderr(self) -> None:
        assert self._proc.stderr is not None
        pending = b""
        while True:
            chunk = await self._proc.stderr.read(4096)
            if not chunk:
                break
            lines = _LINE_BREAK.split(pending + chunk)
            pending = lines.pop()
            for line in lines:
                self._record(line)
        self._record(pending)

    def _record(self, raw: bytes) -> None:
        text = raw.decode("utf-8", "ignore").strip()
        if text:
            self._stderr_tail.append(text)
            logger.debug("[%s stderr] %s", self.name, text)

    async def _watch(self) -> None:
        await self._proc.wait()
        if self._stderr_task is not None:
            # Grandchildren may hold stderr open; do not wait on them forever.
            await asyncio.wait({self._stderr_task}, timeout=1)
        logger.debug("%s (pid %s) exited with %s", self.name, self.pid, self.returncode)
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback(self)
            except Exception:
                logger.exception("%s: exit callback failed", self.name)
        self.exited.set()


def _kill_group(proc: asyncio.subprocess.Process) -> bool:
    try:
        os.killpg(proc.pid, signals.SIGKILL)
    except ProcessLookupError:
        return False
    except PermissionError:
        # The group id was taken over; fall back to the child itself.
        try:
            proc.kill()
        except ProcessLookupError:
            return False
    return True


async def _open_writer(fd: int) -> PipeWriter:
    loop = asyncio.get_running_loop()
    pipe = os.fdopen(fd, "wb", buffering=0)
    try:
        transport, protocol = await loop.connect_write_pipe(_WritePipeProtocol, pipe)
    except BaseException:
        pipe.close()
        raise
    return PipeWriter(transport, protocol)


async def _open_reader(fd: int) -> Tuple[asyncio.StreamReader, asyncio.ReadTransport]:
    loop = asyncio.get_running_loop()
    pipe = os.fdopen(fd, "rb", buffering=0)
    reader = asyncio.StreamReader()
    try:
        transport, _ = await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), pipe)
    except BaseException:
        pipe.close()
        raise
    return reader, transport


async def spawn(
    executable: str,
    args: Sequence[Arg],
    stdio: StdioSpec = StdioSpec(),
    name: Optional[str] = None,
    kind: str = EXTRACTOR,
) -> ProcessHandle:
    """Start ``executable`` and wrap it in a ``ProcessHandle``.

    Raises ``SpawnError`` when the binary cannot be executed.
    """
    name = name or os.path.basename(executable)
    pipes: Dict[str, Tuple[int, int]] = {}
    open_fds: List[int] = []
    opened: List[PipeWriter] = []
    proc: Optional[asyncio.subprocess.Process] = None
    try:
        for channel in stdio.extra_inputs:
            read_fd, write_fd = os.pipe()
            pipes[channel] = (read_fd, write_fd)
            open_fds.extend((read_fd, write_fd))

        # stdout is a pipe we own, so cleanup can close its read end.
        stdout_fds: Optional[Tuple[int, int]] = None
        stdout_mode = _MODES[stdio.stdout]
        if stdio.stdout == PIPED:
            stdout_fds = os.pipe()
            open_fds.extend(stdout_fds)
            stdout_mode = stdout_fds[1]

        argv: List[str] = []
        for arg in args:
            if isinstance(arg, PipeRef):
                if arg.name not in pipes:
                    raise ValueError(f"{name}: no extra input channel named {arg.name!r}")
                argv.append(f"pipe:{pipes[arg.name][0]}")
            else:
                argv.append(str(arg))

        try:
            proc = await asyncio.create_subprocess_exec(
                executable,
                *argv,
                stdin=_MODES[stdio.stdin],
                stdout=stdout_mode,
                stderr=_MODES[stdio.stderr],
                pass_fds=tuple(read_fd for read_fd, _ in pipes.values()),
                start_new_session=True,
            )
        except OSError as exc:
            logger.error("failed to start %s: %s", executable, exc)
            raise SpawnError(executable, str(exc)) from exc

        extra: Dict[str, PipeWriter] = {}
        for channel, (read_fd, write_fd) in pipes.items():
            os.close(read_fd)
            open_fds.remove(read_fd)
            open_fds.remove(write_fd)
            extra[channel] = await _open_writer(write_fd)
            opened.append(extra[channel])

        stdout: Optional[asyncio.StreamReader] = None
        stdout_transport: Optional[asyncio.ReadTransport] = None
        if stdout_fds is not None:
            read_fd, write_fd = stdout_fds
            os.close(write_fd)
            open_fds.remove(write_fd)
            open_fds.remove(read_fd)
            stdout, stdout_transport = await _open_reader(read_fd)
    except BaseException:
        for fd in open_fds:
            try:
                os.close(fd)
            except OSError:
                pass
        for writer in opened:
            writer.close()
        if proc is not None and proc.returncode is None:
            _kill_group(proc)
        raise

    logger.info("spawned %s (pid %s): %s %s", name, proc.pid, executable, " ".join(argv))
    return ProcessHandle(name, kind, [executable, *argv], proc, extra, stdout, stdout_transport)
