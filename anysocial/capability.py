"""Process-wide, probe-once transcoder feature detection."""
from __future__ import annotations

import logging
import subprocess
import threading
from typing import Optional, Sequence

from starlette.concurrency import run_in_threadpool

from anysocial import config

logger = logging.getLogger(__name__)

PROBE_TIMEOUT = 15


class CapabilityProbe:
    """Runs the transcoder once and remembers whether ``marker`` was in its output.

    The first caller takes the lock and spawns the probe; concurrent first
    callers block on the lock and then read the cached value. A probe that
    cannot run at all caches ``False``.
    """

    def __init__(self, name: str, args: Sequence[str], marker: str, executable: Optional[str] = None) -> None:
        self.name = name
        self.args = list(args)
        self.marker = marker
        self._executable = executable
        self._value: Optional[bool] = None
        self._lock = threading.Lock()

    @property
    def checked(self) -> bool:
        return self._value is not None

    def value(self) -> bool:
        cached = self._value
        if cached is not None:
            return cached
        with self._lock:
            if self._value is None:
                self._value = self._probe()
            return self._value

    async def resolve(self) -> bool:
        """``value()`` for async callers; only the first call leaves the event loop."""
        if self._value is not None:
            return self._value
        return await run_in_threadpool(self.value)

    def _reset(self) -> None:
        # Test hook; the running service never forgets a probe result.
        with self._lock:
            self._value = None

    def _probe(self) -> bool:
        executable = self._executable or config.FFMPEG_PATH
        try:
            completed = subprocess.run(
                [executable, *self.args],
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                stdin=subprocess.DEVNULL,
                timeout=PROBE_TIMEOUT,
                check=False,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            logger.warning("capability probe %s could not run %s: %s", self.name, executable, exc)
            return False
        found = self.marker.encode() in completed.stdout
        logger.info("capability %s: %s", self.name, "available" if found else "unavailable")
        return found


MP3_ENCODER = CapabilityProbe("mp3_encoder", ["-hide_banner", "-encoders"], "libmp3lame")
