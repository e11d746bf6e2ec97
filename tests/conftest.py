import asyncio
import os
import stat
import sys
import time
from pathlib import Path

import pytest

from anysocial import config
from anysocial.capability import MP3_ENCODER

FAKES = Path(__file__).parent / "fakes"


def write_wrapper(directory: Path, name: str, script: Path) -> str:
    path = directory / name
    path.write_text(f'#!/bin/sh\nexec "{sys.executable}" "{script}" "$@"\n')
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


def is_running(pid: int) -> bool:
    """True while ``pid`` exists and is not a zombie."""
    try:
        with open(f"/proc/{pid}/stat") as fh:
            state = fh.read().rsplit(")", 1)[1].split()[0]
    except FileNotFoundError:
        return False
    except OSError:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        return True
    return state not in ("Z", "X")


def wait_until_dead(pids, timeout: float = 5.0) -> list:
    deadline = time.monotonic() + timeout
    alive = [pid for pid in pids if is_running(pid)]
    while alive and time.monotonic() < deadline:
        time.sleep(0.05)
        alive = [pid for pid in alive if is_running(pid)]
    return alive


class FakeTools:
    def __init__(self, root: Path) -> None:
        self.root = root
        self.bin = root / "bin"
        self.temp = root / "tmp"
        self.ytdlp_pids = root / "ytdlp.pids"
        self.ffmpeg_pids = root / "ffmpeg.pids"
        self.probe_log = root / "probe.log"
        self.child_log = root / "children.pids"

    @staticmethod
    def _read(path: Path) -> list:
        if not path.exists():
            return []
        return [int(line) for line in path.read_text().split()]

    def pids(self) -> list:
        return self._read(self.ytdlp_pids) + self._read(self.ffmpeg_pids)

    def children(self) -> list:
        return self._read(self.child_log)

    async def wait_for_children(self, count: int = 1, timeout: float = 5.0) -> list:
        deadline = time.monotonic() + timeout
        while len(self.children()) < count and time.monotonic() < deadline:
            await asyncio.sleep(0.05)
        return self.children()

    def probe_runs(self) -> int:
        return len(self._read(self.probe_log))

    def temp_files(self) -> list:
        return sorted(os.listdir(self.temp))


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def fake_tools(tmp_path, monkeypatch):
    tools = FakeTools(tmp_path)
    tools.bin.mkdir()
    tools.temp.mkdir()
    monkeypatch.setattr(config, "YT_DLP_PATH", write_wrapper(tools.bin, "yt-dlp", FAKES / "fake_ytdlp.py"))
    monkeypatch.setattr(config, "FFMPEG_PATH", write_wrapper(tools.bin, "ffmpeg", FAKES / "fake_ffmpeg.py"))
    monkeypatch.setattr(config, "TEMP_DIR", str(tools.temp))
    monkeypatch.setattr(config, "COOKIES_DIR", str(tmp_path))
    monkeypatch.setattr(config, "FIRST_CHUNK_WAIT", 5.0)
    monkeypatch.setattr(config, "SETTLE_TIMEOUT", 5.0)
    monkeypatch.setenv("FAKE_YTDLP_PID_LOG", str(tools.ytdlp_pids))
    monkeypatch.setenv("FAKE_FFMPEG_PID_LOG", str(tools.ffmpeg_pids))
    monkeypatch.setenv("FAKE_FFMPEG_PROBE_LOG", str(tools.probe_log))
    for name in list(os.environ):
        if name.startswith(("FAKE_YTDLP_", "FAKE_FFMPEG_")) and not name.endswith(("_PID_LOG", "_PROBE_LOG")):
            monkeypatch.delenv(name)
    MP3_ENCODER._reset()
    yield tools
    MP3_ENCODER._reset()
