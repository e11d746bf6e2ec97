import threading

import pytest

from anysocial.capability import MP3_ENCODER, CapabilityProbe


def test_probe_spawns_once_under_concurrent_first_calls(fake_tools):
    results = []
    start = threading.Barrier(8)

    def call():
        start.wait()
        results.append(MP3_ENCODER.value())

    threads = [threading.Thread(target=call) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results == [True] * 8
    assert fake_tools.probe_runs() == 1

    assert MP3_ENCODER.value() is True
    assert fake_tools.probe_runs() == 1


def test_missing_encoder_is_cached_false(fake_tools, monkeypatch):
    monkeypatch.setenv("FAKE_FFMPEG_NO_MP3", "1")
    assert MP3_ENCODER.value() is False
    monkeypatch.delenv("FAKE_FFMPEG_NO_MP3")
    assert MP3_ENCODER.value() is False
    assert fake_tools.probe_runs() == 1


def test_missing_binary_is_cached_false(tmp_path):
    probe = CapabilityProbe("x", ["-encoders"], "libmp3lame", executable=str(tmp_path / "no-ffmpeg"))
    assert probe.checked is False
    assert probe.value() is False
    assert probe.checked is True


@pytest.mark.anyio
async def test_resolve_from_async_code(fake_tools):
    assert await MP3_ENCODER.resolve() is True
    assert await MP3_ENCODER.resolve() is True
    assert fake_tools.probe_runs() == 1
