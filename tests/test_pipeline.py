import asyncio

import pytest

from anysocial import commands, strategies
from anysocial.errors import DownloadError, ErrorCategory
from anysocial.pipeline import CLIENT_CLOSED_REQUEST, Pipeline, PipelineResponse, PipelineState, RelayFileResponse
from tests.conftest import is_running, wait_until_dead

pytestmark = pytest.mark.anyio

URL = "https://www.tiktok.com/@someone/video/1"


def extractor(fmt="18"):
    return commands.stream_args(URL, fmt)


async def consume(response):
    data = b""
    async for chunk in response.body_iterator:
        data += chunk
    return data


async def wait_exited(pipeline, timeout=5):
    await asyncio.wait_for(asyncio.gather(*(handle.wait() for handle in pipeline.processes)), timeout)


async def direct(**kwargs):
    return await strategies.direct_stream(None, "test/direct", extractor(), "clip.mp4", **kwargs)


async def transcode(**kwargs):
    return await strategies.transcode_stream(
        None, "test/transcode", extractor(), commands.audio_args(commands.MP3, 128), "clip.mp3", "audio/mpeg", **kwargs
    )


async def merge(**kwargs):
    return await strategies.merge_stream(None, "test/merge", extractor("137"), extractor("140"), "clip.mp4", **kwargs)


@pytest.mark.parametrize("start", [direct, transcode, merge], ids=["direct", "transcode", "merge"])
async def test_cleanup_kills_every_streaming_process(fake_tools, monkeypatch, start):
    monkeypatch.setenv("FAKE_YTDLP_HANG", "1")
    response = await start()
    assert isinstance(response, PipelineResponse)
    pipeline = response.pipeline
    assert pipeline.state is PipelineState.STREAMING
    pids = [handle.pid for handle in pipeline.processes]
    assert all(is_running(pid) for pid in pids)

    assert pipeline.cleanup() is True
    assert pipeline.cleanup() is False
    assert pipeline.cleanup_runs == 1

    await wait_exited(pipeline)
    assert not any(is_running(pid) for pid in pids)
    assert set(fake_tools.pids()) <= set(pids)


async def test_cleanup_kills_relay_extractor_and_removes_temp_file(fake_tools, monkeypatch):
    monkeypatch.setenv("FAKE_YTDLP_HANG", "1")
    pipeline = Pipeline("test/relay")
    task = asyncio.ensure_future(
        strategies.relay_file(None, "test/relay", lambda path: commands.relay_download_args(URL, "best", path), "clip.mp4", pipeline=pipeline)
    )
    for _ in range(100):
        if pipeline.processes:
            break
        await asyncio.sleep(0.05)
    pid = pipeline.processes[0].pid
    assert fake_tools.temp_files()

    pipeline.abort("test")
    pipeline.abort("again")
    response = await asyncio.wait_for(task, 5)

    assert response.status_code == CLIENT_CLOSED_REQUEST
    assert pipeline.state is PipelineState.ABORTED
    assert pipeline.cleanup_runs == 1
    await wait_exited(pipeline)
    assert not is_running(pid)
    assert fake_tools.temp_files() == []


async def test_direct_stream_completes(fake_tools, monkeypatch):
    monkeypatch.setenv("FAKE_YTDLP_BYTES", "300000")
    response = await direct()
    assert response.headers["content-disposition"] == 'attachment; filename="clip.mp4"'
    assert response.headers["cache-control"] == "no-cache"
    assert response.headers["x-content-type-options"] == "nosniff"
    data = await consume(response)
    assert len(data) == 300000
    assert response.pipeline.state is PipelineState.COMPLETED
    assert response.pipeline.cleanup_runs == 1


async def test_disconnect_mid_stream_fires_cleanup_once(fake_tools, monkeypatch):
    monkeypatch.setenv("FAKE_YTDLP_HANG", "1")
    monkeypatch.setenv("FAKE_YTDLP_BYTES", "2000000")
    response = await direct()
    pipeline = response.pipeline
    body = response.body_iterator
    assert await body.__anext__()
    assert await body.__anext__()

    await body.aclose()

    assert pipeline.state is PipelineState.ABORTED
    assert pipeline.sentinel.reason == "request closed"
    assert pipeline.cleanup_runs == 1
    # Later signals converge on the same, already fired, trigger.
    assert pipeline.sentinel.fire("response closed") is False
    assert pipeline.cleanup_runs == 1
    await wait_exited(pipeline)
    assert not any(is_running(pid) for pid in fake_tools.pids())
    assert fake_tools.temp_files() == []


class DisconnectingRequest:
    """Reports the client gone from the given poll onwards."""

    def __init__(self, after: int) -> None:
        self.after = after
        self.polls = 0

    async def is_disconnected(self) -> bool:
        self.polls += 1
        return self.polls >= self.after


async def test_request_aborted_while_waiting_for_output(fake_tools, monkeypatch):
    monkeypatch.setenv("FAKE_YTDLP_HANG", "1")
    monkeypatch.setenv("FAKE_YTDLP_BYTES", "0")
    monkeypatch.setattr("anysocial.config.DISCONNECT_POLL_INTERVAL", 0.05)
    request = DisconnectingRequest(after=3)
    pipeline = Pipeline("test/direct")

    response = await asyncio.wait_for(
        strategies.direct_stream(request, "test/direct", extractor(), "clip.mp4", pipeline=pipeline), 5
    )

    assert response.status_code == CLIENT_CLOSED_REQUEST
    assert pipeline.state is PipelineState.ABORTED
    assert pipeline.sentinel.reason == "request aborted"
    assert pipeline.cleanup_runs == 1
    assert pipeline.headers_sent is False
    assert request.polls == 3
    await wait_exited(pipeline)
    assert not any(is_running(pid) for pid in fake_tools.pids())


async def test_disconnect_kills_children_of_the_extractor(fake_tools, monkeypatch):
    monkeypatch.setenv("FAKE_YTDLP_CHILD_LOG", str(fake_tools.child_log))
    response = await strategies.transcode_stream(
        None,
        "test/remux",
        commands.merged_stream_args(URL, "bestvideo+bestaudio"),
        commands.remux_args(),
        "clip.mp4",
        "video/mp4",
    )
    pipeline = response.pipeline
    body = response.body_iterator
    assert await body.__anext__()
    children = await fake_tools.wait_for_children()
    assert len(children) == 1

    await body.aclose()

    assert pipeline.state is PipelineState.ABORTED
    await wait_exited(pipeline)
    assert wait_until_dead(children) == []
    extractor = pipeline.processes[1]
    # The read end was closed too, so reading finishes instead of blocking.
    await asyncio.wait_for(extractor.stdout.read(), 5)


async def test_relay_abort_kills_children_of_the_extractor(fake_tools, monkeypatch):
    monkeypatch.setenv("FAKE_YTDLP_CHILD_LOG", str(fake_tools.child_log))
    pipeline = Pipeline("test/relay")
    task = asyncio.ensure_future(
        strategies.relay_file(None, "test/relay", lambda path: commands.relay_download_args(URL, "bv+ba", path), "clip.mp4", pipeline=pipeline)
    )
    children = await fake_tools.wait_for_children()
    assert len(children) == 1

    pipeline.abort("test")
    response = await asyncio.wait_for(task, 5)

    assert response.status_code == CLIENT_CLOSED_REQUEST
    assert wait_until_dead(children) == []
    assert fake_tools.temp_files() == []


async def test_send_failure_aborts_pipeline(fake_tools, monkeypatch):
    monkeypatch.setenv("FAKE_YTDLP_HANG", "1")
    response = await direct()
    pipeline = response.pipeline

    async def receive():
        await asyncio.sleep(60)
        return {"type": "http.disconnect"}

    async def send(message):
        if message["type"] == "http.response.body":
            raise OSError("connection reset by peer")

    await response({"type": "http", "asgi": {"spec_version": "2.4"}}, receive, send)

    assert pipeline.headers_sent
    assert pipeline.state is PipelineState.ABORTED
    assert pipeline.cleanup_runs == 1
    await wait_exited(pipeline)


async def test_merge_tolerates_a_failing_audio_source(fake_tools, monkeypatch):
    # Best effort: the audio leg dies after partial output but the combiner exits 0.
    monkeypatch.setenv("FAKE_YTDLP_FAIL_FORMAT", "140")
    monkeypatch.setenv("FAKE_YTDLP_PARTIAL", "1000")
    monkeypatch.setenv("FAKE_YTDLP_STDERR", "ERROR: fragment 4 not found, unable to continue")
    response = await merge()
    data = await consume(response)

    pipeline = response.pipeline
    assert pipeline.state is PipelineState.COMPLETED
    assert pipeline.failure is None
    assert len(data) == 200000 + 1000
    await wait_exited(pipeline)
    video, audio = pipeline.processes[1:]
    assert video.returncode == 0
    assert audio.returncode != 0


async def test_failing_extractor_before_output_raises_classified_error(fake_tools, monkeypatch):
    monkeypatch.setenv("FAKE_YTDLP_EXIT", "1")
    monkeypatch.setenv("FAKE_YTDLP_STDERR", "ERROR: [TikTok] 1: login required")
    pipeline = Pipeline("test/direct")
    with pytest.raises(DownloadError) as info:
        await strategies.direct_stream(None, "test/direct", extractor(), "clip.mp4", pipeline=pipeline)
    assert info.value.category is ErrorCategory.LOGIN_REQUIRED
    assert info.value.status_code == 403
    assert pipeline.state is PipelineState.FAILED
    assert pipeline.headers_sent is False


async def test_transcoder_failure_reports_extractor_cause(fake_tools, monkeypatch):
    monkeypatch.setenv("FAKE_YTDLP_EXIT", "1")
    monkeypatch.setenv("FAKE_YTDLP_STDERR", "ERROR: Video unavailable")
    with pytest.raises(DownloadError) as info:
        await transcode()
    assert info.value.category is ErrorCategory.UNAVAILABLE


async def test_transcoder_failure_alone(fake_tools, monkeypatch):
    monkeypatch.setenv("FAKE_FFMPEG_EXIT", "1")
    monkeypatch.setenv("FAKE_YTDLP_BYTES", "1000")
    try:
        response = await transcode()
    except DownloadError as exc:
        # The exit can beat the first chunk; then the error is reported before headers.
        failure = exc
    else:
        await consume_until_terminated(response)
        assert response.pipeline.state is PipelineState.FAILED
        failure = response.pipeline.failure
    assert failure.category is ErrorCategory.TRANSCODE_FAILED


async def consume_until_terminated(response):
    sent = []

    async def receive():
        await asyncio.sleep(60)
        return {"type": "http.disconnect"}

    async def send(message):
        sent.append(message)

    await response({"type": "http", "asgi": {"spec_version": "2.4"}}, receive, send)
    # The body never completes: the server drops the connection instead.
    assert not any(m["type"] == "http.response.body" and not m.get("more_body", False) for m in sent)
    return sent


async def test_spawn_failure_is_a_download_error(fake_tools, monkeypatch, tmp_path):
    monkeypatch.setattr("anysocial.config.YT_DLP_PATH", str(tmp_path / "missing-yt-dlp"))
    with pytest.raises(DownloadError) as info:
        await direct()
    assert info.value.category is ErrorCategory.TOOL_MISSING
    assert info.value.status_code == 500


async def send_file(response):
    sent = []

    async def receive():
        await asyncio.sleep(60)
        return {"type": "http.disconnect"}

    async def send(message):
        sent.append(message)

    await response({"type": "http", "method": "GET", "headers": [], "asgi": {"spec_version": "2.4"}}, receive, send)
    return b"".join(m.get("body", b"") for m in sent if m["type"] == "http.response.body")


async def test_relay_sends_file_then_deletes_it(fake_tools, monkeypatch):
    monkeypatch.setenv("FAKE_YTDLP_BYTES", "4096")
    response = await strategies.relay_file(
        None, "test/relay", lambda path: commands.relay_download_args(URL, "best", path), "clip.mp4", compatible=True
    )
    assert isinstance(response, RelayFileResponse)
    assert len(fake_tools.temp_files()) == 2
    body = await send_file(response)
    assert len(body) == 4096
    assert response.pipeline.state is PipelineState.COMPLETED
    assert fake_tools.temp_files() == []


async def test_relay_falls_back_to_original_when_reencode_fails(fake_tools, monkeypatch):
    monkeypatch.setenv("FAKE_FFMPEG_FAIL_ON_FILE", "1")
    monkeypatch.setenv("FAKE_YTDLP_BYTES", "2048")
    response = await strategies.relay_file(
        None, "test/relay", lambda path: commands.relay_download_args(URL, "best", path), "clip.mp4", compatible=True
    )
    body = await send_file(response)
    assert len(body) == 2048
    assert fake_tools.temp_files() == []


async def test_relay_failure_deletes_temp_file(fake_tools, monkeypatch):
    monkeypatch.setenv("FAKE_YTDLP_EXIT", "1")
    monkeypatch.setenv("FAKE_YTDLP_PARTIAL", "512")
    monkeypatch.setenv("FAKE_YTDLP_STDERR", "ERROR: This video is private")
    with pytest.raises(DownloadError) as info:
        await strategies.relay_file(None, "test/relay", lambda path: commands.relay_download_args(URL, "best", path), "clip.mp4")
    assert info.value.status_code == 403
    assert fake_tools.temp_files() == []


async def test_relay_send_failure_still_deletes_file(fake_tools, monkeypatch):
    response = await strategies.relay_file(
        None, "test/relay", lambda path: commands.relay_download_args(URL, "best", path), "clip.mp4"
    )

    async def receive():
        await asyncio.sleep(60)
        return {"type": "http.disconnect"}

    async def send(message):
        raise OSError("broken pipe")

    await response({"type": "http", "method": "GET", "headers": [], "asgi": {"spec_version": "2.4"}}, receive, send)
    assert fake_tools.temp_files() == []
