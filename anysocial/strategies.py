"""The four pipeline shapes a download can take.

Each strategy builds a ``Pipeline``, wires processes and couplings, and returns
a response once the first media byte (or ``FIRST_CHUNK_WAIT``) arrives. A
``DownloadError`` raised here has not sent any headers yet and is rendered as
JSON by the application's exception handler.
"""
from __future__ import annotations

import logging
from typing import Awaitable, Callable, List, Optional, Sequence

from starlette.requests import Request
from starlette.responses import Response

from anysocial import config
from anysocial.commands import AUDIO_IN, VIDEO_IN, combine_args, compatible_mp4_args
from anysocial.coupler import ResponseSink, WriterSink
from anysocial.errors import DownloadError, ErrorCategory, SpawnError
from anysocial.pipeline import (
    CLIENT_CLOSED_REQUEST,
    ClientDisconnected,
    Pipeline,
    PipelineResponse,
    RelayFileResponse,
)
from anysocial.process import IGNORED, PIPED, TRANSCODER, Arg, StdioSpec

logger = logging.getLogger(__name__)

EXTRACTOR_STDIO = StdioSpec()
TRANSCODER_STDIO = StdioSpec(stdin=PIPED)
COMBINER_STDIO = StdioSpec(extra_inputs=(VIDEO_IN, AUDIO_IN))
FILE_WRITER_STDIO = StdioSpec(stdout=IGNORED)


async def _respond(pipeline: Pipeline, filename: str, media_type: str) -> PipelineResponse:
    sink = pipeline.output
    assert sink is not None
    first = await pipeline.first_output(sink)
    response = PipelineResponse(pipeline, sink, filename, media_type)
    response.prime(first)
    pipeline.sentinel.attach(response)
    return response


async def _orchestrate(pipeline: Pipeline, request: Optional[Request], wire: Callable[[], Awaitable[Response]]) -> Response:
    pipeline.arm(request)
    try:
        with pipeline.guard():
            return await wire()
    except ClientDisconnected:
        return Response(status_code=CLIENT_CLOSED_REQUEST)


async def direct_stream(
    request: Optional[Request],
    name: str,
    extractor_args: Sequence[Arg],
    filename: str,
    media_type: str = "video/mp4",
    pipeline: Optional[Pipeline] = None,
) -> Response:
    """Extractor stdout straight into the response."""
    pipeline = pipeline or Pipeline(name)

    async def wire() -> Response:
        extractor = await pipeline.spawn(config.YT_DLP_PATH, extractor_args, EXTRACTOR_STDIO, name="extractor")
        pipeline.final = extractor
        pipeline.output = ResponseSink()
        pipeline.couple(extractor.stdout, pipeline.output, name="extractor->response")
        return await _respond(pipeline, filename, media_type)

    return await _orchestrate(pipeline, request, wire)


async def transcode_stream(
    request: Optional[Request],
    name: str,
    extractor_args: Sequence[Arg],
    transcoder_args: Sequence[Arg],
    filename: str,
    media_type: str,
    pipeline: Optional[Pipeline] = None,
) -> Response:
    """Extractor stdout into transcoder stdin; transcoder stdout into the response."""
    pipeline = pipeline or Pipeline(name)

    async def wire() -> Response:
        # Transcoder first: an extractor must never write into a pipe with no reader.
        transcoder = await pipeline.spawn(
            config.FFMPEG_PATH, transcoder_args, TRANSCODER_STDIO, name="transcoder", kind=TRANSCODER
        )
        pipeline.final = transcoder
        extractor = await pipeline.spawn(config.YT_DLP_PATH, extractor_args, EXTRACTOR_STDIO, name="extractor")
        pipeline.couple(extractor.stdout, WriterSink(transcoder.stdin, "transcoder stdin"), name="extractor->transcoder")
        pipeline.output = ResponseSink()
        pipeline.couple(transcoder.stdout, pipeline.output, name="transcoder->response")
        return await _respond(pipeline, filename, media_type)

    return await _orchestrate(pipeline, request, wire)


async def merge_stream(
    request: Optional[Request],
    name: str,
    video_args: Sequence[Arg],
    audio_args: Sequence[Arg],
    filename: str,
    media_type: str = "video/mp4",
    combiner_args: Optional[Sequence[Arg]] = None,
    pipeline: Optional[Pipeline] = None,
) -> Response:
    """Two extractors feeding the ``video_in``/``audio_in`` inputs of one combiner.

    The sources are best effort: one of them ending early or exiting non-zero
    does not fail the request as long as the combiner exits 0.
    """
    pipeline = pipeline or Pipeline(name)

    async def wire() -> Response:
        combiner = await pipeline.spawn(
            config.FFMPEG_PATH, combiner_args or combine_args(), COMBINER_STDIO, name="combiner", kind=TRANSCODER
        )
        pipeline.final = combiner
        video = await pipeline.spawn(config.YT_DLP_PATH, video_args, EXTRACTOR_STDIO, name="video", fatal=False)
        audio = await pipeline.spawn(config.YT_DLP_PATH, audio_args, EXTRACTOR_STDIO, name="audio", fatal=False)
        pipeline.couple(video.stdout, WriterSink(combiner.extra[VIDEO_IN], VIDEO_IN), name="video->combiner", fatal=False)
        pipeline.couple(audio.stdout, WriterSink(combiner.extra[AUDIO_IN], AUDIO_IN), name="audio->combiner", fatal=False)
        pipeline.output = ResponseSink()
        pipeline.couple(combiner.stdout, pipeline.output, name="combiner->response")
        return await _respond(pipeline, filename, media_type)

    return await _orchestrate(pipeline, request, wire)


async def relay_file(
    request: Optional[Request],
    name: str,
    build_args: Callable[[str], List[str]],
    filename: str,
    media_type: str = "video/mp4",
    suffix: str = ".mp4",
    compatible: bool = False,
    pipeline: Optional[Pipeline] = None,
) -> Response:
    """Download to a temp file, optionally re-encode it, then send it whole.

    ``build_args`` receives the temp path and returns the extractor arguments.
    With ``compatible`` the download is re-encoded for mobile players; if that
    fails the original download is sent instead.
    """
    pipeline = pipeline or Pipeline(name)
    tag = name.replace("/", "_")

    async def wire() -> Response:
        download = pipeline.temp_file(tag, suffix)
        extractor = await pipeline.spawn(config.YT_DLP_PATH, build_args(download.path), FILE_WRITER_STDIO, name="extractor")
        await pipeline.run_to_exit(extractor)
        if not download.has_content():
            raise DownloadError(ErrorCategory.FAILED, details="the extractor did not produce a file")

        path = download.path
        if compatible:
            path = await _reencode(pipeline, tag, suffix, download.path)

        response = RelayFileResponse(pipeline, path, filename, media_type)
        pipeline.sentinel.attach(response)
        return response

    return await _orchestrate(pipeline, request, wire)


async def _reencode(pipeline: Pipeline, tag: str, suffix: str, source: str) -> str:
    converted = pipeline.temp_file(f"{tag}_compat", suffix)
    try:
        transcoder = await pipeline.spawn(
            config.FFMPEG_PATH,
            compatible_mp4_args(source, converted.path),
            FILE_WRITER_STDIO,
            name="reencode",
            kind=TRANSCODER,
            fatal=False,
        )
    except SpawnError as exc:
        logger.warning("%s: re-encode unavailable, sending original: %s", pipeline.name, exc.details)
        return source
    await transcoder.wait()
    pipeline.check()
    if transcoder.returncode == 0 and converted.has_content():
        return converted.path
    logger.warning("%s: re-encode failed (%s), sending original: %s", pipeline.name, transcoder.returncode, transcoder.stderr_text)
    return source
