"""Per-platform HTTP endpoints, mounted at ``/api/<platform>``."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Union
from urllib.error import URLError
from urllib.parse import urlparse
from urllib.request import Request as UrlRequest, urlopen

from fastapi import APIRouter, Query, Request
from fastapi.responses import Response
from pydantic import BaseModel

from anysocial import config, strategies
from anysocial.capability import MP3_ENCODER
from anysocial.commands import (
    AAC,
    MP3,
    Strategy,
    audio_args,
    extractor_base_args,
    is_plain_format_id,
    merged_stream_args,
    parse_bitrate,
    plan_format,
    relay_audio_args,
    relay_download_args,
    remux_args,
    stream_args,
)
from anysocial.errors import DownloadError, ErrorCategory
from anysocial.filenames import safe_filename
from anysocial.metadata import describe
from anysocial.platforms import INSTAGRAM, PLATFORMS, PlatformProfile

logger = logging.getLogger(__name__)

THUMBNAIL_HOSTS = ("cdninstagram.com", "fbcdn.net")
THUMBNAIL_TIMEOUT = 10


class InfoRequest(BaseModel):
    url: str


class DownloadRequest(BaseModel):
    url: str
    itag: Optional[str] = None
    format_id: Optional[str] = None
    title: Optional[str] = None
    bitrate: Optional[Union[int, str]] = None


def validate_url(profile: PlatformProfile, url: str) -> str:
    url = (url or "").strip()
    if not profile.matches(url):
        raise DownloadError(
            ErrorCategory.INVALID_REQUEST,
            details=[{"field": "url", "value": url, "msg": profile.url_hint}],
        )
    return url


def _suffix(token: Optional[str]) -> str:
    token = (token or "").strip()
    if not token:
        return ""
    if "+" in token:
        token = token.split("+")[0]
    return token if is_plain_format_id(token) else ""


async def download_video(
    request: Request,
    profile: PlatformProfile,
    url: str,
    token: Optional[str],
    title: Optional[str],
) -> Response:
    filename = safe_filename(title or profile.default_title, _suffix(token), "mp4")
    base = extractor_base_args(profile.download_cookie_path(), profile.extractor_args)
    name = f"{profile.key}/download"

    if profile.relay:
        selector = (token or "").strip() or "best"
        logger.info("%s: %s via %s -> %s", name, url, Strategy.RELAY.value, filename)
        return await strategies.relay_file(
            request, name, lambda path: relay_download_args(url, selector, path, base), filename, compatible=True
        )

    plan = plan_format(profile.resolve_token(token))
    logger.info("%s: %s via %s (%s) -> %s", name, url, plan.strategy.value, plan.selector, filename)
    if plan.strategy is Strategy.MERGE:
        return await strategies.merge_stream(
            request,
            f"{profile.key}/merge",
            stream_args(url, plan.video, base),
            stream_args(url, plan.audio, base),
            filename,
        )
    if plan.strategy is Strategy.TRANSCODE:
        return await strategies.transcode_stream(
            request, name, merged_stream_args(url, plan.selector, base), remux_args(), filename, "video/mp4"
        )
    return await strategies.direct_stream(request, name, stream_args(url, plan.selector, base), filename)


async def download_audio(
    request: Request,
    profile: PlatformProfile,
    url: str,
    bitrate: Optional[Any],
    title: Optional[str],
) -> Response:
    kbps = parse_bitrate(bitrate)
    base = extractor_base_args(profile.download_cookie_path(), profile.extractor_args)
    name = f"{profile.key}/audio"

    if profile.relay:
        filename = safe_filename(title or "audio", f"{kbps}k", "mp3")
        return await strategies.relay_file(
            request,
            name,
            lambda path: relay_audio_args(url, kbps, path, base),
            filename,
            media_type="audio/mpeg",
            suffix=".mp3",
        )

    encoding = MP3 if await MP3_ENCODER.resolve() else AAC
    filename = safe_filename(title or "audio", f"{kbps}k", encoding.ext)
    logger.info("%s: %s as %s %dk -> %s", name, url, encoding.codec, kbps, filename)
    return await strategies.transcode_stream(
        request,
        name,
        stream_args(url, profile.audio_source, base),
        audio_args(encoding, kbps),
        filename,
        encoding.media_type,
    )


def fetch_thumbnail(url: str) -> Response:
    parsed = urlparse(url or "")
    host = (parsed.hostname or "").lower()
    if parsed.scheme not in ("http", "https") or not any(host == h or host.endswith("." + h) for h in THUMBNAIL_HOSTS):
        raise DownloadError(ErrorCategory.INVALID_REQUEST, details="thumbnail URL must point at the Instagram CDN")
    try:
        with urlopen(UrlRequest(url, headers=config.DEFAULT_HTTP_HEADERS), timeout=THUMBNAIL_TIMEOUT) as resp:
            content = resp.read()
            media_type = resp.headers.get_content_type() or "image/jpeg"
    except (URLError, OSError) as exc:
        raise DownloadError(ErrorCategory.FAILED, message="Failed to fetch thumbnail", details=str(exc), status_code=502) from exc
    return Response(content, media_type=media_type, headers={"Cache-Control": "public, max-age=3600"})


def build_router(profile: PlatformProfile) -> APIRouter:
    router = APIRouter(prefix=f"/api/{profile.key}", tags=[profile.label])

    @router.post("/info")
    def info(body: InfoRequest) -> Dict[str, Any]:
        """Media metadata and the download ladder for a post URL."""
        return describe(profile, validate_url(profile, body.url))

    @router.get("/download")
    async def download_get(
        request: Request,
        url: str = Query(..., description="Post URL"),
        itag: Optional[str] = Query(None, description="Format id or selector"),
        title: Optional[str] = Query(None),
        bitrate: Optional[str] = Query(None, description="Audio bitrate; downloads audio when set without an itag"),
    ) -> Response:
        url = validate_url(profile, url)
        if bitrate and not itag:
            return await download_audio(request, profile, url, bitrate, title)
        return await download_video(request, profile, url, itag, title)

    @router.post("/download")
    async def download_post(request: Request, body: DownloadRequest) -> Response:
        url = validate_url(profile, body.url)
        token = body.itag or body.format_id
        if body.bitrate and not token:
            return await download_audio(request, profile, url, body.bitrate, body.title)
        return await download_video(request, profile, url, token, body.title)

    @router.get("/merge")
    async def merge(
        request: Request,
        url: str = Query(...),
        video_itag: str = Query(..., alias="vItag"),
        audio_itag: str = Query(..., alias="aItag"),
        title: Optional[str] = Query(None),
    ) -> Response:
        return await download_video(request, profile, validate_url(profile, url), f"{video_itag}+{audio_itag}", title)

    @router.get("/download-audio")
    async def audio(
        request: Request,
        url: str = Query(...),
        bitrate: Optional[str] = Query(None),
        title: Optional[str] = Query(None),
    ) -> Response:
        return await download_audio(request, profile, validate_url(profile, url), bitrate, title)

    if profile is INSTAGRAM:
        router.add_api_route("/download-video", download_get, methods=["GET"])

        @router.get("/thumbnail")
        def thumbnail(url: str = Query(...)) -> Response:
            return fetch_thumbnail(url)

    return router


def platform_routers():
    return [build_router(profile) for profile in PLATFORMS.values()]
