"""``/info``: extractor metadata normalised into a uniform quality ladder."""
from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional

import yt_dlp

from anysocial import config
from anysocial.commands import AUDIO_BITRATES
from anysocial.errors import DownloadError
from anysocial.platforms import HEIGHT_LADDER, NEAREST_LADDER, PlatformProfile, ladder_selector

logger = logging.getLogger(__name__)


def build_ydl_opts(cookie_file: Optional[str] = None) -> Dict[str, Any]:
    opts: Dict[str, Any] = {
        "quiet": True,
        "no_warnings": True,
        "skip_download": True,
        "noplaylist": True,
        "http_headers": config.DEFAULT_HTTP_HEADERS,
    }
    if cookie_file:
        opts["cookiefile"] = cookie_file
    return opts


def _extract(url: str, cookie_file: Optional[str]) -> Dict[str, Any]:
    with yt_dlp.YoutubeDL(build_ydl_opts(cookie_file)) as ydl:
        return ydl.extract_info(url, download=False)


def fetch_media_info(profile: PlatformProfile, url: str) -> Dict[str, Any]:
    """Run the extractor in-process; a session cookie is tried first when one exists.

    Blocking: call from a threadpool.
    """
    cookie_file = profile.cookie_path()
    try:
        if cookie_file:
            try:
                return _extract(url, cookie_file)
            except yt_dlp.utils.DownloadError as exc:
                logger.warning("%s info with cookies failed, retrying anonymously: %s", profile.key, str(exc).splitlines()[0])
        return _extract(url, None)
    except yt_dlp.utils.DownloadError as exc:
        raise DownloadError.from_extractor(str(exc), fallback_status=400) from exc


def parse_upload_date(value: Optional[str]) -> Optional[str]:
    """``20240131`` -> ``2024-01-31``; anything else is returned unchanged."""
    if not value:
        return None
    if isinstance(value, str) and re.fullmatch(r"\d{8}", value):
        return f"{value[:4]}-{value[4:6]}-{value[6:]}"
    return value


def best_thumbnail(info: Dict[str, Any]) -> Optional[str]:
    if info.get("thumbnail"):
        return info["thumbnail"]
    candidates = [t for t in info.get("thumbnails") or [] if t.get("url")]
    if not candidates:
        return None
    candidates.sort(key=lambda t: (t.get("width") or 0) * (t.get("height") or 0), reverse=True)
    return candidates[0]["url"]


def build_video_info(profile: PlatformProfile, info: Dict[str, Any]) -> Dict[str, Any]:
    views = info.get("view_count") or info.get("like_count") or 0
    return {
        "title": info.get("title") or profile.default_title,
        "author": info.get("uploader") or info.get("creator") or info.get("channel") or "Unknown",
        "lengthSeconds": int(info.get("duration") or 0),
        "viewCount": max(0, int(views)),
        "publishDate": parse_upload_date(info.get("upload_date")),
        "description": info.get("description") or "",
        "thumbnail": best_thumbnail(info),
    }


def quality_bucket(height: int) -> int:
    for step in (1080, 720, 480, 360, 240):
        if height >= step:
            return step
    return 144


def _format_entry(fmt: Dict[str, Any], audio: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    merge = fmt.get("acodec") == "none" and audio is not None
    entry = {
        "itag": fmt["format_id"],
        "qualityLabel": f"{quality_bucket(fmt['height'])}p",
        "quality": fmt["height"],
        "hasAudio": fmt.get("acodec") != "none",
        "merge": merge,
        "fps": fmt.get("fps"),
        "mimeType": f"video/{fmt.get('ext') or 'mp4'}",
        "contentLength": fmt.get("filesize") or fmt.get("filesize_approx"),
        "width": fmt.get("width"),
        "height": fmt.get("height"),
        "tbr": fmt.get("tbr") or 0,
    }
    if merge:
        entry.update(vItag=fmt["format_id"], aItag=audio["format_id"], itag=f"{fmt['format_id']}+{audio['format_id']}", hasAudio=True)
    return entry


def _generic_entry(label: str, itag: str, height: Optional[int]) -> Dict[str, Any]:
    return {
        "itag": itag,
        "qualityLabel": label,
        "quality": height if height is not None else "best",
        "hasAudio": True,
        "merge": False,
        "fps": None,
        "mimeType": "video/mp4",
        "contentLength": None,
        "width": None,
        "height": height,
        "tbr": None,
    }


def build_formats(profile: PlatformProfile, info: Dict[str, Any]) -> Dict[str, List[Dict[str, Any]]]:
    """The ``formats`` object of an ``/info`` response.

    One video entry per ladder height. A height the source lacks is filled by
    an extractor selector (``selector`` ladder) or by the nearest real format
    (``nearest`` ladder). YouTube heights are plain numbers the download
    endpoints expand into selectors.
    """
    formats = info.get("formats") or []
    videos = [f for f in formats if f.get("vcodec") != "none" and f.get("height") and f.get("format_id")]
    audios = [f for f in formats if f.get("vcodec") == "none" and f.get("acodec") not in (None, "none") and f.get("format_id")]
    best_audio = max(audios, key=lambda f: f.get("abr") or f.get("tbr") or 0) if audios else None

    by_quality: Dict[int, Dict[str, Any]] = {}
    for fmt in videos:
        bucket = quality_bucket(fmt["height"])
        current = by_quality.get(bucket)
        if current is None or (fmt.get("tbr") or 0) > (current.get("tbr") or 0):
            by_quality[bucket] = fmt

    video_entries: List[Dict[str, Any]] = []
    if profile.ladder == HEIGHT_LADDER:
        top = max((f["height"] for f in videos), default=max(profile.heights))
        for height in sorted(profile.heights, reverse=True):
            if height <= max(top, min(profile.heights)):
                video_entries.append(_generic_entry(f"{height}p", str(height), height))
    else:
        for height in profile.heights:
            fmt = by_quality.get(height)
            if fmt is not None:
                video_entries.append(_format_entry(fmt, best_audio))
            elif profile.ladder == NEAREST_LADDER:
                if not by_quality:
                    continue
                above = [q for q in by_quality if q >= height]
                nearest = by_quality[min(above)] if above else by_quality[max(by_quality)]
                entry = _format_entry(nearest, best_audio)
                entry["qualityLabel"] = f"{height}p"
                if not entry["merge"]:
                    entry["itag"] = f"best[height<={height}]/best"
                video_entries.append(entry)
            else:
                video_entries.append(_generic_entry(f"{height}p", ladder_selector(height), height))
        if profile.best_option:
            video_entries.append(_generic_entry("Best Quality", "best", None))

    audio_entries = [{"bitrate": bitrate, "isTranscoded": True} for bitrate in AUDIO_BITRATES]
    if best_audio is not None:
        audio_entries.append({
            "itag": best_audio["format_id"],
            "bitrate": int(best_audio.get("abr") or 0) or None,
            "mimeType": f"audio/{best_audio.get('ext') or 'mp4'}",
            "contentLength": best_audio.get("filesize"),
            "isTranscoded": False,
        })
    return {"video": video_entries, "audio": audio_entries}


def describe(profile: PlatformProfile, url: str) -> Dict[str, Any]:
    info = fetch_media_info(profile, url)
    return {
        "success": True,
        "videoInfo": build_video_info(profile, info),
        "formats": build_formats(profile, info),
    }
