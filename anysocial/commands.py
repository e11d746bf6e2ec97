"""Argument lists for the extractor and transcoder, and itag token planning."""
from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence

from anysocial import config
from anysocial.process import Arg, PipeRef

VIDEO_IN = "video_in"
AUDIO_IN = "audio_in"

AUDIO_BITRATES = (96, 128, 160, 192, 256, 320)
DEFAULT_BITRATE = 128

_PLAIN_FORMAT_ID = re.compile(r"^[A-Za-z0-9_.-]+$")


class Strategy(str, Enum):
    DIRECT = "direct"
    TRANSCODE = "transcode"
    MERGE = "merge"
    RELAY = "relay"


@dataclass(frozen=True)
class FormatPlan:
    strategy: Strategy
    selector: str
    video: Optional[str] = None
    audio: Optional[str] = None


def plan_format(token: Optional[str], default: str = "best") -> FormatPlan:
    """Pick a streaming shape from the format token.

    ``137`` or ``best[height<=720]`` stream directly, ``137+140`` (two plain
    ids) is merged from two sources, and any other selector containing ``+``
    is merged by the extractor into Matroska and remuxed.
    """
    token = (token or "").strip() or default
    if "+" in token:
        parts = token.split("+")
        if len(parts) == 2 and all(is_plain_format_id(part) for part in parts):
            return FormatPlan(Strategy.MERGE, token, video=parts[0], audio=parts[1])
        return FormatPlan(Strategy.TRANSCODE, token)
    return FormatPlan(Strategy.DIRECT, token)


def is_plain_format_id(token: str) -> bool:
    return bool(_PLAIN_FORMAT_ID.match(token or ""))


def parse_bitrate(value, default: int = DEFAULT_BITRATE) -> int:
    """``"192k"``, ``"192"`` or ``192`` -> 192; anything unusable -> ``default``."""
    match = re.match(r"^\s*(\d+)", str(value or ""))
    if not match:
        return default
    bitrate = int(match.group(1))
    return bitrate if 32 <= bitrate <= 320 else default


# -- extractor ------------------------------------------------------------------


def extractor_base_args(cookie_file: Optional[str] = None, extra: Sequence[str] = ()) -> List[str]:
    args = ["--no-playlist", "--no-warnings", "--no-progress", "--no-part"]
    if config.FFMPEG_PATH != "ffmpeg":
        args += ["--ffmpeg-location", config.FFMPEG_PATH]
    if cookie_file:
        args += ["--cookies", cookie_file]
    args += list(extra)
    return args


def stream_args(url: str, selector: str, base: Sequence[str] = ()) -> List[str]:
    return [*base, "-f", selector, "-o", "-", "--", url]


def merged_stream_args(url: str, selector: str, base: Sequence[str] = ()) -> List[str]:
    # Matroska can be written to a pipe; MP4 cannot.
    return [*base, "-f", selector, "--merge-output-format", "mkv", "-o", "-", "--", url]


def relay_download_args(url: str, selector: str, path: str, base: Sequence[str] = ()) -> List[str]:
    return [*base, "--force-overwrites", "-f", selector, "--merge-output-format", "mp4", "-o", path, "--", url]


def relay_audio_args(url: str, bitrate: int, path: str, base: Sequence[str] = ()) -> List[str]:
    return [
        *base,
        "--force-overwrites",
        "-f", "bestaudio/best",
        "--extract-audio",
        "--audio-format", "mp3",
        "--audio-quality", f"{bitrate}k",
        "-o", path,
        "--", url,
    ]


# -- transcoder -----------------------------------------------------------------

_FRAGMENTED_MP4 = ["-f", "mp4", "-movflags", "frag_keyframe+empty_moov"]


def transcoder_base_args() -> List[str]:
    return ["-hide_banner", "-loglevel", "error", "-nostdin"]


def remux_args() -> List[str]:
    return [
        *transcoder_base_args(),
        "-i", "pipe:0",
        "-c:v", "copy",
        "-c:a", "copy",
        *_FRAGMENTED_MP4,
        "-avoid_negative_ts", "make_zero",
        "pipe:1",
    ]


def combine_args() -> List[Arg]:
    return [
        *transcoder_base_args(),
        "-i", PipeRef(VIDEO_IN),
        "-i", PipeRef(AUDIO_IN),
        "-map", "0:v:0",
        "-map", "1:a:0",
        "-c", "copy",
        *_FRAGMENTED_MP4,
        "pipe:1",
    ]


@dataclass(frozen=True)
class AudioEncoding:
    codec: str
    container: str
    ext: str
    media_type: str
    extra: Sequence[str] = ()


MP3 = AudioEncoding("libmp3lame", "mp3", "mp3", "audio/mpeg", ("-ar", "44100", "-ac", "2", "-write_xing", "0"))
AAC = AudioEncoding("aac", "adts", "aac", "audio/aac", ("-ar", "44100", "-ac", "2"))


def audio_args(encoding: AudioEncoding, bitrate: int) -> List[str]:
    return [
        *transcoder_base_args(),
        "-i", "pipe:0",
        "-vn",
        "-acodec", encoding.codec,
        "-b:a", f"{bitrate}k",
        *encoding.extra,
        "-f", encoding.container,
        "pipe:1",
    ]


def compatible_mp4_args(source: str, target: str) -> List[str]:
    """Re-encode to H.264 main / AAC so the file plays on iOS devices."""
    return [
        *transcoder_base_args(),
        "-i", source,
        "-c:v", "libx264",
        "-preset", "veryfast",
        "-pix_fmt", "yuv420p",
        "-profile:v", "main",
        "-level:v", "4.0",
        "-c:a", "aac",
        "-b:a", "128k",
        "-movflags", "+faststart",
        "-y", target,
    ]
