"""Per-platform settings: URL shape, cookies, extractor flags and pipeline choices."""
from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Dict, Optional, Pattern, Tuple

from anysocial import config

LADDER_HEIGHTS = (144, 240, 360, 480, 720, 1080)
YOUTUBE_HEIGHTS = (144, 240, 360, 480, 720, 1080, 1440, 2160)

SELECTOR_LADDER = "selector"
NEAREST_LADDER = "nearest"
HEIGHT_LADDER = "height"


def ladder_selector(height: int) -> str:
    """Best at or below ``height``, else the smallest above it, else anything."""
    return f"best[height<={height}]/worst[height>={height}]/best"


def height_selector(height: int) -> str:
    return f"bestvideo[height<={height}]+bestaudio/best[height<={height}]"


@dataclass(frozen=True)
class PlatformProfile:
    key: str
    label: str
    url_pattern: Pattern[str]
    url_hint: str
    cookie_file: Optional[str] = None
    # Instagram serves more formats with a session; other platforms work best anonymous.
    cookies_for_download: bool = False
    extractor_args: Tuple[str, ...] = ()
    audio_source: str = "bestaudio/best"
    relay: bool = False
    ladder: str = SELECTOR_LADDER
    heights: Tuple[int, ...] = LADDER_HEIGHTS
    best_option: bool = False
    default_title: str = "video"

    def cookie_path(self) -> Optional[str]:
        if not self.cookie_file:
            return None
        path = os.path.join(config.COOKIES_DIR, self.cookie_file)
        return path if os.path.isfile(path) else None

    def download_cookie_path(self) -> Optional[str]:
        return self.cookie_path() if self.cookies_for_download else None

    def matches(self, url: str) -> bool:
        return bool(self.url_pattern.match(url or ""))

    def resolve_token(self, token: Optional[str], default: str = "best") -> str:
        """Turn height shorthands (``"720"``) into selectors; other tokens pass through."""
        token = (token or "").strip()
        if not token:
            return default
        if self.ladder == HEIGHT_LADDER and token.isdigit() and int(token) in self.heights:
            return height_selector(int(token))
        return token


YOUTUBE = PlatformProfile(
    key="youtube",
    label="YouTube",
    url_pattern=re.compile(r"^(https?://)?(www\.|m\.)?(youtube\.com/(watch\?v=|embed/|v/|shorts/)|youtu\.be/)[\w-]+", re.I),
    url_hint="Please provide a valid YouTube URL",
    cookie_file="cookies-yt/cookies.txt",
    ladder=HEIGHT_LADDER,
    heights=YOUTUBE_HEIGHTS,
)

FACEBOOK = PlatformProfile(
    key="facebook",
    label="Facebook",
    url_pattern=re.compile(r"^(https?://)?(www\.|m\.|web\.)?(facebook\.com|fb\.watch)/.+", re.I),
    url_hint="Please provide a valid Facebook URL",
    cookie_file="cookies-fb/cookies.txt",
    # H.264 first so the relayed file plays on phones without re-encoding.
    extractor_args=("-S", "vcodec:h264,res,acodec:m4a"),
    relay=True,
    ladder=NEAREST_LADDER,
    default_title="Facebook Video",
)

INSTAGRAM = PlatformProfile(
    key="instagram",
    label="Instagram",
    url_pattern=re.compile(r"^(https?://)?(www\.)?instagram\.com/(p|reel|reels|tv)/[\w-]+/?", re.I),
    url_hint="Please provide a valid Instagram URL (post, reel, or IGTV)",
    cookie_file="cookies-ig/cookies.txt",
    cookies_for_download=True,
    extractor_args=("--buffer-size", "32M", "--http-chunk-size", "20M", "--concurrent-fragments", "10"),
    ladder=NEAREST_LADDER,
    default_title="Instagram Video",
)

TIKTOK = PlatformProfile(
    key="tiktok",
    label="TikTok",
    url_pattern=re.compile(r"^(https?://)?(www\.|vm\.|vt\.|m\.)?tiktok\.com/.+", re.I),
    url_hint="Please provide a valid TikTok URL",
    best_option=True,
    default_title="TikTok Video",
)

TWITTER = PlatformProfile(
    key="twitter",
    label="Twitter/X",
    url_pattern=re.compile(r"^(https?://)?(www\.|mobile\.)?(twitter\.com|x\.com)/\w+/status/\d+", re.I),
    url_hint="Please provide a valid Twitter/X URL",
    audio_source="best",
    best_option=True,
    default_title="Twitter Video",
)

PLATFORMS: Dict[str, PlatformProfile] = {
    profile.key: profile for profile in (YOUTUBE, FACEBOOK, INSTAGRAM, TIKTOK, TWITTER)
}
