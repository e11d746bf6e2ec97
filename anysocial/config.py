"""Environment-driven settings shared by the routers and the pipeline core."""
from __future__ import annotations

import os

YT_DLP_PATH = os.getenv("YT_DLP_PATH") or "yt-dlp"
FFMPEG_PATH = os.getenv("FFMPEG_PATH") or "ffmpeg"

CHUNK_SIZE = 1024 * 64
# Response sink depth in chunks; bounds per-request memory on the streaming path.
SINK_DEPTH = max(int(os.getenv("STREAM_SINK_DEPTH", "8") or "8"), 1)
# Seconds to hold headers back while waiting for the first media byte.
FIRST_CHUNK_WAIT = float(os.getenv("FIRST_CHUNK_WAIT", "15") or "15")
# Seconds to wait for participants to exit once their output has ended.
SETTLE_TIMEOUT = float(os.getenv("SETTLE_TIMEOUT", "10") or "10")
DISCONNECT_POLL_INTERVAL = 0.5

COOKIES_DIR = os.getenv("COOKIES_DIR", ".")
TEMP_DIR = os.getenv("DOWNLOAD_TEMP_DIR") or None

ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv("ALLOWED_ORIGINS", "*").split(",")
    if origin.strip()
]
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

DEFAULT_HTTP_HEADERS = {"User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0 Safari/537.36"}
