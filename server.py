"""FastAPI backend for Any Social Downloader.

Per-platform routers live under ``/api/<platform>`` for youtube, facebook,
instagram, tiktok and twitter:

- POST /info            : metadata and the quality ladder for a post URL
- GET|POST /download    : stream one format (direct, remux or two-source merge)
- GET /merge            : merge a video-only and an audio-only format
- GET /download-audio   : audio transcoded to MP3 (AAC when libmp3lame is missing)

Facebook downloads are relayed through a temp file and re-encoded for phones.

Run with:
    uvicorn server:app --host 0.0.0.0 --port 8000
"""
from __future__ import annotations

import logging
import subprocess
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from yt_dlp.version import __version__ as yt_dlp_version

from anysocial import config
from anysocial.capability import MP3_ENCODER
from anysocial.errors import DownloadError
from anysocial.routes import platform_routers

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("anysocial.server")

app = FastAPI(title="Any Social Downloader API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.ALLOWED_ORIGINS,
    allow_credentials="*" not in config.ALLOWED_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
    # The frontend reads the attachment name from this header.
    expose_headers=["Content-Disposition"],
)

for router in platform_routers():
    app.include_router(router)


@app.exception_handler(DownloadError)
async def download_error_handler(request: Request, exc: DownloadError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    error = "Route not found" if exc.status_code == 404 else exc.detail
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": error},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {"field": ".".join(str(part) for part in error.get("loc", ())[1:]), "msg": error.get("msg")}
        for error in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"success": False, "error": "Validation failed", "details": details})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "Internal server error", "details": str(exc)},
    )


@app.get("/")
async def root() -> Dict[str, str]:
    return {"status": "ok"}


def ffmpeg_version() -> str:
    try:
        proc = subprocess.run([config.FFMPEG_PATH, "-version"], capture_output=True, text=True, timeout=2)
    except FileNotFoundError:
        return "missing"
    except (OSError, subprocess.SubprocessError) as exc:
        logger.warning("ffmpeg version check failed: %s", exc)
        return "ffmpeg check failed"
    if proc.returncode != 0 or not proc.stdout:
        return "ffmpeg check failed"
    return proc.stdout.splitlines()[0]


@app.get("/api/health")
def healthcheck() -> Dict[str, Any]:
    """Return service readiness and tool versions."""
    return {
        "status": "ok",
        "message": "Any Social Downloader API is running",
        "yt_dlp": yt_dlp_version,
        "ffmpeg": ffmpeg_version(),
        "mp3_encoder": MP3_ENCODER.value(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("server:app", host="0.0.0.0", port=8000, reload=False)
