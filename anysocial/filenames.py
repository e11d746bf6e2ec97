from __future__ import annotations

import re
import unicodedata
from typing import Optional

MAX_BASE_LENGTH = 80
FALLBACK_BASE = "video"

_ILLEGAL = re.compile(r'[<>:"/\\|?*\x00-\x1f\x7f]')
_UNSAFE = re.compile(r"[^\w\-. ]+", re.ASCII)
_WHITESPACE = re.compile(r"\s+")


def _transliterate(text: str) -> str:
    text = _ILLEGAL.sub("", text)
    text = _WHITESPACE.sub(" ", text).strip()
    return _UNSAFE.sub("", unicodedata.normalize("NFKD", text))


def safe_filename(title: Optional[str], suffix: Optional[str] = "", ext: str = "mp4") -> str:
    """Create a cross-platform, ASCII-only attachment filename.

    Illegal and control characters are stripped, whitespace collapsed to
    underscores, accents transliterated, and the base truncated to 80
    characters before ``_<suffix>.<ext>`` is appended.
    """
    base = _WHITESPACE.sub("_", _transliterate(str(title or "")))[:MAX_BASE_LENGTH]
    base = base or FALLBACK_BASE
    sfx = _WHITESPACE.sub("_", _transliterate(str(suffix or "")))
    sfx = f"_{sfx}" if sfx else ""
    return f"{base}{sfx}.{ext}"
