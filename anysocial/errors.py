"""Error taxonomy for download requests.

Every failure that crosses the orchestration boundary is a ``DownloadError``;
``server.py`` renders it as ``{"success": false, "error", "category", "details"}``.
Extractor stderr is classified by ``ERROR_RULES``, evaluated top to bottom.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union


class ErrorCategory(str, Enum):
    LOGIN_REQUIRED = "login_required"
    AGE_RESTRICTED = "age_restricted"
    UNAVAILABLE = "unavailable"
    FAILED = "failed"
    TOOL_MISSING = "tool_missing"
    TRANSCODE_FAILED = "transcode_failed"
    INVALID_REQUEST = "invalid_request"


CATEGORY_MESSAGES = {
    ErrorCategory.LOGIN_REQUIRED: "This media is private or requires login. Only public posts can be downloaded.",
    ErrorCategory.AGE_RESTRICTED: "This media is age-restricted and cannot be downloaded anonymously.",
    ErrorCategory.UNAVAILABLE: "This media is not available or has been removed.",
    ErrorCategory.FAILED: "Download failed",
    ErrorCategory.TOOL_MISSING: "Media tooling is not installed on the server",
    ErrorCategory.TRANSCODE_FAILED: "Media conversion failed",
    ErrorCategory.INVALID_REQUEST: "Validation failed",
}

CATEGORY_STATUS = {
    ErrorCategory.LOGIN_REQUIRED: 403,
    ErrorCategory.AGE_RESTRICTED: 403,
    ErrorCategory.UNAVAILABLE: 404,
    ErrorCategory.FAILED: 500,
    ErrorCategory.TOOL_MISSING: 500,
    ErrorCategory.TRANSCODE_FAILED: 500,
    ErrorCategory.INVALID_REQUEST: 400,
}


@dataclass(frozen=True)
class ErrorRule:
    patterns: Tuple[str, ...]
    category: ErrorCategory

    def matches(self, text: str) -> bool:
        return any(pattern in text for pattern in self.patterns)


# Age checks come first: "Sign in to confirm your age" also contains "sign in".
ERROR_RULES: Tuple[ErrorRule, ...] = (
    ErrorRule(("confirm your age", "age-restricted", "age restricted", "inappropriate for some users"), ErrorCategory.AGE_RESTRICTED),
    ErrorRule(("login", "log in", "sign in", "private", "authentication"), ErrorCategory.LOGIN_REQUIRED),
    ErrorRule(("not available", "unavailable", "removed", "not found", "deleted", "http error 404"), ErrorCategory.UNAVAILABLE),
)
DEFAULT_CATEGORY = ErrorCategory.FAILED


def classify(text: Optional[str]) -> ErrorCategory:
    """Map extractor output to the first matching category."""
    lowered = (text or "").lower()
    for rule in ERROR_RULES:
        if rule.matches(lowered):
            return rule.category
    return DEFAULT_CATEGORY


class DownloadError(Exception):
    """A request-level failure with a user-facing message and HTTP status."""

    def __init__(
        self,
        category: ErrorCategory,
        message: Optional[str] = None,
        details: Optional[Union[str, List[Dict[str, Any]]]] = None,
        status_code: Optional[int] = None,
    ) -> None:
        self.category = category
        self.message = message or CATEGORY_MESSAGES[category]
        self.details = details
        self.status_code = status_code or CATEGORY_STATUS[category]
        super().__init__(self.message)

    @classmethod
    def from_extractor(cls, stderr: str, fallback_status: Optional[int] = None) -> "DownloadError":
        category = classify(stderr)
        status = fallback_status if category is DEFAULT_CATEGORY else None
        return cls(category, details=stderr.strip() or None, status_code=status)

    def to_dict(self) -> dict:
        body = {"success": False, "error": self.message, "category": self.category.value}
        if self.details:
            body["details"] = self.details
        return body


class SpawnError(DownloadError):
    """The executable could not be started (missing, not executable)."""

    def __init__(self, executable: str, reason: str) -> None:
        self.executable = executable
        super().__init__(
            ErrorCategory.TOOL_MISSING,
            message=f"{executable} is not installed or not in PATH",
            details=reason,
        )
