"""
Error taxonomy for remote generation calls.

Upstream clients report credential and quota problems in different ways: some raise
``ModelHTTPError`` with a status code, others only carry a human-readable message.
``classify_error`` maps both onto a closed set of ``ErrorKind`` values at the boundary,
so the rest of the package never inspects message text directly.
"""

import re
from enum import StrEnum

from pydantic_ai.exceptions import ModelHTTPError


HALTED_MESSAGE = "Processing halted due to a previous error."

INVALID_KEY_MARKERS = ("api key not valid", "permission denied", "403")
QUOTA_MARKERS = ("429", "rate limit", "quota", "resource has been exhausted")
INVALID_STATUS_CODES = frozenset({401, 403})
QUOTA_STATUS_CODES = frozenset({429})

_RETRY_AFTER_PATTERN = re.compile(r"retry in\s+(\d+(?:\.\d+)?)\s*s", re.IGNORECASE)


class ErrorKind(StrEnum):
    """Outcome class of a failed remote call."""

    INVALID = "invalid"
    QUOTA = "quota"
    FATAL = "fatal"


class ImageMetaError(Exception):
    """Base class for all errors raised by this package."""


class SettingsError(ImageMetaError):
    """Invalid user action on the settings store (blank or duplicate key, bad value)."""


class NoCredentialError(ImageMetaError):
    """No API key was configured, so no remote call was attempted."""

    def __init__(self) -> None:
        super().__init__(
            "No API key configured. Add one with 'imagemeta keys add' or set GEMINI_API_KEY.",
        )


class AllCredentialsFailedError(ImageMetaError):
    """Every candidate API key was rejected as invalid or rate-limited."""

    def __init__(
        self,
        kind: ErrorKind,
        attempts: int,
        last_error: BaseException,
        retry_after: float | None = None,
    ) -> None:
        self.kind = kind
        self.attempts = attempts
        self.last_error = last_error
        self.retry_after = retry_after
        reason = "quota exceeded" if kind is ErrorKind.QUOTA else "invalid api key"
        super().__init__(
            f"All API keys failed ({attempts} tried, {reason}). Last error: {last_error}",
        )


class PipelineValidationError(ImageMetaError):
    """The final stage of the prompt pipeline produced an unexpected shape."""


def _status_code(exc: BaseException) -> int | None:
    if isinstance(exc, ModelHTTPError):
        return exc.status_code
    status = getattr(exc, "status_code", None) or getattr(exc, "code", None)
    return status if isinstance(status, int) else None


def classify_error(exc: BaseException) -> ErrorKind:
    """
    Map a remote-call exception to an ``ErrorKind``.

    Status codes win when the client exposes one; message markers are the fallback
    for providers that report key problems as a generic 400 with prose.

    Examples:
        >>> classify_error(RuntimeError("400 API key not valid. Please pass a valid key"))
        <ErrorKind.INVALID: 'invalid'>
        >>> classify_error(RuntimeError("Resource has been exhausted (e.g. check quota)."))
        <ErrorKind.QUOTA: 'quota'>
        >>> classify_error(RuntimeError("Connection reset by peer"))
        <ErrorKind.FATAL: 'fatal'>

    """
    status = _status_code(exc)
    if status in INVALID_STATUS_CODES:
        return ErrorKind.INVALID
    if status in QUOTA_STATUS_CODES:
        return ErrorKind.QUOTA

    message = str(exc).lower()
    if isinstance(exc, ModelHTTPError) and exc.body is not None:
        message = f"{message} {exc.body}".lower()

    if any(marker in message for marker in INVALID_KEY_MARKERS):
        return ErrorKind.INVALID
    if any(marker in message for marker in QUOTA_MARKERS):
        return ErrorKind.QUOTA
    return ErrorKind.FATAL


def parse_retry_after(message: str) -> float | None:
    """
    Extract the suggested wait from messages like ``Please retry in 23.5s``.

    Examples:
        >>> parse_retry_after("Quota exceeded. Please retry in 23.5s.")
        23.5
        >>> parse_retry_after("Quota exceeded.") is None
        True

    """
    match = _RETRY_AFTER_PATTERN.search(message)
    return float(match.group(1)) if match else None


def friendly_message(exc: BaseException) -> str:
    """Rewrite low-level failures into one sentence suitable for the queue and console."""
    if isinstance(exc, AllCredentialsFailedError):
        if exc.kind is ErrorKind.QUOTA:
            hint = (
                f" Try again in about {round(exc.retry_after)} seconds."
                if exc.retry_after is not None
                else " Wait a moment or add another API key."
            )
            return "All API keys have exceeded their quota or rate limit." + hint
        return "None of the configured API keys are valid. Check them with 'imagemeta keys test'."
    if isinstance(exc, ImageMetaError):
        return str(exc)
    return f"Generation failed: {exc}"
