"""
Key rotation: run one remote operation against an ordered list of API keys.

Keys are tried strictly one at a time in the order given. Invalid or rate-limited keys
hand over to the next key; any other failure aborts the whole operation.
"""

import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Literal, TypeVar

from loguru import logger
from pydantic_ai import Agent, ModelSettings
from pydantic_ai.exceptions import UnexpectedModelBehavior
from pydantic_ai.models import Model

from imagemeta.errors import (
    AllCredentialsFailedError,
    ErrorKind,
    NoCredentialError,
    classify_error,
    parse_retry_after,
)
from imagemeta.providers import ModelFactory, create_model
from imagemeta.settings import mask_key


T = TypeVar("T")
KEY_CHECK_MODEL = "gemini-2.5-flash"


def build_candidates(keys: Iterable[str], fallback: str | None = None) -> list[str]:
    """
    Order the keys to try: user keys first (blank ones dropped, duplicates removed), then fallback.

    Examples:
        >>> build_candidates(["a", " ", "b", "a"], fallback="c")
        ['a', 'b', 'c']
        >>> build_candidates(["a", "b"], fallback="a")
        ['a', 'b']

    """
    candidates: list[str] = []
    for key in keys:
        stripped = key.strip()
        if stripped and stripped not in candidates:
            candidates.append(stripped)
    if fallback and fallback.strip() and fallback.strip() not in candidates:
        candidates.append(fallback.strip())
    return candidates


def run_with_key_rotation(
    credentials: Iterable[str],
    model_name: str,
    operation: Callable[[Model], T],
    *,
    model_factory: ModelFactory = create_model,
    fallback_key: str | None = None,
) -> T:
    """
    Invoke ``operation`` with a model built for each key until one succeeds.

    Args:
        credentials: API keys in priority order.
        model_name: Model identifier passed to ``model_factory``.
        operation: Unit of work; called once per attempted key with a freshly built model.
        model_factory: Builds a client bound to a single key.
        fallback_key: Deployment-wide key appended last when not already present.

    Returns:
        The first successful result of ``operation``.

    Raises:
        NoCredentialError: No usable key was supplied; nothing was called.
        AllCredentialsFailedError: Every key was rejected as invalid or rate-limited.
        Exception: Any other failure is re-raised unchanged and stops the rotation.

    """
    candidates = build_candidates(credentials, fallback_key)
    if not candidates:
        logger.error("no_api_key_configured")
        raise NoCredentialError

    total = len(candidates)
    last_error: BaseException | None = None
    quota_seen = False
    retry_after: float | None = None

    for attempt, api_key in enumerate(candidates, start=1):
        masked = mask_key(api_key)
        model = model_factory(api_key, model_name)
        try:
            result = operation(model)
        except Exception as exc:
            kind = classify_error(exc)
            if kind is ErrorKind.FATAL:
                logger.error(
                    "remote_call_failed_fatal",
                    api_key=masked,
                    attempt=f"{attempt}/{total}",
                    error=str(exc),
                )
                raise
            last_error = exc
            if kind is ErrorKind.QUOTA:
                quota_seen = True
                retry_after = parse_retry_after(str(exc)) or retry_after
            logger.warning(
                "api_key_rejected_trying_next",
                api_key=masked,
                attempt=f"{attempt}/{total}",
                kind=kind.value,
                retry_after=retry_after,
                error=str(exc),
            )
            continue

        logger.debug("api_key_succeeded", api_key=masked, attempt=f"{attempt}/{total}")
        return result

    assert last_error is not None  # noqa: S101
    kind = ErrorKind.QUOTA if quota_seen else ErrorKind.INVALID
    logger.error("all_api_keys_failed", attempts=total, kind=kind.value)
    raise AllCredentialsFailedError(kind, total, last_error, retry_after)


@dataclass(frozen=True)
class KeyCheckResult:
    """Outcome of probing a single API key."""

    success: bool
    status: Literal["valid", "invalid", "rate-limited"]
    error: str | None = None


def check_api_key(
    api_key: str,
    *,
    model_name: str = KEY_CHECK_MODEL,
    model_factory: ModelFactory = create_model,
    timeout: float = 30.0,
) -> KeyCheckResult:
    """
    Send a tiny request with one key and report whether it is usable.

    No output token cap is set: thinking models spend their budget before answering and
    would come back empty. A reply that arrives but cannot be used still means the key
    was accepted.
    """
    if not api_key.strip():
        return KeyCheckResult(success=False, status="invalid", error="API key is empty.")

    masked = mask_key(api_key)
    agent = Agent(model_factory(api_key.strip(), model_name))
    _t0 = time.perf_counter()
    try:
        agent.run_sync("test", model_settings=ModelSettings(timeout=timeout))
    except UnexpectedModelBehavior as exc:
        logger.info("api_key_valid_unusable_reply", api_key=masked, error=str(exc))
        return KeyCheckResult(success=True, status="valid")
    except Exception as exc:  # noqa: BLE001
        kind = classify_error(exc)
        logger.warning("api_key_check_failed", api_key=masked, kind=kind.value, error=str(exc))
        if kind is ErrorKind.INVALID:
            return KeyCheckResult(
                success=False,
                status="invalid",
                error="The provided API key is not valid. Please check the key and try again.",
            )
        if kind is ErrorKind.QUOTA:
            return KeyCheckResult(
                success=False,
                status="rate-limited",
                error="The key is valid but has run out of its free quota or hit a rate limit.",
            )
        return KeyCheckResult(success=False, status="invalid", error=str(exc))

    logger.info("api_key_valid", api_key=masked, seconds=round(time.perf_counter() - _t0, 3))
    return KeyCheckResult(success=True, status="valid")
