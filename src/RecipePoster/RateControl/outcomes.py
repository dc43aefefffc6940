"""Classified call outcomes and HTTP response classification.

A call handed to :meth:`CallCoordinator.execute` reports what happened by
returning one of three tagged values instead of raising:

- :class:`Success` carrying the value to hand back to the caller.
- :class:`RetryableFailure` for throttling (429) and server errors (5xx),
  optionally carrying the server's ``Retry-After`` hint in seconds.
- :class:`FatalFailure` for conditions retrying cannot fix: quota or billing
  exhaustion, malformed responses, any other 4xx.

:func:`classify_response` implements that mapping for :class:`httpx.Response`
objects and :func:`http_call` wraps an :class:`httpx.Client` request into a
ready-to-execute call.
"""

from __future__ import annotations

import email.utils
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Generic, Iterable, Optional, TypeVar, Union

import httpx

__all__ = [
    "Success",
    "RetryableFailure",
    "FatalFailure",
    "Outcome",
    "DEFAULT_QUOTA_CODES",
    "parse_retry_after",
    "provider_error_code",
    "classify_response",
    "http_call",
]

T = TypeVar("T")

DEFAULT_QUOTA_CODES = ("insufficient_quota",)
_BODY_PREVIEW_CHARS = 2000


@dataclass(frozen=True)
class Success(Generic[T]):
    value: T


@dataclass(frozen=True)
class RetryableFailure:
    reason: str
    status: Optional[int] = None
    retry_after: Optional[float] = None
    body: Optional[str] = None
    error: Optional[BaseException] = None


@dataclass(frozen=True)
class FatalFailure:
    reason: str
    status: Optional[int] = None
    body: Optional[str] = None
    code: Optional[str] = None


Outcome = Union[Success[Any], RetryableFailure, FatalFailure]


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Convert a ``Retry-After`` header (seconds or HTTP-date) into seconds."""

    if not value:
        return None
    value = value.strip()
    try:
        delay = float(value)
    except ValueError:
        try:
            dt = email.utils.parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        delay = (dt - datetime.now(timezone.utc)).total_seconds()
    return max(0.0, delay)


def provider_error_code(response: httpx.Response) -> Optional[str]:
    """Return ``error.code`` from an OpenAI-style JSON error body, if present."""

    try:
        payload = response.json()
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None
    error = payload.get("error")
    if isinstance(error, dict) and error.get("code") is not None:
        return str(error["code"])
    return None


def classify_response(
    response: httpx.Response,
    *,
    quota_codes: Iterable[str] = DEFAULT_QUOTA_CODES,
) -> Outcome:
    """Map an HTTP response onto a call outcome.

    Quota codes are checked before the status so that a 429 carrying
    ``insufficient_quota`` short-circuits instead of burning retries.
    """
    status = response.status_code
    if response.is_success:
        return Success(response)

    body = response.text[:_BODY_PREVIEW_CHARS]
    code = provider_error_code(response)
    if code is not None and code in set(quota_codes):
        return FatalFailure(reason="quota exhausted", status=status, body=body, code=code)

    if status == 429 or 500 <= status < 600:
        return RetryableFailure(
            reason=f"http-{status}",
            status=status,
            retry_after=parse_retry_after(response.headers.get("Retry-After")),
            body=body,
        )
    return FatalFailure(reason=f"http-{status}", status=status, body=body, code=code)


def http_call(
    client: httpx.Client,
    method: str,
    url: str,
    *,
    parse: Optional[Callable[[httpx.Response], Any]] = None,
    quota_codes: Iterable[str] = DEFAULT_QUOTA_CODES,
    **request_kwargs: Any,
) -> Callable[[], Outcome]:
    """Build a coordinator call issuing ``method url`` through ``client``.

    Transport errors (timeouts, refused connections, TLS failures) propagate
    out of the returned callable; the coordinator treats them as retryable.
    When ``parse`` raises ``ValueError``, ``KeyError`` or ``TypeError`` the
    response is considered malformed and the outcome is fatal.
    """
    codes = tuple(quota_codes)

    def _call() -> Outcome:
        response = client.request(method, url, **request_kwargs)
        outcome = classify_response(response, quota_codes=codes)
        if not isinstance(outcome, Success) or parse is None:
            return outcome
        try:
            return Success(parse(response))
        except (ValueError, KeyError, TypeError, IndexError) as exc:
            return FatalFailure(
                reason=f"malformed response: {exc}",
                status=response.status_code,
                body=response.text[:_BODY_PREVIEW_CHARS],
            )

    return _call
