"""Bounded retry for outbound archive calls.

Retries only transient conditions: connection errors, timeouts, and the
status codes in ``_RETRYABLE_STATUS_CODES``. Any other response is handed back
unchanged so the caller decides what counts as success.

Usage:
    from secure_entry.utils.http_retry import retry_request

    resp = retry_request(client.post, url, json=payload, delays=[1, 3])
"""
from __future__ import annotations

import logging
import time
from typing import Any, Callable, Sequence

import httpx

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({429, 500, 502, 503, 504})

_RETRYABLE_EXCEPTIONS = (httpx.ConnectError, httpx.TimeoutException, httpx.RemoteProtocolError)

# Failures where the request never reached the server; safe to resend any call
CONNECT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout)

MAX_RETRY_AFTER_SECONDS = 30.0


def retry_request(
    request_fn: Callable[..., httpx.Response],
    *args: Any,
    delays: Sequence[float] = (),
    retry_exceptions: tuple[type[Exception], ...] = _RETRYABLE_EXCEPTIONS,
    retry_statuses: frozenset[int] = _RETRYABLE_STATUS_CODES,
    **kwargs: Any,
) -> httpx.Response:
    """Call ``request_fn`` and retry transient failures once per entry in ``delays``.

    Calls that must not run twice pass ``retry_exceptions=CONNECT_ERRORS`` and
    an empty ``retry_statuses``.

    Returns the last response received, retryable or not, once retries are
    exhausted. Re-raises the last transient exception if no response was
    ever obtained.
    """
    attempts = 1 + len(delays)
    for attempt in range(attempts):
        last_try = attempt == attempts - 1
        try:
            resp = request_fn(*args, **kwargs)
        except retry_exceptions as exc:
            if last_try:
                raise
            delay = delays[attempt]
            logger.warning(
                "%s for %s, retry %d/%d in %.1fs",
                type(exc).__name__, _url_for_log(args), attempt + 1, len(delays), delay,
            )
            time.sleep(delay)
            continue

        if resp.status_code not in retry_statuses or last_try:
            return resp

        delay = _retry_after(resp, delays[attempt])
        logger.warning(
            "HTTP %d from %s, retry %d/%d in %.1fs",
            resp.status_code, _url_for_log(args), attempt + 1, len(delays), delay,
        )
        time.sleep(delay)

    raise RuntimeError("retry_request exhausted retries without result")


def _retry_after(resp: httpx.Response, default: float) -> float:
    """Honour a numeric Retry-After on 429, capped to keep sweeps bounded."""
    if resp.status_code != 429:
        return default
    header = resp.headers.get("Retry-After")
    if not header:
        return default
    try:
        return min(max(default, float(header)), MAX_RETRY_AFTER_SECONDS)
    except ValueError:
        return default


def _url_for_log(args: tuple) -> str:
    if args and isinstance(args[0], (str, httpx.URL)):
        return str(args[0]).split("?", 1)[0][:120]
    return "<unknown>"
