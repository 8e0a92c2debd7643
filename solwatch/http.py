from __future__ import annotations

import asyncio
import logging
import os
import weakref
from typing import Any, Mapping

import aiohttp
import orjson

logger = logging.getLogger(__name__)

_RETRYABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504})


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    try:
        return float(raw) if raw not in {None, ""} else float(default)
    except Exception:
        return float(default)


class HTTPError(Exception):
    """Raised when an HTTP request returns a non-success status code."""

    def __init__(self, status: int, message: str = "", *, url: str | None = None, body: str | None = None) -> None:
        self.status = int(status)
        self.url = url
        self.body = body
        super().__init__(message or f"HTTP {self.status}")


def is_rate_limited(exc: BaseException) -> bool:
    """Return ``True`` when ``exc`` is a provider 429."""

    return isinstance(exc, HTTPError) and exc.status == 429


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, HTTPError):
        return exc.status in _RETRYABLE_STATUSES or exc.status >= 500
    return isinstance(exc, (aiohttp.ClientError, asyncio.TimeoutError, ConnectionError))


def dumps(obj: object) -> bytes:
    """Serialize *obj* to JSON bytes using ``orjson``."""
    return orjson.dumps(obj)


def loads(data: str | bytes) -> object:
    """Deserialize JSON *data* using ``orjson``."""
    if isinstance(data, str):
        data = data.encode()
    return orjson.loads(data)


# Maintain a session per event loop to avoid cross-loop usage errors when
# tests spin up several loops with ``asyncio.run``.
_SESSIONS: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, aiohttp.ClientSession]" = weakref.WeakKeyDictionary()
_SESSION_TIMEOUT: float | None = None


def set_session_timeout(seconds: float | None) -> None:
    """Override ``HTTP_TIMEOUT_SEC`` for sessions created from now on."""
    global _SESSION_TIMEOUT
    _SESSION_TIMEOUT = float(seconds) if seconds is not None else None


async def get_session() -> aiohttp.ClientSession:
    """Return an aiohttp session bound to the current event loop."""
    loop = asyncio.get_running_loop()
    sess = _SESSIONS.get(loop)
    if sess is None or getattr(sess, "closed", False):
        ua = os.getenv("HTTP_USER_AGENT", "solwatch/0.1 (+https://local)")
        timeout_total = _SESSION_TIMEOUT
        if timeout_total is None:
            timeout_total = _env_float("HTTP_TIMEOUT_SEC", 15.0)
        sess = aiohttp.ClientSession(
            headers={"User-Agent": ua},
            timeout=aiohttp.ClientTimeout(total=timeout_total),
        )
        _SESSIONS[loop] = sess
    return sess


async def close_session() -> None:
    """Close all known aiohttp sessions."""
    to_close = list(_SESSIONS.values())
    _SESSIONS.clear()
    for sess in to_close:
        try:
            if not getattr(sess, "closed", False):
                await sess.close()
        except Exception:  # pragma: no cover - best effort on shutdown
            logger.debug("failed to close HTTP session", exc_info=True)


def _decode(raw: bytes, content_type: str | None) -> Any:
    if not raw:
        return None
    try:
        return loads(raw)
    except orjson.JSONDecodeError:
        if content_type and "json" in content_type:
            raise
        return raw.decode("utf-8", errors="replace")


async def fetch_json(
    url: str,
    method: str = "GET",
    *,
    retries: int | None = None,
    backoff: float | None = None,
    session: aiohttp.ClientSession | None = None,
    headers: Mapping[str, str] | None = None,
    **kwargs: Any,
) -> Any:
    """Fetch *url* using *method* and return the parsed JSON body.

    429, 5xx and network failures are retried up to ``retries`` extra times
    with exponential backoff (``backoff``, ``2*backoff`` ...).  Any other
    status >= 400 raises :class:`HTTPError` immediately.  Non-JSON bodies are
    returned as text.
    """

    if retries is None:
        retries = int(_env_float("HTTP_MAX_RETRIES", 2))
    if backoff is None:
        backoff = _env_float("HTTP_RETRY_BACKOFF", 0.5)
    sess = session if session is not None else await get_session()
    attempt = 0
    while True:
        try:
            async with sess.request(method, url, headers=dict(headers or {}), **kwargs) as response:
                if response.status >= 400:
                    text = await response.text()
                    raise HTTPError(
                        response.status,
                        f"{method} {url} -> {response.status}: {text[:300]}",
                        url=url,
                        body=text,
                    )
                raw = await response.read()
                return _decode(raw, response.headers.get("Content-Type"))
        except Exception as exc:
            if not is_retryable(exc) or attempt >= retries:
                raise
            delay = backoff * (2 ** attempt)
            attempt += 1
            logger.debug(
                "retrying %s %s after %s (attempt %d/%d)",
                method,
                url,
                exc,
                attempt,
                retries,
                extra={"url": url, "delay": delay},
            )
            await asyncio.sleep(delay)


__all__ = [
    "HTTPError",
    "is_rate_limited",
    "is_retryable",
    "dumps",
    "loads",
    "get_session",
    "close_session",
    "set_session_timeout",
    "fetch_json",
]
