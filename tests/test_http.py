import asyncio
import json
from typing import Any, Dict, List

import aiohttp
import pytest

from solwatch import http


class DummyResponse:
    def __init__(self, status: int, body: Any, content_type: str = "application/json") -> None:
        self.status = status
        self.headers: Dict[str, str] = {"Content-Type": content_type}
        if isinstance(body, (bytes, str)):
            self._raw = body.encode() if isinstance(body, str) else body
        else:
            self._raw = json.dumps(body).encode()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    async def read(self) -> bytes:
        return self._raw

    async def text(self) -> str:
        return self._raw.decode()


class DummySession:
    def __init__(self, responses: List[Any]) -> None:
        self.responses = list(responses)
        self.calls: List[Dict[str, Any]] = []

    def request(self, method: str, url: str, **kwargs: Any):
        self.calls.append({"method": method, "url": url, **kwargs})
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture(autouse=True)
def _fast_sleep(monkeypatch):
    delays = []

    async def fake_sleep(delay):
        delays.append(delay)

    monkeypatch.setattr(http.asyncio, "sleep", fake_sleep)
    return delays


def test_fetch_json_returns_parsed_body():
    session = DummySession([DummyResponse(200, {"ok": True})])
    data = asyncio.run(
        http.fetch_json("https://x/y", "POST", session=session, headers={"A": "b"}, json={"q": 1})
    )
    assert data == {"ok": True}
    assert session.calls[0]["method"] == "POST"
    assert session.calls[0]["headers"] == {"A": "b"}
    assert session.calls[0]["json"] == {"q": 1}


def test_fetch_json_retries_transient_errors(_fast_sleep):
    session = DummySession(
        [
            DummyResponse(503, "unavailable", "text/plain"),
            aiohttp.ClientConnectionError("reset"),
            DummyResponse(200, [1, 2]),
        ]
    )
    data = asyncio.run(http.fetch_json("https://x", session=session, retries=2, backoff=0.5))
    assert data == [1, 2]
    assert _fast_sleep == [0.5, 1.0]


def test_fetch_json_gives_up_after_retries():
    session = DummySession([DummyResponse(429, "slow down"), DummyResponse(429, "slow down")])
    with pytest.raises(http.HTTPError) as info:
        asyncio.run(http.fetch_json("https://x", session=session, retries=1, backoff=0))
    assert info.value.status == 429
    assert http.is_rate_limited(info.value)
    assert len(session.calls) == 2


def test_fetch_json_does_not_retry_client_errors():
    session = DummySession([DummyResponse(404, "missing"), DummyResponse(200, {})])
    with pytest.raises(http.HTTPError) as info:
        asyncio.run(http.fetch_json("https://x", session=session, retries=3))
    assert info.value.status == 404
    assert not http.is_retryable(info.value)
    assert len(session.calls) == 1


def test_non_json_body_is_returned_as_text():
    session = DummySession([DummyResponse(200, "plain", "text/plain")])
    assert asyncio.run(http.fetch_json("https://x", session=session)) == "plain"


def test_error_classification():
    assert http.is_retryable(http.HTTPError(500))
    assert http.is_retryable(http.HTTPError(408))
    assert http.is_retryable(asyncio.TimeoutError())
    assert not http.is_retryable(ValueError("x"))
    assert not http.is_rate_limited(http.HTTPError(503))


def test_dumps_loads_roundtrip():
    assert http.loads(http.dumps({"a": 1})) == {"a": 1}


def test_get_session_is_reused_per_loop(monkeypatch):
    monkeypatch.setenv("HTTP_TIMEOUT_SEC", "3")
    monkeypatch.setattr(http, "_SESSION_TIMEOUT", None)

    async def scenario():
        s1 = await http.get_session()
        s2 = await http.get_session()
        same = s1 is s2
        timeout = s1.timeout.total
        await http.close_session()
        return same, timeout, s1.closed

    same, timeout, closed = asyncio.run(scenario())
    assert same
    assert timeout == 3
    assert closed


def test_session_timeout_override(monkeypatch):
    monkeypatch.setenv("HTTP_TIMEOUT_SEC", "3")
    http.set_session_timeout(7)

    async def scenario():
        sess = await http.get_session()
        timeout = sess.timeout.total
        await http.close_session()
        return timeout

    try:
        assert asyncio.run(scenario()) == 7
    finally:
        http.set_session_timeout(None)
