from __future__ import annotations

from typing import Any, List, Optional

import pytest


class StubResponse:
    """Minimal stand-in for ``requests.Response``."""

    def __init__(self, status_code: int = 200, payload: Any = None, invalid_json: bool = False) -> None:
        self.status_code = status_code
        self._payload = payload
        self._invalid_json = invalid_json

    def json(self) -> Any:
        if self._invalid_json:
            raise ValueError("No JSON object could be decoded")
        return self._payload


class StubSession:
    """Replays queued responses (or raises queued exceptions) in order."""

    def __init__(self, responses: Optional[List[Any]] = None) -> None:
        self._responses = list(responses or [])
        self.calls: List[tuple] = []

    def _next(self) -> StubResponse:
        item = self._responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def get(self, url: str, timeout: Optional[float] = None) -> StubResponse:
        self.calls.append(("GET", url, timeout))
        return self._next()

    def post(self, url: str, timeout: Optional[float] = None) -> StubResponse:
        self.calls.append(("POST", url, timeout))
        return self._next()


@pytest.fixture
def make_session():
    def _make(*responses: Any) -> StubSession:
        return StubSession(list(responses))

    return _make


@pytest.fixture
def response():
    return StubResponse
