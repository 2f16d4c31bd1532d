from __future__ import annotations

import json
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlsplit

import pytest

import freshrelease_client
from freshrelease_client import FreshreleaseConfig
from tool_dispatcher import ToolDispatcher


BASE_URL = "https://fr.example.test"


class FakeResponse:
    def __init__(self, status_code: int = 200, body: Any = None, text: Optional[str] = None):
        self.status_code = status_code
        self._body = body
        if text is None:
            text = json.dumps(body) if body is not None else ""
        self.text = text

    def json(self) -> Any:
        if self._body is None:
            raise ValueError("No JSON object could be decoded")
        return self._body


Route = Callable[[Dict[str, Any]], FakeResponse]


class FakeUpstream:
    """
    替换 requests.request：按 (method, path) 匹配预设响应，并记录每一次调用。
    """

    def __init__(self) -> None:
        self.calls: List[Dict[str, Any]] = []
        self._routes: Dict[Tuple[str, str], Any] = {}
        self._lock = threading.Lock()

    def add(self, method: str, path: str, response: Any) -> None:
        self._routes[(method.upper(), "/" + path.lstrip("/"))] = response

    def paths(self) -> List[str]:
        return [f"{c['method']} {c['path']}" for c in self.calls]

    def __call__(self, method, url, headers=None, json=None, params=None, timeout=None):
        path = urlsplit(url).path
        call = {
            "method": method.upper(),
            "url": url,
            "path": path,
            "headers": dict(headers or {}),
            "json": json,
            "params": dict(params or {}),
            "timeout": timeout,
        }
        with self._lock:
            self.calls.append(call)
        route = self._routes.get((call["method"], path))
        if route is None:
            return FakeResponse(404, {"errors": "not found"})
        if isinstance(route, Exception):
            raise route
        if callable(route):
            return route(call)
        return route


@pytest.fixture
def upstream(monkeypatch) -> FakeUpstream:
    fake = FakeUpstream()
    monkeypatch.setattr(freshrelease_client.requests, "request", fake)
    return fake


@pytest.fixture
def config() -> FreshreleaseConfig:
    return FreshreleaseConfig(base_url=BASE_URL, api_token="env-token", project_key="FBOTS")


@pytest.fixture
def dispatcher(config) -> ToolDispatcher:
    return ToolDispatcher(config)

