#tests\fakes.py

"""Test doubles for outbound HTTP."""

import json
from typing import Any, Dict, List, Optional, Tuple

import requests

TEST_KEY = "test-encryption-key-0123456789"


class FakeResponse:
    """Enough of requests.Response for UpstreamClient and the health probe."""

    def __init__(self, status_code: int = 200, body: Any = None, text: Optional[str] = None):
        self.status_code = status_code
        self._body = body
        if text is not None:
            self.text = text
        elif body is None:
            self.text = ""
        else:
            self.text = json.dumps(body)

    def json(self):
        if self._body is None:
            return json.loads(self.text)
        return self._body


class FakeSession:
    """
    Routes requests by (METHOD, url substring) to responses or callables.

    A route value may be a FakeResponse, an exception instance to raise,
    a list consumed one item per call, or a callable(method, url, kwargs).
    """

    def __init__(self, routes: Optional[Dict[Tuple[str, str], Any]] = None):
        self.routes: Dict[Tuple[str, str], Any] = dict(routes or {})
        self.calls: List[Tuple[str, str, Dict[str, Any]]] = []

    def add(self, method: str, fragment: str, value: Any) -> None:
        self.routes[(method.upper(), fragment)] = value

    def request(self, method: str, url: str, **kwargs):
        self.calls.append((method.upper(), url, kwargs))
        for (route_method, fragment), value in self.routes.items():
            if route_method == method.upper() and fragment in url:
                return self._resolve(value, method, url, kwargs)
        raise requests.exceptions.ConnectionError(f"no route for {method} {url}")

    def _resolve(self, value: Any, method: str, url: str, kwargs: Dict[str, Any]):
        if isinstance(value, list):
            value = value.pop(0) if len(value) > 1 else value[0]
        if isinstance(value, Exception):
            raise value
        if callable(value) and not isinstance(value, FakeResponse):
            return value(method, url, kwargs)
        return value

    def calls_to(self, fragment: str) -> List[Tuple[str, str, Dict[str, Any]]]:
        return [c for c in self.calls if fragment in c[1]]

