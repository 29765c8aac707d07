import io
import json
import shutil
import sys
import tempfile
import zipfile
from pathlib import Path

# Allow running tests without installing the package.
sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

import httpx
import pytest
from skuid.sync.runtime.settings import Settings
from skuid.sync.session import HTTPSession

HOST = "example.skuidsite.com"


def make_zip(files, *, compression=zipfile.ZIP_DEFLATED) -> bytes:
    """Build a zip in memory; names are used verbatim (unsafe names allowed)."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=compression) as zf:
        for name, data in files.items():
            zf.writestr(name, data)
    return buf.getvalue()


def empty_zip() -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w"):
        pass
    return buf.getvalue()


def json_response(obj, status=200) -> httpx.Response:
    return httpx.Response(status, content=json.dumps(obj).encode("utf-8"), headers={"Content-Type": "application/json"})


class FakeSite:
    """In-process stand-in for a site, served through httpx.MockTransport.

    Routes are keyed by (METHOD, host, path); the value is an httpx.Response
    or a callable taking the request. Every request is recorded.
    """

    def __init__(self, host: str = HOST):
        self.host = host
        self.routes = {}
        self.requests = []
        self.route("POST", "/auth/token", json_response({"access_token": "tok-123"}))

    def route(self, method, path, response, *, host=None):
        self.routes[(method.upper(), host or self.host, path)] = response
        return self

    def calls(self, method, path):
        return [r for r in self.requests if r.method == method.upper() and r.url.path == path]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.host, request.url.path)
        handler = self.routes.get(key)
        if handler is None:
            return httpx.Response(404, content=b"not found")
        if callable(handler):
            return handler(request)
        # fresh copy: a route may be hit more than once
        return httpx.Response(handler.status_code, headers=handler.headers, content=handler.content)

    def session(self, **kwargs) -> HTTPSession:
        kwargs.setdefault("sleep", lambda s: None)
        return HTTPSession(self.host, transport=httpx.MockTransport(self), **kwargs)


@pytest.fixture()
def temp_dir():
    d = Path(tempfile.mkdtemp(prefix="skuid_sync_test_"))
    try:
        yield d
    finally:
        shutil.rmtree(d, ignore_errors=True)


@pytest.fixture()
def site():
    return FakeSite()


@pytest.fixture()
def settings(temp_dir):
    return Settings(
        host=HOST,
        username="admin",
        password="secret",
        dir=str(temp_dir / "site"),
        log_level="INFO",
    )
