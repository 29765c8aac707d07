from __future__ import annotations

from types import SimpleNamespace
from urllib.parse import parse_qs

import httpx
import pytest

from conftest import HOST, FakeSite, json_response
from skuid.sync import __version__
from skuid.sync.exception import ArgumentError, AuthError, ServerError, TransportError
from skuid.sync.models import AuthToken
from skuid.sync.session import _jittered_backoff, normalize_host

AUTH = AuthToken(access_token="tok-123", host=f"https://{HOST}")


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("example.skuidsite.com", "https://example.skuidsite.com"),
        ("http://example.skuidsite.com/", "https://example.skuidsite.com"),
        ("https://example.skuidsite.com//", "https://example.skuidsite.com"),
        ("  localhost:3000 ", "https://localhost:3000"),
    ],
)
def test_normalize_host(raw, expected):
    assert normalize_host(raw) == expected


def test_normalize_host_requires_value():
    with pytest.raises(ArgumentError):
        normalize_host("  ")


def test_authorize_posts_form(site):
    token = site.session().authorize("admin", "secret")
    assert token.access_token == "tok-123"
    assert token.host == f"https://{HOST}"
    assert "tok-123" not in repr(token)

    (req,) = site.calls("POST", "/auth/token")
    assert req.headers["Content-Type"] == "application/x-www-form-urlencoded"
    form = parse_qs(req.content.decode())
    assert form["grant_type"] == ["password"]
    assert form["username"] == ["admin"]
    assert form["password"] == ["secret"]


def test_authorize_rejected(site):
    site.route("POST", "/auth/token", httpx.Response(401, content=b"bad credentials"))
    with pytest.raises(AuthError, match="401"):
        site.session().authorize("admin", "wrong")
    assert len(site.calls("POST", "/auth/token")) == 1


def test_authorize_network_failure():
    def boom(request):
        raise httpx.ConnectError("connection refused", request=request)

    site = FakeSite()
    site.route("POST", "/auth/token", boom)
    with pytest.raises(TransportError):
        site.session().authorize("admin", "secret")


def test_authorize_without_token(site):
    site.route("POST", "/auth/token", json_response({"token_type": "bearer"}))
    with pytest.raises(AuthError):
        site.session().authorize("admin", "secret")


def test_send_sets_headers(site):
    site.route("GET", "/api/v1/ping", json_response({"ok": True}))
    resp = site.session().send(AUTH, "GET", "/api/v1/ping", accept="application/json")
    assert resp.status == 200
    assert resp.json() == {"ok": True}

    (req,) = site.requests
    assert req.headers["Authorization"] == "Bearer tok-123"
    assert req.headers["User-Agent"] == f"skuid-sync/{__version__}"
    assert req.headers["Accept"] == "application/json"


def test_send_json_body_and_header_override(site):
    site.route("POST", "/x", httpx.Response(204))
    site.session().send(AUTH, "POST", "/x", body={"a": 1}, headers={"authorization": "Bearer other"})
    (req,) = site.requests
    assert req.headers["Content-Type"] == "application/json"
    assert req.headers["Authorization"] == "Bearer other"
    assert req.content == b'{"a": 1}'


def test_non_2xx_is_server_error(site):
    site.route("GET", "/missing", httpx.Response(404, content=b"no such thing"))
    with pytest.raises(ServerError) as ei:
        site.session().send(AUTH, "GET", "/missing")
    assert ei.value.status == 404
    assert ei.value.body_snippet == "no such thing"
    assert len(site.requests) == 1


def test_get_retried_on_5xx_then_succeeds(site):
    answers = iter([httpx.Response(503), httpx.Response(502), json_response({"ok": True})])
    site.route("GET", "/flaky", lambda req: next(answers))
    delays = []
    resp = site.session(sleep=delays.append).send(AUTH, "GET", "/flaky")
    assert resp.json() == {"ok": True}
    assert len(site.requests) == 3
    assert len(delays) == 2
    assert 0.075 <= delays[0] <= 0.125
    assert 0.3 <= delays[1] <= 0.5


def test_get_gives_up_after_three_retries(site):
    site.route("GET", "/down", httpx.Response(500, content=b"oops"))
    with pytest.raises(ServerError) as ei:
        site.session().send(AUTH, "GET", "/down")
    assert ei.value.status == 500
    assert len(site.requests) == 4


def test_get_retried_on_transport_error(site):
    calls = []

    def flaky(request):
        calls.append(1)
        if len(calls) == 1:
            raise httpx.ReadTimeout("timed out", request=request)
        return json_response({"ok": True})

    site.route("GET", "/slow", flaky)
    assert site.session().send(AUTH, "GET", "/slow").json() == {"ok": True}
    assert len(calls) == 2


def test_post_never_retried(site):
    site.route("POST", "/deploy", httpx.Response(503))
    with pytest.raises(ServerError):
        site.session().send(AUTH, "POST", "/deploy", body=b"zip", content_type="application/zip")
    assert len(site.requests) == 1


def test_client_errors_not_retried(site):
    site.route("GET", "/forbidden", httpx.Response(403))
    with pytest.raises(ServerError):
        site.session().send(AUTH, "GET", "/forbidden")
    assert len(site.requests) == 1


def test_backoff_schedule_with_jitter():
    wait = _jittered_backoff()
    for attempt, base in [(1, 0.1), (2, 0.4), (3, 1.6)]:
        for _ in range(50):
            d = wait(SimpleNamespace(attempt_number=attempt))
            assert base * 0.75 <= d <= base * 1.25


def test_authorization_token_fetched_once(site):
    site.route("GET", "/api/v2/auth/token", json_response({"token": "jwt-1"}))
    s = site.session()
    h1 = s.foreign_host_headers(AUTH)
    h2 = s.foreign_host_headers(AUTH)
    assert h1 == h2
    assert h1["Authorization"] == "Bearer jwt-1"
    assert h1["x-skuid-public-key-endpoint"] == f"https://{HOST}/api/v1/site/verificationkey"
    assert len(site.calls("GET", "/api/v2/auth/token")) == 1
