"""Authenticated HTTP session against one Skuid site.

- `authorize` exchanges username/password for a bearer token (form post to
  `/auth/token`).
- `send` issues one request with the token, the tool's User-Agent and a
  per-request timeout. Non-2xx answers become ServerError, network failures
  TransportError.
- Idempotent requests (GET, HEAD) are retried 3 times with jittered
  exponential backoff (100ms, 400ms, 1.6s, +-25%). POST is never retried:
  deploys are not idempotent.
"""

from __future__ import annotations

import json
import logging
import random
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional

import httpx
from tenacity import Retrying, retry_if_exception, stop_after_attempt
from tenacity.wait import wait_base

from skuid.sync import __version__
from skuid.sync.exception import ArgumentError, AuthError, PayloadError, ServerError, TransportError
from skuid.sync.models import AuthToken

log = logging.getLogger("skuid.sync.session")

__all__ = [
    "USER_AGENT",
    "JSON_CONTENT_TYPE",
    "ZIP_CONTENT_TYPE",
    "Response",
    "HTTPSession",
    "normalize_host",
]

USER_AGENT = f"skuid-sync/{__version__}"
JSON_CONTENT_TYPE = "application/json"
ZIP_CONTENT_TYPE = "application/zip"
FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"

AUTH_PATH = "/auth/token"
AUTHORIZATION_TOKEN_PATH = "/api/v2/auth/token"
VERIFICATION_KEY_PATH = "/api/v1/site/verificationkey"

DEFAULT_TIMEOUT = 120.0
MAX_RETRIES = 3
SNIPPET_LEN = 512

_IDEMPOTENT = {"GET", "HEAD"}


def normalize_host(host: str) -> str:
    """Return `https://host` without a trailing slash; http is upgraded."""
    host = (host or "").strip().rstrip("/")
    if not host:
        raise ArgumentError("host is required")
    if host.startswith("http://"):
        host = "https://" + host[len("http://"):]
    elif not host.startswith("https://"):
        host = "https://" + host
    return host


class _jittered_backoff(wait_base):
    """initial * factor**(n-1), scaled by a random factor in [1-jitter, 1+jitter]."""

    def __init__(self, initial: float = 0.1, factor: float = 4.0, jitter: float = 0.25):
        self.initial = initial
        self.factor = factor
        self.jitter = jitter

    def __call__(self, retry_state) -> float:
        delay = self.initial * self.factor ** (retry_state.attempt_number - 1)
        return delay * random.uniform(1.0 - self.jitter, 1.0 + self.jitter)


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, TransportError):
        return True
    return isinstance(exc, ServerError) and exc.is_retryable


def _snippet(content: bytes) -> str:
    return content[:SNIPPET_LEN].decode("utf-8", errors="replace").strip()


@dataclass
class Response:
    status: int
    content: bytes
    headers: Dict[str, str] = field(default_factory=dict)

    def json(self) -> Any:
        try:
            return json.loads(self.content)
        except ValueError as e:
            raise PayloadError(f"response is not valid JSON: {e}") from e


class HTTPSession:
    """One host, one httpx client. Safe to share across shard workers."""

    def __init__(
        self,
        host: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        verify: bool = True,
        transport: Optional[httpx.BaseTransport] = None,
        max_retries: int = MAX_RETRIES,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.host = normalize_host(host)
        self.timeout = float(timeout)
        self.max_retries = int(max_retries)
        self._sleep = sleep
        self._client = httpx.Client(
            timeout=httpx.Timeout(self.timeout),
            verify=verify,
            transport=transport,
            headers={"User-Agent": USER_AGENT},
            follow_redirects=False,
        )
        self._authz_lock = threading.Lock()
        self._authz_tokens: Dict[str, str] = {}

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "HTTPSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def url_for(self, path: str, *, host: Optional[str] = None) -> str:
        if path.startswith(("http://", "https://")):
            return path
        base = (host or self.host).rstrip("/")
        if not path.startswith("/"):
            path = "/" + path
        return base + path

    # -- auth -----------------------------------------------------------------

    def authorize(self, username: str, password: str) -> AuthToken:
        """Exchange credentials for a bearer token. Never retried."""
        if not username or not password:
            raise AuthError("username and password are required")
        url = self.url_for(AUTH_PATH)
        form = {
            "grant_type": "password",
            "username": username,
            "password": password,
        }
        try:
            resp = self._client.post(url, data=form, headers={"Content-Type": FORM_CONTENT_TYPE})
        except httpx.TransportError as e:
            raise TransportError(f"cannot reach {self.host}: {e}") from e
        if not 200 <= resp.status_code < 300:
            raise AuthError(f"authentication failed for {self.host}: HTTP {resp.status_code} {_snippet(resp.content)}")
        try:
            token = resp.json().get("access_token")
        except (ValueError, AttributeError) as e:
            raise AuthError(f"authentication failed for {self.host}: unreadable token response") from e
        if not token:
            raise AuthError(f"authentication failed for {self.host}: no access_token in response")
        log.debug("authorized against %s as %s", self.host, username)
        return AuthToken(access_token=str(token), host=self.host)

    def authorization_token(self, auth: AuthToken) -> str:
        """Short-lived token for shards served by another host; fetched once per session."""
        with self._authz_lock:
            cached = self._authz_tokens.get(auth.access_token)
            if cached:
                return cached
            resp = self.send(auth, "GET", AUTHORIZATION_TOKEN_PATH, accept=JSON_CONTENT_TYPE)
            body = resp.json()
            token = body.get("token") if isinstance(body, dict) else None
            if not token:
                raise AuthError("no authorization token returned by the site")
            self._authz_tokens[auth.access_token] = str(token)
            return str(token)

    def foreign_host_headers(self, auth: AuthToken) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.authorization_token(auth)}",
            "x-skuid-public-key-endpoint": self.url_for(VERIFICATION_KEY_PATH),
        }

    # -- requests -------------------------------------------------------------

    def _send_once(self, method: str, url: str, *, headers: Dict[str, str], content: Optional[bytes], files: Any, timeout: float) -> Response:
        try:
            resp = self._client.request(method, url, headers=headers, content=content, files=files, timeout=timeout)
        except httpx.TransportError as e:
            raise TransportError(f"{method} {url} failed: {e}") from e
        if not 200 <= resp.status_code < 300:
            raise ServerError(resp.status_code, _snippet(resp.content), url=url)
        return Response(status=resp.status_code, content=resp.content, headers=dict(resp.headers))

    def send(
        self,
        auth: Optional[AuthToken],
        method: str,
        path: str,
        *,
        host: Optional[str] = None,
        body: Any = None,
        content_type: Optional[str] = None,
        accept: Optional[str] = None,
        files: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> Response:
        """Send one request and return the fully read response.

        `body` may be bytes (sent as-is) or any JSON-serialisable value.
        Caller headers override the defaults, including Authorization.
        """
        method = method.upper()
        url = self.url_for(path, host=host)

        hdrs: Dict[str, str] = {}
        if auth is not None:
            hdrs["Authorization"] = f"Bearer {auth.access_token}"
        if accept:
            hdrs["Accept"] = accept

        content: Optional[bytes] = None
        if body is not None:
            if isinstance(body, (bytes, bytearray)):
                content = bytes(body)
            else:
                content = json.dumps(body).encode("utf-8")
            hdrs["Content-Type"] = content_type or JSON_CONTENT_TYPE
        elif content_type and files is None:
            hdrs["Content-Type"] = content_type

        if headers:
            lower = {k.lower(): k for k in hdrs}
            for k, v in headers.items():
                existing = lower.get(k.lower())
                if existing is not None:
                    del hdrs[existing]
                hdrs[k] = v

        t = self.timeout if timeout is None else min(self.timeout, max(0.001, float(timeout)))

        if method not in _IDEMPOTENT:
            return self._send_once(method, url, headers=hdrs, content=content, files=files, timeout=t)

        retrying = Retrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=_jittered_backoff(),
            retry=retry_if_exception(_is_retryable),
            sleep=self._sleep,
            reraise=True,
            before_sleep=lambda rs: log.debug("retrying %s %s after: %s", method, url, rs.outcome.exception()),
        )
        return retrying(self._send_once, method, url, headers=hdrs, content=content, files=files, timeout=t)
