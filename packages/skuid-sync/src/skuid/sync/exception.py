"""Centralized exceptions for skuid-sync.

Every component raises from this module so callers (the orchestrator and
the CLI) can map failures to exit codes in one place:

    from skuid.sync.exception import ServerError
"""

from __future__ import annotations

__all__ = [
    "ArgumentError",
    "AuthError",
    "TransportError",
    "ServerError",
    "PayloadError",
    "UnsafePathError",
    "LocalIOError",
    "PackIOError",
    "PackEmptyError",
    "PlanError",
    "ShardError",
    "OperationCancelled",
    "DeployInterrupted",
]


class ArgumentError(ValueError):
    """Raised for invalid flags, environment values or settings."""


class AuthError(RuntimeError):
    """Raised when the token endpoint rejects the credentials or cannot be reached."""


class TransportError(ConnectionError):
    """Raised on network-level failures (DNS, connect, reset, timeout)."""


class ServerError(RuntimeError):
    """Raised when the server answers with a non-2xx status."""

    def __init__(self, status: int, body_snippet: str = "", *, url: str = ""):
        msg = f"server returned HTTP {status}"
        if url:
            msg += f" for {url}"
        if body_snippet:
            msg += f": {body_snippet}"
        super().__init__(msg)
        self.status = int(status)
        self.body_snippet = body_snippet
        self.url = url

    @property
    def is_unauthorized(self) -> bool:
        return self.status == 401

    @property
    def is_retryable(self) -> bool:
        return self.status >= 500


class PayloadError(ValueError):
    """Raised for malformed zip/JSON payloads or duplicate plan keys."""


class UnsafePathError(PayloadError):
    """Raised when an archive entry path would escape the target directory."""

    def __init__(self, path: str, reason: str = "unsafe path"):
        super().__init__(f"{reason}: {path!r}")
        self.path = path
        self.reason = reason


class LocalIOError(OSError):
    """Raised when the local target directory cannot be read or written."""


class PackIOError(LocalIOError):
    """Raised when a local file cannot be read while packing."""


class PackEmptyError(LocalIOError):
    """Raised when packing would produce an archive with no entries."""


class PlanError(RuntimeError):
    """Raised when a retrieve or deploy plan cannot be obtained."""


class ShardError(RuntimeError):
    """Raised (or recorded) when one shard of a plan fails."""

    def __init__(self, shard: str, message: str):
        super().__init__(f"shard {shard}: {message}")
        self.shard = shard
        self.message = message


class OperationCancelled(RuntimeError):
    """Raised when an operation is cancelled or runs past its deadline."""


class DeployInterrupted(OperationCancelled):
    """Raised when a deploy is cancelled after some shards may have been applied."""

    def __init__(self, message: str = "deploy partially applied"):
        super().__init__(message)
