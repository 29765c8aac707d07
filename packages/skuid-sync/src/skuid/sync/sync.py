"""Use cases: retrieve, deploy and watch.

Each use case authenticates, asks for a plan, runs the shards and turns
the aggregate into an exit code:

    0  success
    1  authentication failure
    2  planning failure
    3  one or more shards failed (or a deploy was interrupted)
    4  local I/O failure (and unexpected errors)
    5  invalid arguments

The session and the cancel token can be passed in; tests inject a session
backed by a fake transport.
"""

from __future__ import annotations

import logging
import queue
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from skuid.sync.archive import pack
from skuid.sync.catalog import MetadataKind, entity_name
from skuid.sync.context import CancelToken
from skuid.sync.exception import (
    ArgumentError,
    AuthError,
    DeployInterrupted,
    LocalIOError,
    OperationCancelled,
    PayloadError,
    PlanError,
    ServerError,
    TransportError,
)
from skuid.sync.executor import ExecutionResult, execute_deploy_plan, execute_retrieval
from skuid.sync.merge import MergeReport, write_results_to_disk
from skuid.sync.models import AuthToken, PlanFilter
from skuid.sync.observability import OperationObserver, OperationSummary, log_event
from skuid.sync.plan import Plan, get_retrieve_plan, prepare_deployment
from skuid.sync.runtime.settings import Settings
from skuid.sync.session import HTTPSession
from skuid.sync.watch import ChangeDebouncer, start_observer

log = logging.getLogger("skuid.sync")

__all__ = [
    "EXIT_OK",
    "EXIT_AUTH",
    "EXIT_PLAN",
    "EXIT_SHARDS",
    "EXIT_LOCAL_IO",
    "EXIT_ARGS",
    "OperationResult",
    "exit_code_for",
    "retrieve",
    "deploy",
    "watch",
    "run_watch",
]

EXIT_OK = 0
EXIT_AUTH = 1
EXIT_PLAN = 2
EXIT_SHARDS = 3
EXIT_LOCAL_IO = 4
EXIT_ARGS = 5


def exit_code_for(exc: BaseException) -> int:
    if isinstance(exc, ArgumentError):
        return EXIT_ARGS
    if isinstance(exc, AuthError):
        return EXIT_AUTH
    if isinstance(exc, PlanError):
        return EXIT_PLAN
    if isinstance(exc, DeployInterrupted):
        return EXIT_SHARDS
    return EXIT_LOCAL_IO


@dataclass
class OperationResult:
    operation: str
    target_dir: str
    shards: ExecutionResult = field(default_factory=ExecutionResult)
    report: Optional[MergeReport] = None
    summary: Optional[OperationSummary] = None

    @property
    def exit_code(self) -> int:
        return EXIT_OK if self.shards.ok else EXIT_SHARDS

    def as_dict(self) -> dict:
        out = {
            "operation": self.operation,
            "dir": self.target_dir,
            "exit_code": self.exit_code,
            "shards": {
                name: ("success" if res == "success" else str(res)) for name, res in self.shards.by_shard().items()
            },
        }
        if self.report is not None:
            out.update(self.report.as_dict())
        return out


def open_session(settings: Settings) -> HTTPSession:
    if not settings.host:
        raise ArgumentError("--host is required (or set SKUID_HOST)")
    return HTTPSession(settings.host, timeout=settings.request_timeout, verify=settings.verify_ssl)


def authenticate(session: HTTPSession, settings: Settings) -> AuthToken:
    if not settings.username or not settings.password:
        raise ArgumentError("--username and --password are required (or set SKUID_USERNAME / SKUID_PASSWORD)")
    try:
        return session.authorize(settings.username, settings.password)
    except TransportError as e:
        raise AuthError(str(e)) from e


def _plan(fn: Callable[[], Plan], what: str) -> Plan:
    try:
        return fn()
    except ServerError as e:
        if e.is_unauthorized:
            raise AuthError(f"{what}: token rejected ({e})") from e
        raise PlanError(f"{what}: {e}") from e
    except (TransportError, PayloadError) as e:
        raise PlanError(f"{what}: {e}") from e


class _SessionScope:
    """Use the injected session, or open (and later close) one from settings."""

    def __init__(self, settings: Settings, session: Optional[HTTPSession]):
        self._owned = session is None
        self.session = session if session is not None else open_session(settings)

    def __enter__(self) -> HTTPSession:
        return self.session

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._owned:
            self.session.close()


def retrieve(settings: Settings, *, session: Optional[HTTPSession] = None, cancel: Optional[CancelToken] = None) -> OperationResult:
    """Pull site metadata into `settings.dir`.

    Successful shards are written even when others fail; the result's exit
    code reports the failure.
    """
    token = cancel or CancelToken(timeout=settings.total_timeout)
    target = Path(settings.dir)
    accept_zip = not settings.no_zip
    with _SessionScope(settings, session) as s:
        auth = authenticate(s, settings)
        plan = _plan(lambda: get_retrieve_plan(s, auth, settings.plan_filter()), "retrieve plan")

        observer = OperationObserver(settings=settings, logger=log, operation="retrieve")
        observer.start(host=s.host, dir=str(target), shards=len(plan))
        shards = execute_retrieval(
            s,
            auth,
            plan,
            accept_zip,
            workers=settings.workers,
            cancel=token,
            shard_timeout=settings.shard_timeout,
            observer=observer,
        )
        try:
            report = write_results_to_disk(target, shards.archives, accept_zip, cancel=token)
        except PayloadError as e:
            raise LocalIOError(f"cannot apply retrieved metadata: {e}") from e
        result = OperationResult(operation="retrieve", target_dir=str(target), shards=shards, report=report)
        result.summary = observer.end()
    return result


def _page_filter(plan_filter: Optional[PlanFilter]) -> Optional[Callable[[str], bool]]:
    if plan_filter is None or not plan_filter.page_names:
        return None
    pages = set(plan_filter.page_names)

    def keep(rel: str) -> bool:
        if not rel.startswith("pages/"):
            return True
        return entity_name(rel) in pages

    return keep


def deploy(
    settings: Settings,
    *,
    session: Optional[HTTPSession] = None,
    cancel: Optional[CancelToken] = None,
    kind: Optional[MetadataKind] = None,
) -> OperationResult:
    """Push `settings.dir` to the site.

    With `kind`, only that kind's subtree is packed and deployed (watch mode).
    """
    token = cancel or CancelToken(timeout=settings.total_timeout)
    root = Path(settings.dir)
    plan_filter = settings.plan_filter()
    kinds = [kind.directory_name] if kind is not None else None

    page_keep = _page_filter(plan_filter)

    def keep(rel: str) -> bool:
        if kind is not None and rel.split("/", 1)[0] != kind.directory_name:
            return False
        return page_keep is None or page_keep(rel)

    archive = pack(root, keep=keep)

    with _SessionScope(settings, session) as s:
        auth = authenticate(s, settings)
        plan = _plan(lambda: prepare_deployment(s, auth, archive, plan_filter), "deploy plan")

        observer = OperationObserver(settings=settings, logger=log, operation="deploy")
        observer.start(host=s.host, dir=str(root), shards=len(plan), kind=kind.directory_name if kind else None)
        try:
            shards = execute_deploy_plan(
                s,
                auth,
                plan,
                root,
                kinds=kinds,
                workers=settings.workers,
                cancel=token,
                shard_timeout=settings.shard_timeout,
                observer=observer,
            )
        except KeyboardInterrupt as e:
            raise DeployInterrupted() from e
        result = OperationResult(operation="deploy", target_dir=str(root), shards=shards)
        result.summary = observer.end()

    if token.cancelled and any(isinstance(err, OperationCancelled) for err in shards.failures.values()):
        raise DeployInterrupted()
    return result


def run_watch(
    settings: Settings,
    events: "queue.Queue[str]",
    deploy_kind: Callable[[MetadataKind], OperationResult],
    *,
    cancel: CancelToken,
    debouncer: Optional[ChangeDebouncer] = None,
    idle_poll: float = 0.5,
) -> int:
    """Consume change events until cancelled, deploying one kind at a time.

    Events that arrive while a deploy is running stay queued; they are
    drained afterwards and coalesce into one trailing deploy per kind.
    """
    deb = debouncer or ChangeDebouncer(settings.dir, window=settings.debounce_ms / 1000.0)
    deploys = 0
    while not cancel.cancelled:
        timeout = deb.next_timeout()
        try:
            path = events.get(timeout=idle_poll if timeout is None else max(timeout, 0.001))
            deb.record(path)
            while True:
                deb.record(events.get_nowait())
        except queue.Empty:
            pass

        for kind in deb.ready():
            if cancel.cancelled:
                break
            log_event(log, settings=settings, level=logging.INFO, event="watch_deploy", kind=kind.directory_name)
            try:
                result = deploy_kind(kind)
            except (AuthError, PlanError, LocalIOError, ServerError, TransportError, PayloadError) as e:
                log.error("deploy of %s failed: %s", kind.directory_name, e)
                continue
            deploys += 1
            if result.exit_code != EXIT_OK:
                for name, err in result.shards.failures.items():
                    log.error("deploy of %s: shard %s failed: %s", kind.directory_name, name, err)
    return deploys


def watch(settings: Settings, *, session: Optional[HTTPSession] = None, cancel: Optional[CancelToken] = None) -> int:
    """Deploy each changed kind until interrupted. Returns the exit code."""
    token = cancel or CancelToken()
    root = Path(settings.dir)
    if not root.is_dir():
        raise LocalIOError(f"not a directory: {root}")

    with _SessionScope(settings, session) as s:
        # fail fast on bad credentials before watching anything
        authenticate(s, settings)

        def deploy_kind(kind: MetadataKind) -> OperationResult:
            return deploy(settings, session=s, kind=kind, cancel=token.child(settings.total_timeout))

        events: "queue.Queue[str]" = queue.Queue()
        observer = start_observer(root, events)
        try:
            run_watch(settings, events, deploy_kind, cancel=token)
        except KeyboardInterrupt:
            token.cancel("interrupted")
        finally:
            observer.stop()
            observer.join(timeout=5)
    return EXIT_OK

