"""Fan a plan out to its shards.

Shards run in parallel (4 at a time by default). One failing shard never
stops the others: every shard ends up with an outcome, and the caller
decides the exit status from the aggregate.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Collection, Dict, List, Optional, Union

from pydantic import ValidationError

from skuid.sync.archive import pack
from skuid.sync.catalog import classify, entity_name
from skuid.sync.concurrency import run_thread_pool
from skuid.sync.context import CancelToken
from skuid.sync.exception import OperationCancelled, PackEmptyError, PayloadError, ShardError
from skuid.sync.merge import check_payload
from skuid.sync.models import AuthToken, DeployShardResult, PlanShard
from skuid.sync.observability import OperationObserver
from skuid.sync.session import JSON_CONTENT_TYPE, ZIP_CONTENT_TYPE, HTTPSession

log = logging.getLogger("skuid.sync.executor")

DEFAULT_WORKERS = 4
SHARD_TIMEOUT = 300.0

Plan = Dict[str, PlanShard]


@dataclass
class ShardOutcome:
    name: str
    shard: PlanShard
    url: str = ""
    data: Optional[bytes] = None
    result: Optional[DeployShardResult] = None
    error: Optional[BaseException] = None
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def status(self) -> str:
        if self.error is not None:
            return "FAILED"
        return "SKIPPED" if self.skipped else "OK"


@dataclass
class ExecutionResult:
    """Outcome of every shard of one plan, in plan order."""

    outcomes: List[ShardOutcome] = field(default_factory=list)

    @property
    def archives(self) -> List[bytes]:
        return [o.data for o in self.outcomes if o.ok and o.data is not None]

    @property
    def failures(self) -> Dict[str, BaseException]:
        return {o.name: o.error for o in self.outcomes if o.error is not None}

    @property
    def ok(self) -> bool:
        return not self.failures

    def by_shard(self) -> Dict[str, Union[str, BaseException]]:
        return {o.name: (o.error if o.error is not None else "success") for o in self.outcomes}


def shard_url(session: HTTPSession, shard: PlanShard) -> str:
    return session.url_for(shard.url, host=shard.base_url() or None)


def _shard_headers(session: HTTPSession, auth: AuthToken, shard: PlanShard) -> Dict[str, str]:
    if not shard.host:
        return {}
    return session.foreign_host_headers(auth)


def _as_shard_error(name: str, e: BaseException) -> BaseException:
    if isinstance(e, (ShardError, OperationCancelled)):
        return e
    err = ShardError(name, str(e))
    err.__cause__ = e
    return err


def _run_shards(
    plan: Plan,
    work: Callable[[str, PlanShard, CancelToken], ShardOutcome],
    *,
    workers: int,
    cancel: Optional[CancelToken],
    shard_timeout: float,
    observer: Optional[OperationObserver],
    session: HTTPSession,
) -> ExecutionResult:
    root = cancel or CancelToken()

    def _one(name: str) -> ShardOutcome:
        shard = plan[name]
        url = shard_url(session, shard)
        if observer is not None:
            observer.shard_start(shard=name, shard_type=shard.type, url=url)
        try:
            out = work(name, shard, root.child(shard_timeout))
        except Exception as e:
            out = ShardOutcome(name=name, shard=shard, url=url, error=_as_shard_error(name, e))
        if out.error is not None:
            log.error("shard %s failed: %s", name, out.error)
        if observer is not None:
            observer.shard_end(shard=name, status=out.status, error=out.error)
        return out

    settled = run_thread_pool(list(plan), _one, workers=workers, cancel=root)
    outcomes: List[ShardOutcome] = []
    for s in settled:
        if s.value is not None:
            outcomes.append(s.value)
        else:
            outcomes.append(ShardOutcome(name=s.item, shard=plan[s.item], error=_as_shard_error(s.item, s.error)))
    return ExecutionResult(outcomes=outcomes)


def execute_retrieval(
    session: HTTPSession,
    auth: AuthToken,
    plan: Plan,
    accept_zip: bool = True,
    *,
    workers: int = DEFAULT_WORKERS,
    cancel: Optional[CancelToken] = None,
    shard_timeout: float = SHARD_TIMEOUT,
    observer: Optional[OperationObserver] = None,
) -> ExecutionResult:
    """POST each shard's metadata selection and collect the archive bodies.

    A body that does not decode fails its shard with a ShardError.
    """

    def work(name: str, shard: PlanShard, token: CancelToken) -> ShardOutcome:
        token.raise_if_cancelled()
        url = shard_url(session, shard)
        resp = session.send(
            auth,
            "POST",
            url,
            body=shard.metadata,
            accept=ZIP_CONTENT_TYPE if accept_zip else JSON_CONTENT_TYPE,
            headers=_shard_headers(session, auth, shard),
            timeout=token.remaining(session.timeout),
        )
        token.raise_if_cancelled()
        # a corrupt body fails this shard only
        check_payload(resp.content, accept_zip)
        log.debug("shard %s returned %d byte(s)", name, len(resp.content))
        return ShardOutcome(name=name, shard=shard, url=url, data=resp.content)

    return _run_shards(plan, work, workers=workers, cancel=cancel, shard_timeout=shard_timeout, observer=observer, session=session)


def shard_filter(shard: PlanShard, *, kinds: Optional[Collection[str]] = None) -> Callable[[str], bool]:
    """Predicate over local relative paths: the files this shard nominated."""

    def keep(rel: str) -> bool:
        kind = classify(rel)
        if kind is None:
            return False
        if kinds is not None and kind.directory_name not in kinds:
            return False
        names = shard.names_for(kind.directory_name)
        if not names:
            return False
        return entity_name(rel) in names

    return keep


def parse_deploy_result(raw: bytes) -> DeployShardResult:
    if not raw or not raw.strip():
        return DeployShardResult()
    try:
        return DeployShardResult.model_validate(json.loads(raw))
    except (ValueError, ValidationError) as e:
        raise PayloadError(f"unreadable deploy result: {e}") from e


def execute_deploy_plan(
    session: HTTPSession,
    auth: AuthToken,
    plan: Plan,
    local_root: Union[str, Path],
    *,
    kinds: Optional[Collection[str]] = None,
    workers: int = DEFAULT_WORKERS,
    cancel: Optional[CancelToken] = None,
    shard_timeout: float = SHARD_TIMEOUT,
    observer: Optional[OperationObserver] = None,
) -> ExecutionResult:
    """Pack and POST, per shard, the local files that shard nominated.

    `kinds` (directory names) narrows every shard further; watch mode uses
    it to deploy a single kind.
    """

    def work(name: str, shard: PlanShard, token: CancelToken) -> ShardOutcome:
        token.raise_if_cancelled()
        url = shard_url(session, shard)
        try:
            archive = pack(local_root, keep=shard_filter(shard, kinds=kinds))
        except PackEmptyError:
            log.info("shard %s: nothing to deploy", name)
            return ShardOutcome(name=name, shard=shard, url=url, result=DeployShardResult(), skipped=True)
        resp = session.send(
            auth,
            "POST",
            url,
            body=archive,
            content_type=ZIP_CONTENT_TYPE,
            accept=JSON_CONTENT_TYPE,
            headers=_shard_headers(session, auth, shard),
            timeout=token.remaining(session.timeout),
        )
        result = parse_deploy_result(resp.content)
        for w in result.warnings:
            log.warning("shard %s: %s", name, w)
        error = None
        if not result.ok:
            error = ShardError(name, "; ".join(result.errors) or "deploy rejected")
        return ShardOutcome(name=name, shard=shard, url=url, result=result, error=error)

    return _run_shards(plan, work, workers=workers, cancel=cancel, shard_timeout=shard_timeout, observer=observer, session=session)
