"""Plan exchange: ask the site how a retrieve or deploy splits into shards."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError

from skuid.sync.exception import PayloadError
from skuid.sync.models import AuthToken, PlanFilter, PlanPayload, PlanShard
from skuid.sync.session import JSON_CONTENT_TYPE, ZIP_CONTENT_TYPE, HTTPSession

log = logging.getLogger("skuid.sync.plan")

RETRIEVE_PLAN_PATH = "/api/v2/metadata/retrieve/plan"
DEPLOY_PLAN_PATH = "/api/v2/metadata/deploy/plan"

Plan = Dict[str, PlanShard]


def _reject_duplicates(pairs: List[Tuple[str, Any]]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for k, v in pairs:
        if k in out:
            raise PayloadError(f"duplicate key in plan payload: {k!r}")
        out[k] = v
    return out


def filter_payload(plan_filter: Optional[PlanFilter]) -> Dict[str, Any]:
    return {} if plan_filter is None else plan_filter.to_payload()


def parse_plan(raw: bytes) -> Plan:
    """Decode a plan response into shards, keyed by shard name, in server order."""
    try:
        obj = json.loads(raw or b"{}", object_pairs_hook=_reject_duplicates)
    except ValueError as e:
        if isinstance(e, PayloadError):
            raise
        raise PayloadError(f"plan is not valid JSON: {e}") from e
    if obj is None:
        obj = {}
    if not isinstance(obj, dict):
        raise PayloadError("plan must be a JSON object of shard name to shard")
    try:
        plan = PlanPayload.model_validate(obj).root
    except ValidationError as e:
        raise PayloadError(f"invalid plan: {e}") from e
    for name, shard in plan.items():
        for w in shard.warnings:
            log.warning("plan shard %s: %s", name, w)
    return plan


def get_retrieve_plan(session: HTTPSession, auth: AuthToken, plan_filter: Optional[PlanFilter] = None) -> Plan:
    resp = session.send(
        auth,
        "POST",
        RETRIEVE_PLAN_PATH,
        body=filter_payload(plan_filter),
        accept=JSON_CONTENT_TYPE,
    )
    plan = parse_plan(resp.content)
    log.info("retrieve plan has %d shard(s): %s", len(plan), ", ".join(plan) or "-")
    return plan


def prepare_deployment(session: HTTPSession, auth: AuthToken, archive: bytes, plan_filter: Optional[PlanFilter] = None) -> Plan:
    """Upload the packed tree with the filter and get back the deploy plan."""
    files = {
        "filter": (None, json.dumps(filter_payload(plan_filter)).encode("utf-8"), JSON_CONTENT_TYPE),
        "archive": ("deploy.zip", archive, ZIP_CONTENT_TYPE),
    }
    resp = session.send(auth, "POST", DEPLOY_PLAN_PATH, files=files, accept=JSON_CONTENT_TYPE)
    plan = parse_plan(resp.content)
    log.info("deploy plan has %d shard(s): %s", len(plan), ", ".join(plan) or "-")
    return plan
