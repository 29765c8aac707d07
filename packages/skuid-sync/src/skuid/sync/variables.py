"""Server-side site variables, scoped per data service.

A variable is identified by (name, data service). The default data service
has no real record on the server; it is addressed by a fixed id.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Dict, List

from pydantic import TypeAdapter, ValidationError

from skuid.sync.exception import ArgumentError, PayloadError
from skuid.sync.models import AuthToken, DataService, SiteVariable
from skuid.sync.session import JSON_CONTENT_TYPE, HTTPSession

log = logging.getLogger("skuid.sync.variables")

VARIABLES_PATH = "/api/v1/ui/variables"
DATA_SERVICES_PATH = "/api/v1/objects/dataservice"

DEFAULT_DATA_SERVICE_ID = "153b1f3e-e35a-4bb8-90a4-abbcc95fe15c"
DEFAULT_DATA_SERVICE_NAME = "default"

_variables = TypeAdapter(List[SiteVariable])
_data_services = TypeAdapter(List[DataService])


def is_default_data_service(value: str) -> bool:
    return value in ("", DEFAULT_DATA_SERVICE_NAME, DEFAULT_DATA_SERVICE_ID)


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


def _payload(body: dict) -> bytes:
    return (json.dumps(body) + "\n").encode("utf-8")


def list_data_services(session: HTTPSession, auth: AuthToken) -> Dict[str, DataService]:
    resp = session.send(auth, "GET", DATA_SERVICES_PATH, accept=JSON_CONTENT_TYPE)
    try:
        items = _data_services.validate_json(resp.content or b"[]")
    except ValidationError as e:
        raise PayloadError(f"unreadable data service list: {e}") from e
    return {ds.id: ds for ds in items}


def resolve_data_service_id(session: HTTPSession, auth: AuthToken, data_service: str) -> str:
    """Map `default`/empty, a UUID or a data service name to a data service id."""
    if is_default_data_service(data_service):
        return DEFAULT_DATA_SERVICE_ID
    if _is_uuid(data_service):
        return data_service
    for ds in list_data_services(session, auth).values():
        if ds.name == data_service:
            return ds.id
    raise ArgumentError(f"data service not found: {data_service!r}")


def list_variables(session: HTTPSession, auth: AuthToken, *, map_data_service_names: bool = True) -> List[SiteVariable]:
    resp = session.send(auth, "GET", VARIABLES_PATH, accept=JSON_CONTENT_TYPE)
    try:
        variables = _variables.validate_json(resp.content or b"[]")
    except ValidationError as e:
        raise PayloadError(f"unreadable variable list: {e}") from e

    if map_data_service_names:
        services = list_data_services(session, auth)
        for v in variables:
            if v.data_service_id == DEFAULT_DATA_SERVICE_ID:
                v.data_service_name = DEFAULT_DATA_SERVICE_NAME
            elif v.data_service_id in services:
                v.data_service_name = services[v.data_service_id].name
    log.debug("fetched %d variable(s)", len(variables))
    return variables


def _find(variables: List[SiteVariable], name: str, data_service_id: str) -> SiteVariable | None:
    for v in variables:
        if v.name == name and v.data_service_id == data_service_id:
            return v
    return None


def set_variable(session: HTTPSession, auth: AuthToken, name: str, value: str, data_service: str = "") -> str:
    """Create or update a variable; returns "created" or "updated"."""
    if not name:
        raise ArgumentError("variable name is required")
    ds_id = resolve_data_service_id(session, auth, data_service)
    row = {"name": name, "value": value, "data_service_id": ds_id}

    existing = _find(list_variables(session, auth, map_data_service_names=False), name, ds_id)
    if existing is None:
        session.send(auth, "POST", VARIABLES_PATH, body=_payload(row), content_type=JSON_CONTENT_TYPE)
        log.info("created variable %s", name)
        return "created"

    body = {
        "changes": {"value": value},
        "row": {**row, "id": existing.id},
        "originals": {existing.id: {"value": "*****"}},
    }
    session.send(auth, "PUT", f"{VARIABLES_PATH}/{existing.id}", body=_payload(body), content_type=JSON_CONTENT_TYPE)
    log.info("updated variable %s", name)
    return "updated"


def remove_variable(session: HTTPSession, auth: AuthToken, name: str, data_service: str = "") -> None:
    if not name:
        raise ArgumentError("variable name is required")
    ds_id = resolve_data_service_id(session, auth, data_service)
    existing = _find(list_variables(session, auth, map_data_service_names=False), name, ds_id)
    if existing is None:
        raise ArgumentError(f"variable not found: {name!r}")
    session.send(
        auth,
        "DELETE",
        f"{VARIABLES_PATH}/{existing.id}",
        body=_payload({"data_service_id": ds_id}),
        content_type=JSON_CONTENT_TYPE,
    )
    log.info("removed variable %s", name)
