from __future__ import annotations

import json

import httpx
import pytest

from conftest import json_response
from skuid.sync.exception import PayloadError, ServerError
from skuid.sync.models import AuthToken, PlanFilter
from skuid.sync.plan import DEPLOY_PLAN_PATH, RETRIEVE_PLAN_PATH, get_retrieve_plan, parse_plan, prepare_deployment

AUTH = AuthToken(access_token="tok-123", host="https://example.skuidsite.com")


def test_retrieve_plan_without_filter_posts_empty_object(site):
    site.route("POST", RETRIEVE_PLAN_PATH, json_response({"metadata": {"url": "/api/v2/metadata/retrieve", "type": "metadataService", "metadata": {"pages": ["a"]}}}))
    plan = get_retrieve_plan(site.session(), AUTH, None)

    (req,) = site.calls("POST", RETRIEVE_PLAN_PATH)
    assert json.loads(req.content) == {}
    assert req.headers["Content-Type"] == "application/json"
    assert list(plan) == ["metadata"]
    assert plan["metadata"].url == "/api/v2/metadata/retrieve"
    assert plan["metadata"].metadata == {"pages": ["a"]}


def test_retrieve_plan_with_filter(site):
    site.route("POST", RETRIEVE_PLAN_PATH, json_response({}))
    get_retrieve_plan(site.session(), AUTH, PlanFilter(app_name="Racing", page_names=["a", "b"]))
    (req,) = site.calls("POST", RETRIEVE_PLAN_PATH)
    assert json.loads(req.content) == {"appName": "Racing", "pageNames": ["a", "b"]}


def test_parse_plan_accepts_mixed_case_keys():
    plan = parse_plan(
        json.dumps(
            {
                "cloudData": {"Host": "data.example.com", "Port": 8443, "URL": "/api/v2/retrieve", "Type": "dataService", "Metadata": {"DataSources": ["db"]}},
            }
        ).encode()
    )
    shard = plan["cloudData"]
    assert shard.host == "data.example.com"
    assert shard.port == "8443"
    assert shard.base_url() == "https://data.example.com:8443"
    assert shard.metadata == {"datasources": ["db"]}


def test_parse_plan_null_is_empty():
    assert parse_plan(b"null") == {}
    assert parse_plan(b"") == {}


@pytest.mark.parametrize(
    "raw",
    [
        b'{"a": {"url": ""}}',
        b'{"a": {"type": "x"}}',
        b'{"a": {"url": "/x"}, "a": {"url": "/y"}}',
        b"[1]",
        b"not json",
    ],
)
def test_parse_plan_rejects(raw):
    with pytest.raises(PayloadError):
        parse_plan(raw)


def test_plan_server_error_propagates(site):
    site.route("POST", RETRIEVE_PLAN_PATH, httpx.Response(500, content=b"boom"))
    with pytest.raises(ServerError):
        get_retrieve_plan(site.session(), AUTH)
    assert len(site.calls("POST", RETRIEVE_PLAN_PATH)) == 1


def test_prepare_deployment_sends_multipart(site):
    site.route("POST", DEPLOY_PLAN_PATH, json_response({"metadata": {"url": "/api/v2/metadata/deploy", "metadata": {"pages": ["a"]}}}))
    plan = prepare_deployment(site.session(), AUTH, b"PK-zip-bytes", PlanFilter(page_names=["a"]))

    (req,) = site.calls("POST", DEPLOY_PLAN_PATH)
    assert req.headers["Content-Type"].startswith("multipart/form-data")
    body = req.content
    assert b'name="filter"' in body
    assert b'{"pageNames": ["a"]}' in body
    assert b'name="archive"; filename="deploy.zip"' in body
    assert b"PK-zip-bytes" in body
    assert plan["metadata"].metadata == {"pages": ["a"]}
