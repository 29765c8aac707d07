from __future__ import annotations

import json
import logging

import httpx
import pytest

from conftest import json_response, make_zip
from skuid.sync.observability import OperationObserver, log_event
from skuid.sync.plan import RETRIEVE_PLAN_PATH
from skuid.sync.sync import retrieve


def _events(caplog, name):
    out = []
    for rec in caplog.records:
        try:
            data = json.loads(rec.getMessage())
        except ValueError:
            continue
        if data.get("event") == name:
            out.append(data)
    return out


def test_operation_summary_emitted_in_json_logs(site, settings, caplog: pytest.LogCaptureFixture):
    site.route("POST", RETRIEVE_PLAN_PATH, json_response({"a": {"url": "/a", "type": "metadataService"}, "b": {"url": "/b"}}))
    site.route("POST", "/a", httpx.Response(200, content=make_zip({"pages/a.json": b"{}"})))
    site.route("POST", "/b", httpx.Response(500, content=b"boom"))

    caplog.set_level("INFO")
    result = retrieve(settings.model_copy(update={"log_format": "json"}), session=site.session())

    summaries = _events(caplog, "operation_summary")
    assert len(summaries) == 1
    s = summaries[0]
    assert s["operation"] == "retrieve"
    assert s["status_counts"] == {"OK": 1, "FAILED": 1}
    by_shard = {x["shard"]: x for x in s["shards"]}
    assert by_shard["a"]["type"] == "metadataService"
    assert "500" in by_shard["b"]["error"]
    assert result.summary.status_counts == {"OK": 1, "FAILED": 1}


def test_log_event_text_format(settings, caplog):
    logger = logging.getLogger("skuid.sync.test")
    caplog.set_level("INFO")
    log_event(logger, settings=settings, level=logging.INFO, event="hello", shard="a", n=2)
    assert "hello shard=a n=2" in caplog.text


def test_observer_without_start_reports_zero_duration(settings):
    obs = OperationObserver(settings=settings, logger=logging.getLogger("skuid.sync.test"), operation="deploy")
    obs.shard_start(shard="x", shard_type="", url="https://h/x")
    obs.shard_end(shard="x", status="SKIPPED")
    summary = obs.end()
    assert summary.duration_ms == 0
    assert summary.status_counts == {"SKIPPED": 1}
