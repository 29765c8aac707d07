from __future__ import annotations

import json
import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from skuid.sync.runtime.settings import Settings


def _now_ms() -> int:
    return int(time.time() * 1000)


def _dur_ms(t0: float, t1: float) -> int:
    return int((t1 - t0) * 1000)


def log_event(logger: logging.Logger, *, settings: Settings, level: int, event: str, **fields: Any) -> None:
    """Emit an event log.

    - text format: one-liner `event key=value ...`
    - json format: one JSON object per line
    """
    if settings.log_format.lower() == "json":
        payload = {"ts_ms": _now_ms(), "event": event, **fields}
        logger.log(level, json.dumps(payload, ensure_ascii=False, default=str))
        return

    parts = [event]
    for k, v in fields.items():
        parts.append(f"{k}={v}")
    logger.log(level, " ".join(parts))


@dataclass
class ShardSummary:
    shard: str
    shard_type: str
    url: str
    status: str = "RUNNING"
    duration_ms: int = 0
    error: str | None = None


@dataclass
class OperationSummary:
    operation: str
    status_counts: Dict[str, int]
    duration_ms: int
    shards: list[ShardSummary] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "operation": self.operation,
            "duration_ms": self.duration_ms,
            "status_counts": dict(self.status_counts),
            "shards": [
                {
                    "shard": s.shard,
                    "type": s.shard_type,
                    "url": s.url,
                    "status": s.status,
                    "duration_ms": s.duration_ms,
                    "error": s.error,
                }
                for s in self.shards
            ],
        }


class OperationObserver:
    """Collects per-shard timings for one retrieve/deploy and emits a summary.

    Shard callbacks arrive from worker threads.
    """

    def __init__(self, *, settings: Settings, logger: logging.Logger, operation: str):
        self.settings = settings
        self.logger = logger
        self.operation = operation
        self._lock = threading.Lock()
        self._t0: float | None = None
        self._shard_t0: dict[str, float] = {}
        self._shards: dict[str, ShardSummary] = {}

    def start(self, **fields: Any) -> None:
        self._t0 = time.perf_counter()
        log_event(self.logger, settings=self.settings, level=logging.INFO, event=f"{self.operation}_start", **fields)

    def shard_start(self, *, shard: str, shard_type: str, url: str) -> None:
        with self._lock:
            self._shard_t0[shard] = time.perf_counter()
            self._shards[shard] = ShardSummary(shard=shard, shard_type=shard_type, url=url)
        log_event(self.logger, settings=self.settings, level=logging.DEBUG, event="shard_start", shard=shard, type=shard_type, url=url)

    def shard_end(self, *, shard: str, status: str, error: Optional[BaseException] = None) -> None:
        with self._lock:
            t0 = self._shard_t0.pop(shard, None)
            dur = _dur_ms(t0, time.perf_counter()) if t0 is not None else 0
            s = self._shards.get(shard)
            if s is not None:
                s.status = status
                s.duration_ms = dur
                s.error = str(error) if error is not None else None
        level = logging.INFO if error is None else logging.ERROR
        log_event(self.logger, settings=self.settings, level=level, event="shard_end", shard=shard, status=status, duration_ms=dur, error=error)

    def end(self) -> OperationSummary:
        t0 = self._t0
        dur = _dur_ms(t0, time.perf_counter()) if t0 is not None else 0
        with self._lock:
            shards = list(self._shards.values())
        counts = Counter(s.status for s in shards)
        summary = OperationSummary(operation=self.operation, status_counts=dict(counts), duration_ms=dur, shards=shards)
        log_event(self.logger, settings=self.settings, level=logging.INFO, event="operation_summary", **summary.as_dict())
        return summary
