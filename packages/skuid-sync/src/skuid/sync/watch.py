"""Change detection for `watch` mode.

The watchdog observer only feeds raw paths into a queue. Everything else
(relative paths, ignoring noise, debouncing, grouping by kind) happens in
`ChangeDebouncer`, which takes an injectable clock.
"""

from __future__ import annotations

import logging
import os
import queue
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from skuid.sync.catalog import MetadataKind, classify

log = logging.getLogger("skuid.sync.watch")

DEFAULT_WINDOW = 0.25


class ChangeDebouncer:
    """Collects changed paths; a path is ready once it has been quiet for `window` seconds."""

    def __init__(self, root: Union[str, Path], *, window: float = DEFAULT_WINDOW, clock: Callable[[], float] = time.monotonic):
        self.root = Path(root).resolve()
        self.window = float(window)
        self._clock = clock
        self._last_seen: Dict[str, float] = {}

    def relative(self, path: Union[str, Path]) -> Optional[str]:
        p = Path(path)
        if p.is_absolute():
            try:
                p = p.resolve().relative_to(self.root)
            except ValueError:
                return None
        rel = p.as_posix()
        if any(part.startswith(".") for part in rel.split("/")):
            return None
        return rel

    def record(self, path: Union[str, Path]) -> Optional[str]:
        """Note a change; returns the relative path, or None when it is ignored."""
        rel = self.relative(path)
        if rel is None or classify(rel) is None:
            return None
        self._last_seen[rel] = self._clock()
        return rel

    @property
    def pending(self) -> bool:
        return bool(self._last_seen)

    def next_timeout(self) -> Optional[float]:
        if not self._last_seen:
            return None
        newest = max(self._last_seen.values())
        return max(0.0, newest + self.window - self._clock())

    def ready(self) -> List[MetadataKind]:
        """Pop quiet paths and return their kinds, each kind once, in directory order."""
        now = self._clock()
        due = [rel for rel, t in self._last_seen.items() if now - t >= self.window]
        kinds: Dict[str, MetadataKind] = {}
        for rel in due:
            del self._last_seen[rel]
            kind = classify(rel)
            if kind is not None:
                kinds[kind.directory_name] = kind
        return [kinds[k] for k in sorted(kinds)]


class _QueueHandler(FileSystemEventHandler):
    def __init__(self, events: "queue.Queue[str]"):
        super().__init__()
        self._events = events

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        for p in (getattr(event, "src_path", None), getattr(event, "dest_path", None)):
            if p:
                self._events.put(os.fsdecode(p))


def start_observer(root: Union[str, Path], events: "queue.Queue[str]") -> Observer:
    """Start a recursive watchdog observer that pushes changed file paths into `events`."""
    observer = Observer()
    observer.schedule(_QueueHandler(events), str(root), recursive=True)
    observer.daemon = True
    observer.start()
    log.info("watching %s", root)
    return observer
