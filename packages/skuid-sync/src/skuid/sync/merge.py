"""Apply retrieved archives to the local metadata tree.

Order of operations for one retrieve:

1. Reset: every kind directory that appears in any archive is deleted, so
   entities removed on the server disappear locally.
2. Each entry, in arrival order, is classified, checked against the target
   root and turned into a decision (write, skip, fail).
3. Writes go to a temp file in the destination directory and are moved
   into place, so a cancelled run never leaves a half-written file.

Profiles are deep-merged with the local copy (as it was before the reset)
and with earlier entries for the same path: a profile split across several
shards arrives as several partial documents.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set, Tuple, Union

from skuid.sync.archive import UnsafeHandler, iter_entries, safe_entry_path
from skuid.sync.catalog import MetadataKind, classify, kind_for_directory
from skuid.sync.context import CancelToken
from skuid.sync.exception import LocalIOError, PayloadError, UnsafePathError
from skuid.sync.models import ArchiveEntry

log = logging.getLogger("skuid.sync.merge")

DIR_MODE = 0o755
FILE_MODE = 0o644

__all__ = [
    "Write",
    "Skip",
    "Fail",
    "deep_merge",
    "canonical_json",
    "decide",
    "check_payload",
    "MergeReport",
    "DiskWriter",
    "write_results_to_disk",
]


@dataclass(frozen=True)
class Write:
    data: bytes


@dataclass(frozen=True)
class Skip:
    reason: str


@dataclass(frozen=True)
class Fail:
    reason: str


MergeDecision = Union[Write, Skip, Fail]


def _strip_nulls(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _strip_nulls(v) for k, v in value.items() if v is not None}
    return value


def deep_merge(old: Dict[str, Any], new: Dict[str, Any]) -> Dict[str, Any]:
    """Merge `new` into `old` without mutating either.

    - objects merge recursively
    - null in `new` keeps the old value (or leaves the key out)
    - scalars and arrays in `new` replace the old value
    """
    out = dict(old)
    for k, nv in new.items():
        if nv is None:
            continue
        ov = out.get(k)
        if isinstance(nv, dict) and isinstance(ov, dict):
            out[k] = deep_merge(ov, nv)
        else:
            out[k] = _strip_nulls(nv)
    return out


def canonical_json(value: Any) -> bytes:
    """Sorted keys, 2-space indent, trailing newline."""
    return (json.dumps(value, sort_keys=True, indent=2, ensure_ascii=False) + "\n").encode("utf-8")


def _load_object(data: bytes, what: str) -> Dict[str, Any]:
    try:
        obj = json.loads(data)
    except ValueError as e:
        raise PayloadError(f"{what} is not valid JSON: {e}") from e
    if not isinstance(obj, dict):
        raise PayloadError(f"{what} is not a JSON object")
    return obj


def decide(kind: Optional[MetadataKind], path: str, data: bytes, existing: Optional[bytes]) -> MergeDecision:
    """Decide what to write for one incoming file."""
    if kind is None:
        return Skip("unknown metadata kind")
    is_json = path.endswith(".json")
    if not is_json or not (kind.deep_merge_on_write or kind.json_normalize):
        return Write(data)
    try:
        incoming = _load_object(data, "incoming file")
    except PayloadError as e:
        return Fail(str(e))
    old: Dict[str, Any] = {}
    if kind.deep_merge_on_write and existing is not None:
        try:
            old = _load_object(existing, "existing file")
        except PayloadError as e:
            # unreadable local copy: the incoming document replaces it
            log.warning("%s: %s; replacing it", path, e)
    return Write(canonical_json(deep_merge(old, incoming)))


@dataclass
class MergeReport:
    reset: List[str] = field(default_factory=list)
    written: List[str] = field(default_factory=list)
    directories: List[str] = field(default_factory=list)
    quarantined: List[Tuple[str, str]] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "reset": list(self.reset),
            "written": list(self.written),
            "quarantined": [{"path": p, "reason": r} for p, r in self.quarantined],
        }


def _rm_rf(p: Path) -> None:
    if p.is_symlink() or p.is_file():
        p.unlink()
    elif p.exists():
        shutil.rmtree(p)


class DiskWriter:
    """Writes entries below one target root, quarantining anything unsafe."""

    def __init__(self, target_dir: Union[str, Path], *, cancel: Optional[CancelToken] = None):
        self.root = Path(target_dir)
        self.cancel = cancel
        self.report = MergeReport()
        # Deep-merge files removed by reset_directories, keyed by relative path.
        self._previous: Dict[str, bytes] = {}
        try:
            self.root.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
            self._resolved_root = self.root.resolve()
        except OSError as e:
            raise LocalIOError(f"cannot create target directory {self.root}: {e}") from e

    def quarantine(self, path: str, reason: str) -> None:
        log.warning("quarantined %r: %s", path, reason)
        self.report.quarantined.append((path, reason))

    def on_unsafe(self, name: str, err: UnsafePathError) -> None:
        self.quarantine(name, err.reason)

    def reset_directories(self, kinds: Iterable[MetadataKind]) -> None:
        for kind in sorted(set(kinds), key=lambda k: k.directory_name):
            p = self.root / kind.directory_name
            if not p.exists() and not p.is_symlink():
                continue
            if kind.deep_merge_on_write and p.is_dir() and not p.is_symlink():
                self._snapshot(p)
            try:
                _rm_rf(p)
            except OSError as e:
                raise LocalIOError(f"cannot reset {p}: {e}") from e
            log.debug("reset %s", p)
            self.report.reset.append(kind.directory_name)

    def _snapshot(self, kind_dir: Path) -> None:
        for f in sorted(kind_dir.rglob("*")):
            if f.is_file() and not f.is_symlink():
                try:
                    self._previous[f.relative_to(self.root).as_posix()] = f.read_bytes()
                except OSError as e:
                    raise LocalIOError(f"cannot read {f}: {e}") from e

    def _resolve(self, rel: str) -> Path:
        abs_path = (self.root / rel).resolve()
        if abs_path != self._resolved_root and self._resolved_root not in abs_path.parents:
            raise UnsafePathError(rel, "escapes target directory")
        return abs_path

    def _mkdir(self, p: Path) -> None:
        try:
            p.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
        except OSError as e:
            raise LocalIOError(f"cannot create directory {p}: {e}") from e

    def _atomic_write(self, dest: Path, data: bytes) -> None:
        self._mkdir(dest.parent)
        fd, tmp = tempfile.mkstemp(prefix=f".{dest.name}.", suffix=".tmp", dir=str(dest.parent))
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.chmod(tmp, FILE_MODE)
            if self.cancel is not None:
                self.cancel.raise_if_cancelled()
            os.replace(tmp, dest)
        except BaseException as e:
            try:
                os.unlink(tmp)
            except FileNotFoundError:
                pass
            if isinstance(e, OSError):
                raise LocalIOError(f"cannot write {dest}: {e}") from e
            raise

    def apply(self, entry: ArchiveEntry) -> MergeDecision:
        """Write one entry. Returns the decision taken; local I/O failures raise."""
        if self.cancel is not None:
            self.cancel.raise_if_cancelled()
        try:
            rel = safe_entry_path(entry.path).rstrip("/")
            abs_path = self._resolve(rel)
        except UnsafePathError as e:
            self.quarantine(entry.path, e.reason)
            return Skip(e.reason)

        kind = classify(rel)
        if entry.is_directory and (kind is not None or kind_for_directory(rel) is not None):
            self._mkdir(abs_path)
            self.report.directories.append(rel)
            return Skip("directory")

        if kind is None:
            self.quarantine(rel, "unknown metadata kind")
            return Skip("unknown metadata kind")

        existing: Optional[bytes] = None
        if kind.deep_merge_on_write:
            if abs_path.is_file():
                try:
                    existing = abs_path.read_bytes()
                except OSError as e:
                    raise LocalIOError(f"cannot read {abs_path}: {e}") from e
            else:
                existing = self._previous.get(rel)

        decision = decide(kind, rel, entry.data, existing)
        if isinstance(decision, Write):
            self._atomic_write(abs_path, decision.data)
            self.report.written.append(rel)
        else:
            self.quarantine(rel, decision.reason)
        return decision

    def apply_all(self, entries: Iterable[ArchiveEntry]) -> None:
        for entry in entries:
            self.apply(entry)


def json_map_entries(raw: bytes) -> Iterator[ArchiveEntry]:
    """Entries of a no-zip shard response: a JSON object of path -> base64 content."""
    try:
        obj = json.loads(raw or b"{}")
    except ValueError as e:
        raise PayloadError(f"shard response is not valid JSON: {e}") from e
    if obj is None:
        return
    if not isinstance(obj, dict):
        raise PayloadError("shard response must be a JSON object of path to base64 content")
    for path, encoded in obj.items():
        if not isinstance(encoded, str):
            raise PayloadError(f"content for {path!r} is not a base64 string")
        try:
            data = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise PayloadError(f"content for {path!r} is not valid base64: {e}") from e
        yield ArchiveEntry(path=path, data=data)


def _entries(raw: bytes, accept_zip: bool, on_unsafe: Optional[UnsafeHandler] = None) -> Iterator[ArchiveEntry]:
    if accept_zip:
        return iter_entries(raw, concatenated=True, on_unsafe=on_unsafe)
    return json_map_entries(raw)


def _ignore_unsafe(name: str, err: UnsafePathError) -> None:
    return None


def _entry_kind(entry: ArchiveEntry) -> Optional[MetadataKind]:
    try:
        rel = safe_entry_path(entry.path).rstrip("/")
    except UnsafePathError:
        return None
    kind = classify(rel)
    if kind is None and entry.is_directory:
        kind = kind_for_directory(rel)
    return kind


def check_payload(raw: bytes, accept_zip: bool = True) -> Set[MetadataKind]:
    """Decode one shard response fully and return the kinds it carries.

    Raises PayloadError when the response is not a readable archive (or JSON
    map), so a corrupt shard can be failed on its own.
    """
    kinds: Set[MetadataKind] = set()
    for entry in _entries(raw, accept_zip, on_unsafe=_ignore_unsafe):
        kind = _entry_kind(entry)
        if kind is not None:
            kinds.add(kind)
    return kinds


def kinds_in(archives: Iterable[bytes], accept_zip: bool) -> Set[MetadataKind]:
    """Every kind that has at least one safe entry (or a directory entry) in `archives`."""
    kinds: Set[MetadataKind] = set()
    for raw in archives:
        kinds |= check_payload(raw, accept_zip)
    return kinds


def write_results_to_disk(
    target_dir: Union[str, Path],
    archives: List[bytes],
    accept_zip: bool = True,
    *,
    reset: bool = True,
    cancel: Optional[CancelToken] = None,
) -> MergeReport:
    """Reset the affected kind directories, then apply every archive in order.

    `archives` are the raw shard responses: concatenated zips when
    `accept_zip`, otherwise JSON maps of path to base64 content. A malformed
    archive raises PayloadError before anything is deleted.
    """
    writer = DiskWriter(target_dir, cancel=cancel)
    if reset:
        writer.reset_directories(kinds_in(archives, accept_zip))
    for raw in archives:
        writer.apply_all(_entries(raw, accept_zip, on_unsafe=writer.on_unsafe))
    r = writer.report
    log.info("wrote %d file(s) to %s (%d quarantined)", len(r.written), writer.root, len(r.quarantined))
    return r
