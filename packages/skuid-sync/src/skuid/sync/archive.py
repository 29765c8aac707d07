"""Zip archives of the local metadata tree.

`pack` produces deterministic archives: the same tree always yields the
same bytes (lexical entry order, fixed timestamps, fixed permissions).

`unpack` and `unpack_concatenated` read archives as a stream of local file
headers instead of seeking to the central directory. Retrieve responses
for multi-part plans are several complete zips written back to back, which
`zipfile` cannot open as one archive.
"""

from __future__ import annotations

import io
import logging
import os
import re
import struct
import zipfile
import zlib
from pathlib import Path
from typing import BinaryIO, Callable, Iterator, List, Optional, Union

from skuid.sync.catalog import classify, split_path
from skuid.sync.exception import PackEmptyError, PackIOError, PayloadError, UnsafePathError
from skuid.sync.models import ArchiveEntry

log = logging.getLogger("skuid.sync.archive")

__all__ = [
    "pack",
    "unpack",
    "unpack_concatenated",
    "iter_entries",
    "safe_entry_path",
]

ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)
FILE_MODE = 0o644

_DRIVE_RE = re.compile(r"^[A-Za-z]:")

_LOCAL_SIG = b"PK\x03\x04"
_CENTRAL_SIG = b"PK\x01\x02"
_EOCD_SIG = b"PK\x05\x06"
_ZIP64_EOCD_SIG = b"PK\x06\x06"
_ZIP64_LOCATOR_SIG = b"PK\x06\x07"
_DESCRIPTOR_SIG = b"PK\x07\x08"

_LOCAL_HEADER = struct.Struct("<4sHHHHHIIIHH")
_CENTRAL_HEADER = struct.Struct("<4sHHHHHHIIIHHHHHII")
_EOCD = struct.Struct("<4sHHHHIIH")

_FLAG_DESCRIPTOR = 0x08
_FLAG_UTF8 = 0x800
_STORED = 0
_DEFLATED = 8

Reader = Union[bytes, bytearray, BinaryIO]
Visitor = Callable[[ArchiveEntry], None]
UnsafeHandler = Callable[[str, UnsafePathError], None]


# ---------------------------------------------------------------------------
# pack
# ---------------------------------------------------------------------------


def _is_hidden(rel: str) -> bool:
    return any(part.startswith(".") for part in rel.split("/"))


def _collect(root: Path) -> List[str]:
    out: List[str] = []
    for dirpath, dirnames, filenames in os.walk(root, followlinks=False):
        dirnames[:] = [d for d in dirnames if not d.startswith(".") and not os.path.islink(os.path.join(dirpath, d))]
        for fn in filenames:
            full = os.path.join(dirpath, fn)
            if os.path.islink(full):
                continue
            rel = Path(full).relative_to(root).as_posix()
            out.append(rel)
    return sorted(out)


def pack(root: Union[str, Path], *, keep: Optional[Callable[[str], bool]] = None) -> bytes:
    """Zip the metadata tree under `root`.

    Only regular files inside a known kind directory are included. Hidden
    files and directories, symlinks and anything rejected by `keep` (called
    with the relative posix path) are skipped.
    """
    root = Path(root)
    if not root.is_dir():
        raise PackIOError(f"not a directory: {root}")

    try:
        candidates = _collect(root)
    except OSError as e:
        raise PackIOError(f"cannot walk {root}: {e}") from e

    buf = io.BytesIO()
    count = 0
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for rel in candidates:
            if _is_hidden(rel) or classify(rel) is None:
                continue
            if keep is not None and not keep(rel):
                continue
            try:
                data = (root / rel).read_bytes()
            except OSError as e:
                raise PackIOError(f"cannot read {rel}: {e}") from e
            info = zipfile.ZipInfo(rel, date_time=ZIP_EPOCH)
            info.compress_type = zipfile.ZIP_DEFLATED
            info.external_attr = (0o100000 | FILE_MODE) << 16
            info.create_system = 3
            zf.writestr(info, data)
            count += 1

    if count == 0:
        raise PackEmptyError(f"nothing to pack under {root}")
    log.debug("packed %d file(s) from %s", count, root)
    return buf.getvalue()


# ---------------------------------------------------------------------------
# unpack
# ---------------------------------------------------------------------------


def safe_entry_path(name: str) -> str:
    """Return the normalized relative path for an archive entry name.

    Raises UnsafePathError for absolute paths, drive letters, UNC paths and
    any `..` segment. A trailing `/` (directory entry) is preserved.
    """
    if not name:
        raise UnsafePathError(name, "empty path")
    if name.startswith(("/", "\\")):
        raise UnsafePathError(name, "absolute path")
    if _DRIVE_RE.match(name):
        raise UnsafePathError(name, "drive letter")
    parts = split_path(name)
    if any(p == ".." for p in parts):
        raise UnsafePathError(name, "parent traversal")
    if not parts:
        raise UnsafePathError(name, "empty path")
    rel = "/".join(parts)
    if name.endswith(("/", "\\")):
        rel += "/"
    return rel


class _ByteStream:
    """Forward-only reader with a small pushback buffer."""

    def __init__(self, reader: Reader, chunk_size: int = 64 * 1024):
        if isinstance(reader, (bytes, bytearray)):
            reader = io.BytesIO(bytes(reader))
        self._reader = reader
        self._chunk_size = chunk_size
        self._buf = bytearray()
        self._eof = False

    def _fill(self, n: int) -> None:
        while len(self._buf) < n and not self._eof:
            chunk = self._reader.read(self._chunk_size)
            if not chunk:
                self._eof = True
                break
            self._buf += chunk

    def peek(self, n: int) -> bytes:
        self._fill(n)
        return bytes(self._buf[:n])

    def read_exact(self, n: int) -> bytes:
        self._fill(n)
        if len(self._buf) < n:
            raise PayloadError("truncated zip archive")
        out = bytes(self._buf[:n])
        del self._buf[:n]
        return out

    def read_some(self) -> bytes:
        self._fill(1)
        out = bytes(self._buf)
        self._buf.clear()
        return out

    def skip(self, n: int) -> None:
        while n > 0:
            self._fill(min(n, self._chunk_size))
            if not self._buf:
                raise PayloadError("truncated zip archive")
            take = min(n, len(self._buf))
            del self._buf[:take]
            n -= take

    def unread(self, data: bytes) -> None:
        if data:
            self._buf[:0] = data

    def at_eof(self) -> bool:
        self._fill(1)
        return not self._buf


def _zip64_sizes(extra: bytes, csize: int, usize: int) -> tuple[int, int, bool]:
    pos = 0
    while pos + 4 <= len(extra):
        tag, size = struct.unpack_from("<HH", extra, pos)
        body = extra[pos + 4: pos + 4 + size]
        if tag == 0x0001:
            off = 0
            if usize == 0xFFFFFFFF and off + 8 <= len(body):
                usize = struct.unpack_from("<Q", body, off)[0]
                off += 8
            if csize == 0xFFFFFFFF and off + 8 <= len(body):
                csize = struct.unpack_from("<Q", body, off)[0]
            return csize, usize, True
        pos += 4 + size
    return csize, usize, False


def _inflate_until_end(stream: _ByteStream) -> bytes:
    d = zlib.decompressobj(-15)
    out = bytearray()
    while not d.eof:
        chunk = stream.read_some()
        if not chunk:
            raise PayloadError("truncated deflate stream")
        try:
            out += d.decompress(chunk)
        except zlib.error as e:
            raise PayloadError(f"corrupt deflate stream: {e}") from e
    stream.unread(d.unused_data)
    return bytes(out)


def _read_stored_until_descriptor(stream: _ByteStream) -> bytes:
    # No size up front: the entry ends at the first descriptor whose crc and
    # size match the bytes before it.
    buf = bytearray()
    start = 0
    while True:
        idx = buf.find(_DESCRIPTOR_SIG, start)
        if idx >= 0 and len(buf) >= idx + 16:
            crc, size = struct.unpack_from("<II", buf, idx + 4)
            if size == idx and (zlib.crc32(bytes(buf[:idx])) & 0xFFFFFFFF) == crc:
                stream.unread(bytes(buf[idx:]))
                return bytes(buf[:idx])
            start = idx + 1
            continue
        if idx < 0:
            start = max(0, len(buf) - 3)
        chunk = stream.read_some()
        if not chunk:
            raise PayloadError("truncated stored entry")
        buf += chunk


def _read_descriptor(stream: _ByteStream, zip64: bool) -> int:
    if stream.peek(4) == _DESCRIPTOR_SIG:
        stream.skip(4)
    crc = struct.unpack("<I", stream.read_exact(4))[0]
    stream.skip(16 if zip64 else 8)
    return crc


def _read_local_entry(stream: _ByteStream) -> tuple[str, bytes]:
    header = stream.read_exact(_LOCAL_HEADER.size)
    (_sig, _ver, flags, method, _mtime, _mdate, crc, csize, usize, name_len, extra_len) = _LOCAL_HEADER.unpack(header)
    raw_name = stream.read_exact(name_len)
    extra = stream.read_exact(extra_len)
    name = raw_name.decode("utf-8" if flags & _FLAG_UTF8 else "cp437", errors="replace")
    csize, usize, zip64 = _zip64_sizes(extra, csize, usize)
    has_descriptor = bool(flags & _FLAG_DESCRIPTOR)

    if method == _DEFLATED:
        if has_descriptor:
            data = _inflate_until_end(stream)
        else:
            try:
                data = zlib.decompress(stream.read_exact(csize), -15)
            except zlib.error as e:
                raise PayloadError(f"corrupt deflate stream for {name!r}: {e}") from e
    elif method == _STORED:
        if has_descriptor and csize == 0:
            data = _read_stored_until_descriptor(stream)
        else:
            data = stream.read_exact(csize)
    else:
        raise PayloadError(f"unsupported compression method {method} for {name!r}")

    if has_descriptor:
        crc = _read_descriptor(stream, zip64)
    if (zlib.crc32(data) & 0xFFFFFFFF) != crc:
        raise PayloadError(f"crc mismatch for {name!r}")
    return name, data


def _skip_trailer(stream: _ByteStream) -> None:
    """Consume central directory records up to and including the end record."""
    while True:
        sig = stream.peek(4)
        if sig == _CENTRAL_SIG:
            header = stream.read_exact(_CENTRAL_HEADER.size)
            fields = _CENTRAL_HEADER.unpack(header)
            name_len, extra_len, comment_len = fields[10], fields[11], fields[12]
            stream.skip(name_len + extra_len + comment_len)
        elif sig == _ZIP64_EOCD_SIG:
            stream.skip(4)
            size = struct.unpack("<Q", stream.read_exact(8))[0]
            stream.skip(size)
        elif sig == _ZIP64_LOCATOR_SIG:
            stream.skip(20)
        elif sig == _EOCD_SIG:
            header = stream.read_exact(_EOCD.size)
            comment_len = _EOCD.unpack(header)[7]
            stream.skip(comment_len)
            return
        elif not sig:
            raise PayloadError("zip archive ended without end of central directory record")
        else:
            raise PayloadError(f"unexpected zip record signature {sig!r}")


def _iter_archive(stream: _ByteStream, on_unsafe: Optional[UnsafeHandler]) -> Iterator[ArchiveEntry]:
    sig = stream.peek(4)
    if sig not in (_LOCAL_SIG, _CENTRAL_SIG, _EOCD_SIG, _ZIP64_EOCD_SIG):
        raise PayloadError("not a zip archive")
    while stream.peek(4) == _LOCAL_SIG:
        name, data = _read_local_entry(stream)
        try:
            rel = safe_entry_path(name)
        except UnsafePathError as e:
            if on_unsafe is None:
                raise
            on_unsafe(name, e)
            continue
        if rel.endswith("/"):
            yield ArchiveEntry(path=rel.rstrip("/"), is_directory=True)
        else:
            yield ArchiveEntry(path=rel, data=data)
    _skip_trailer(stream)


def iter_entries(reader: Reader, *, concatenated: bool = True, on_unsafe: Optional[UnsafeHandler] = None) -> Iterator[ArchiveEntry]:
    """Yield entries in stream order.

    With `concatenated=True` archives written back to back are read one
    after the other; otherwise anything after the first archive is ignored.
    An empty input yields nothing.
    """
    stream = _ByteStream(reader)
    if stream.at_eof():
        return
    while True:
        yield from _iter_archive(stream, on_unsafe)
        if not concatenated or stream.at_eof():
            return


def unpack(reader: Reader, visit: Visitor, *, on_unsafe: Optional[UnsafeHandler] = None) -> int:
    """Stream one archive through `visit`; return the number of entries visited.

    An exception raised by `visit` stops the walk and propagates. Unsafe
    entries raise UnsafePathError unless `on_unsafe` is given, in which case
    it is called and the entry is skipped.
    """
    n = 0
    for entry in iter_entries(reader, concatenated=False, on_unsafe=on_unsafe):
        visit(entry)
        n += 1
    return n


def unpack_concatenated(reader: Reader, visit: Visitor, *, on_unsafe: Optional[UnsafeHandler] = None) -> int:
    """Like `unpack`, for several complete archives written back to back."""
    n = 0
    for entry in iter_entries(reader, concatenated=True, on_unsafe=on_unsafe):
        visit(entry)
        n += 1
    return n
