"""Metadata kinds known to the site and how local paths map onto them.

Each kind owns one top-level directory of the local tree. A relative path
belongs to the kind whose directory name equals its first segment:

    pages/Home.json          -> pages
    datasources/mydb.json    -> datasources
    README.md                -> (none)

Files outside a known directory are never packed and never written.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

__all__ = [
    "MetadataKind",
    "KINDS",
    "all_kinds",
    "directory_names",
    "kind_for_directory",
    "classify",
    "entity_name",
    "split_path",
]


@dataclass(frozen=True)
class MetadataKind:
    name: str
    directory_name: str
    # Existing local files are merged with incoming content instead of replaced.
    deep_merge_on_write: bool = False
    # Incoming JSON is re-serialised canonically before writing.
    json_normalize: bool = False


KINDS: Tuple[MetadataKind, ...] = (
    MetadataKind("Apps", "apps"),
    MetadataKind("AuthProviders", "authproviders"),
    MetadataKind("ComponentPacks", "componentpacks"),
    MetadataKind("DataServices", "dataservices"),
    MetadataKind("DataSources", "datasources"),
    MetadataKind("DesignSystems", "designsystems"),
    MetadataKind("Files", "files"),
    MetadataKind("Pages", "pages"),
    MetadataKind("PermissionSets", "permissionsets"),
    MetadataKind("Profiles", "profiles", deep_merge_on_write=True, json_normalize=True),
    MetadataKind("SessionVariables", "sessionvariables"),
    MetadataKind("Site", "site"),
    MetadataKind("SitePermissionSets", "sitepermissionsets"),
    MetadataKind("Themes", "themes"),
    MetadataKind("Variables", "variables"),
)

_BY_DIRECTORY: Dict[str, MetadataKind] = {k.directory_name: k for k in KINDS}

_NAME_RE = re.compile(r"^[a-zA-Z0-9_\- ]+$")
_FILE_NAME_RE = re.compile(r"^[a-zA-Z0-9_\-\(\)\. ]+$")

_FILES_SUFFIX = ".skuid.json"
_SITE_IMAGE_DIRS = {
    "favicon": (".ico",),
    "logo": (".png", ".jpg", ".gif"),
}


def all_kinds() -> List[MetadataKind]:
    return list(KINDS)


def directory_names() -> List[str]:
    return [k.directory_name for k in KINDS]


def kind_for_directory(name: str) -> Optional[MetadataKind]:
    return _BY_DIRECTORY.get(name)


def split_path(path: str) -> List[str]:
    """Split a relative path on either separator, dropping empty and `.` segments."""
    return [p for p in re.split(r"[\\/]", path) if p not in ("", ".")]


def classify(path: str) -> Optional[MetadataKind]:
    """Return the kind owning `path`, or None when the path is outside every kind directory."""
    parts = split_path(path)
    if len(parts) < 2:
        return None
    return _BY_DIRECTORY.get(parts[0])


def _strip_suffix(name: str, suffixes: Iterable[str]) -> Optional[str]:
    for suffix in suffixes:
        if name.endswith(suffix) and len(name) > len(suffix):
            return name[: -len(suffix)]
    return None


def entity_name(path: str) -> Optional[str]:
    """Return the name of the entity a file belongs to, or None if the path names no entity.

    Several files can belong to the same entity (a page's `.json` and `.xml`,
    a file and its `.skuid.json` sidecar, every asset of a component pack).
    Deploy filtering works on these names, not on file paths.
    """
    kind = classify(path)
    if kind is None:
        return None
    parts = split_path(path)[1:]
    d = kind.directory_name

    if d == "componentpacks":
        # every file under componentpacks/<pack>/... belongs to <pack>
        if len(parts) < 2:
            return None
        return parts[0] if _NAME_RE.match(parts[0]) else None

    if d == "site":
        if parts == ["site.json"]:
            return "site"
        if len(parts) == 2 and parts[0] in _SITE_IMAGE_DIRS:
            base = _strip_suffix(parts[1], (_FILES_SUFFIX,)) or parts[1]
            if base.lower().endswith(_SITE_IMAGE_DIRS[parts[0]]):
                return f"{parts[0]}/{base}"
        return None

    if len(parts) != 1:
        return None
    filename = parts[0]

    if d == "files":
        name = _strip_suffix(filename, (_FILES_SUFFIX,)) or filename
        return name if _FILE_NAME_RE.match(name) else None

    if d == "pages":
        name = _strip_suffix(filename, (".json", ".xml"))
    elif d == "themes":
        name = _strip_suffix(filename, (".inline.css", ".json"))
    else:
        name = _strip_suffix(filename, (".json",))

    if name is None or not _NAME_RE.match(name):
        return None
    return name
