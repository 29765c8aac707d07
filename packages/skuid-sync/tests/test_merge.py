from __future__ import annotations

import base64
import json
import os
import stat

import pytest

from conftest import make_zip
from skuid.sync.catalog import kind_for_directory
from skuid.sync.exception import PayloadError
from skuid.sync.merge import Fail, Skip, Write, canonical_json, decide, deep_merge, write_results_to_disk

PROFILE_OLD = {"enableSignupUi": False, "name": "Admin", "requireEmailVerificationOnSignup": True}
PROFILE_NEW = {
    "name": "Admin",
    "signupUi": None,
    "permissionSet": {
        "dataSourcePermissions": {"Racer": {"dataSourceObjectPermissions": None}},
        "appPermissions": {"Admin": {"isDefault": False}, "Racer": {"isDefault": False}},
    },
    "enableSignupApi": False,
}
PROFILE_MERGED = {
    "enableSignupApi": False,
    "enableSignupUi": False,
    "name": "Admin",
    "permissionSet": {
        "appPermissions": {"Admin": {"isDefault": False}, "Racer": {"isDefault": False}},
        "dataSourcePermissions": {"Racer": {}},
    },
    "requireEmailVerificationOnSignup": True,
}


def _tree(root):
    return {
        p.relative_to(root).as_posix(): p.read_bytes()
        for p in sorted(root.rglob("*"))
        if p.is_file()
    }


def test_deep_merge_profile_example():
    assert deep_merge(PROFILE_OLD, PROFILE_NEW) == PROFILE_MERGED


@pytest.mark.parametrize(
    "old,new,expected",
    [
        ({"a": 1}, {"a": None}, {"a": 1}),
        ({}, {"a": None}, {}),
        ({"a": {"b": 1, "c": 2}}, {"a": {"b": None, "c": 3}}, {"a": {"b": 1, "c": 3}}),
        ({"a": [1, 2, 3]}, {"a": [4]}, {"a": [4]}),
        ({"a": {"b": 1}}, {"a": 5}, {"a": 5}),
        ({"a": 5}, {"a": {"b": None, "c": 1}}, {"a": {"c": 1}}),
    ],
)
def test_deep_merge_rules(old, new, expected):
    assert deep_merge(old, new) == expected


def test_deep_merge_does_not_mutate_inputs():
    old = {"a": {"b": 1}}
    new = {"a": {"c": 2}}
    deep_merge(old, new)
    assert old == {"a": {"b": 1}}
    assert new == {"a": {"c": 2}}


def test_canonical_json_format():
    assert canonical_json({"b": 1, "a": {"d": [1], "c": "é"}}) == (
        '{\n  "a": {\n    "c": "é",\n    "d": [\n      1\n    ]\n  },\n  "b": 1\n}\n'
    ).encode("utf-8")


def test_decide():
    profiles = kind_for_directory("profiles")
    pages = kind_for_directory("pages")
    assert isinstance(decide(None, "x/y.json", b"{}", None), Skip)
    assert decide(pages, "pages/a.json", b'{"b":1,"a":2}', None) == Write(b'{"b":1,"a":2}')
    assert decide(profiles, "profiles/a.json", b'{"b":1,"a":null}', None) == Write(b'{\n  "b": 1\n}\n')
    assert isinstance(decide(profiles, "profiles/a.json", b"not json", None), Fail)
    assert decide(profiles, "profiles/a.json", b'{"a": 1}', b"[1]") == Write(b'{\n  "a": 1\n}\n')
    assert decide(profiles, "profiles/a.json", b'{"a": 1}', b"{ truncated") == Write(b'{\n  "a": 1\n}\n')


def test_profile_merge_with_existing_file(temp_dir):
    target = temp_dir / "site"
    (target / "profiles").mkdir(parents=True)
    (target / "profiles" / "admin.json").write_text(json.dumps(PROFILE_OLD), encoding="utf-8")

    archive = make_zip({"profiles/admin.json": json.dumps(PROFILE_NEW)})
    write_results_to_disk(target, [archive], accept_zip=True)

    assert (target / "profiles" / "admin.json").read_bytes() == canonical_json(PROFILE_MERGED)


def test_repeated_profile_entries_merge_in_arrival_order(temp_dir):
    a = make_zip({"profiles/admin.json": json.dumps({"name": "Admin", "x": 1})})
    b = make_zip({"profiles/admin.json": json.dumps({"x": 2, "y": None, "z": {"k": True}})})
    write_results_to_disk(temp_dir, [a + b], accept_zip=True)
    assert json.loads((temp_dir / "profiles" / "admin.json").read_text()) == {"name": "Admin", "x": 2, "z": {"k": True}}


def test_reset_removes_stale_files_only_for_present_kinds(temp_dir):
    (temp_dir / "pages").mkdir()
    (temp_dir / "pages" / "stale.json").write_text("old")
    (temp_dir / "themes").mkdir()
    (temp_dir / "themes" / "keep.json").write_text("keep")

    report = write_results_to_disk(temp_dir, [make_zip({"pages/new.json": b"new"})], accept_zip=True)

    assert _tree(temp_dir) == {"pages/new.json": b"new", "themes/keep.json": b"keep"}
    assert report.reset == ["pages"]
    assert report.written == ["pages/new.json"]


def test_stale_profile_removed_when_not_retrieved(temp_dir):
    (temp_dir / "profiles").mkdir()
    (temp_dir / "profiles" / "gone.json").write_text('{"name": "Gone"}')
    write_results_to_disk(temp_dir, [make_zip({"profiles/admin.json": b'{"name": "Admin"}'})], accept_zip=True)
    assert sorted(_tree(temp_dir)) == ["profiles/admin.json"]


def test_verbatim_write_and_modes(temp_dir):
    write_results_to_disk(temp_dir, [make_zip({"datasources/mydatasource.json": b"blob"})], accept_zip=True)
    f = temp_dir / "datasources" / "mydatasource.json"
    assert f.read_bytes() == b"blob"
    assert stat.S_IMODE(os.stat(f).st_mode) == 0o644
    assert _tree(temp_dir) == {"datasources/mydatasource.json": b"blob"}


def test_unsafe_and_unknown_entries_quarantined(temp_dir, caplog):
    target = temp_dir / "site"
    raw = make_zip({"../etc/passwd": b"root", "unknown/x.json": b"x", "pages/a.json": b"a"})
    with caplog.at_level("WARNING", logger="skuid.sync.merge"):
        report = write_results_to_disk(target, [raw], accept_zip=True)

    assert not (temp_dir / "etc").exists()
    assert _tree(target) == {"pages/a.json": b"a"}
    assert [p for p, _ in report.quarantined] == ["../etc/passwd", "unknown/x.json"]
    assert "quarantined" in caplog.text


def test_symlinked_kind_directory_cannot_escape(temp_dir):
    target = temp_dir / "site"
    outside = temp_dir / "outside"
    target.mkdir()
    outside.mkdir()
    os.symlink(outside, target / "pages")

    report = write_results_to_disk(target, [make_zip({"pages/a.json": b"a"})], accept_zip=True, reset=False)

    assert list(outside.iterdir()) == []
    assert report.quarantined and report.quarantined[0][0] == "pages/a.json"


@pytest.mark.parametrize(
    "name",
    ["../x.json", "/tmp/x.json", "C:\\x.json", "\\\\srv\\share\\x.json", "pages/../../x.json", "pages/../../../x.json"],
)
def test_nothing_written_outside_target(temp_dir, name):
    target = temp_dir / "a" / "site"
    write_results_to_disk(target, [make_zip({name: b"x"})], accept_zip=True)
    written = [p for p in temp_dir.rglob("*") if p.is_file()]
    assert written == []


def test_no_zip_json_map(temp_dir):
    payload = {
        "pages/a.json": base64.b64encode(b'{"a": 1}').decode(),
        "../evil.json": base64.b64encode(b"x").decode(),
    }
    report = write_results_to_disk(temp_dir / "site", [json.dumps(payload).encode()], accept_zip=False)
    assert _tree(temp_dir / "site") == {"pages/a.json": b'{"a": 1}'}
    assert [p for p, _ in report.quarantined] == ["../evil.json"]


def test_no_zip_invalid_payload(temp_dir):
    with pytest.raises(PayloadError):
        write_results_to_disk(temp_dir, [b'{"pages/a.json": "***"}'], accept_zip=False)
    with pytest.raises(PayloadError):
        write_results_to_disk(temp_dir, [b"[1, 2]"], accept_zip=False)


def test_idempotent_writes(temp_dir):
    archives = [
        make_zip({"pages/a.json": b"a", "profiles/p.json": b'{"b": 1, "a": null}'}),
        make_zip({"datasources/d.json": b"d"}),
    ]
    write_results_to_disk(temp_dir, archives, accept_zip=True)
    first = _tree(temp_dir)
    write_results_to_disk(temp_dir, archives, accept_zip=True)
    assert _tree(temp_dir) == first


def test_directory_only_entry_resets_kind(temp_dir):
    (temp_dir / "pages").mkdir()
    (temp_dir / "pages" / "stale.json").write_text("old")

    report = write_results_to_disk(temp_dir, [make_zip({"pages/": b""})], accept_zip=True)

    assert report.reset == ["pages"]
    assert (temp_dir / "pages").is_dir()
    assert _tree(temp_dir) == {}


def test_unreadable_local_profile_is_replaced(temp_dir, caplog):
    (temp_dir / "profiles").mkdir()
    (temp_dir / "profiles" / "admin.json").write_text("{ truncated")

    with caplog.at_level("WARNING"):
        report = write_results_to_disk(temp_dir, [make_zip({"profiles/admin.json": b'{"name": "Admin"}'})], accept_zip=True)

    assert report.quarantined == []
    assert (temp_dir / "profiles" / "admin.json").read_bytes() == canonical_json({"name": "Admin"})
    assert "profiles/admin.json" in caplog.text
