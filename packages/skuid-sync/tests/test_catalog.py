from __future__ import annotations

import pytest

from skuid.sync.catalog import all_kinds, classify, directory_names, entity_name, kind_for_directory


def test_directory_names_are_unique_and_lowercase():
    names = directory_names()
    assert len(names) == len(set(names))
    assert all(n == n.lower() for n in names)
    assert "pages" in names and "profiles" in names and "datasources" in names


def test_only_profiles_deep_merge():
    merging = [k.directory_name for k in all_kinds() if k.deep_merge_on_write]
    assert merging == ["profiles"]
    assert kind_for_directory("profiles").json_normalize is True
    assert kind_for_directory("datasources").json_normalize is False


@pytest.mark.parametrize(
    "path,expected",
    [
        ("pages/Home.json", "pages"),
        ("datasources/mydatasource.json", "datasources"),
        ("componentpacks/pack/runtime.js", "componentpacks"),
        ("pages\\Home.xml", "pages"),
        ("./profiles/admin.json", "profiles"),
    ],
)
def test_classify_known_kinds(path, expected):
    assert classify(path).directory_name == expected


@pytest.mark.parametrize("path", ["README.md", "pages", "unknown/x.json", "", "Pages/Home.json"])
def test_classify_unknown(path):
    assert classify(path) is None


@pytest.mark.parametrize(
    "path,expected",
    [
        ("pages/a.json", "a"),
        ("pages/a.xml", "a"),
        ("datasources/my db.json", "my db"),
        ("files/report (1).pdf.skuid.json", "report (1).pdf"),
        ("files/report.pdf", "report.pdf"),
        ("site/site.json", "site"),
        ("site/logo/brand.png.skuid.json", "logo/brand.png"),
        ("site/favicon/favicon.ico", "favicon/favicon.ico"),
        ("componentpacks/mypack/runtime.js", "mypack"),
        ("themes/dark.inline.css", "dark"),
        ("themes/dark.json", "dark"),
    ],
)
def test_entity_name(path, expected):
    assert entity_name(path) == expected


@pytest.mark.parametrize(
    "path",
    [
        "pages/a.txt",
        "pages/nested/a.json",
        "componentpacks/loose.json",
        "site/logo/brand.bmp",
        "site/other.json",
        "datasources/bad$name.json",
        "README.md",
    ],
)
def test_entity_name_rejects(path):
    assert entity_name(path) is None
