from __future__ import annotations

import json
import logging
from pathlib import Path

from archipel.cache import CACHE_VERSION, Cache, IslandRecord, PageRecord, load_cache, save_cache
from archipel.config import BuildProfile


def _profile(mode: str = "production", purge: bool = True) -> BuildProfile:
    return BuildProfile(mode=mode, purge=purge, class_keep_hash="keep")


def test_save_and_load_preserves_records(tmp_path: Path) -> None:
    cache_path = tmp_path / ".archipel-cache.json"
    cache = Cache.empty(_profile())
    cache.pages["/p/index.py"] = PageRecord(
        dep_hashes={"/p/index.py": "abc"},
        island_sources=["./counter.ts"],
        html_path="/index.html",
        css_path="/index.1234abcd.css",
    )
    cache.islands["./counter.ts"] = IslandRecord(
        src_path="/p/counter.ts",
        dep_hashes={"/p/counter.ts": "def"},
        js_path="/islands/counter.ffff0000.js",
    )

    save_cache(cache_path, cache)
    loaded = load_cache(cache_path, _profile())

    assert loaded == cache
    raw = json.loads(cache_path.read_text(encoding="utf-8"))
    assert raw["version"] == CACHE_VERSION
    assert raw["classKeepHash"] == "keep"
    assert raw["pages"]["/p/index.py"]["islandSources"] == ["./counter.ts"]
    assert "cssPath" not in raw["islands"]["./counter.ts"]
    assert list(tmp_path.iterdir()) == [cache_path]


def test_load_cache_discards_mismatched_profile(tmp_path: Path, caplog) -> None:
    cache_path = tmp_path / ".archipel-cache.json"
    save_cache(cache_path, Cache.empty(_profile(mode="development", purge=False)))

    with caplog.at_level(logging.INFO):
        loaded = load_cache(cache_path, _profile())

    assert loaded.mode == "production"
    assert loaded.pages == {}
    assert "キャッシュを破棄します" in caplog.text


def test_load_cache_discards_old_version_and_corrupt_files(tmp_path: Path) -> None:
    cache_path = tmp_path / ".archipel-cache.json"
    cache_path.write_text(
        json.dumps(
            {
                "version": 0,
                "mode": "production",
                "purge": True,
                "classKeepHash": "keep",
                "pages": {"/p/index.py": {"depHashes": {}, "islandSources": [], "htmlPath": "/index.html"}},
                "islands": {},
            }
        ),
        encoding="utf-8",
    )
    assert load_cache(cache_path, _profile()).pages == {}

    cache_path.write_text("{not json", encoding="utf-8")
    assert load_cache(cache_path, _profile()).version == CACHE_VERSION

    cache_path.write_text(json.dumps({"version": 1, "pages": {"x": {}}}), encoding="utf-8")
    assert load_cache(cache_path, _profile()).pages == {}


def test_load_cache_discards_records_that_are_not_objects(tmp_path: Path) -> None:
    cache_path = tmp_path / ".archipel-cache.json"
    base = {"version": CACHE_VERSION, "mode": "production", "purge": True, "classKeepHash": "keep"}
    cache_path.write_text(json.dumps({**base, "pages": {"/x/index.py": "oops"}, "islands": {}}), encoding="utf-8")

    loaded = load_cache(cache_path, _profile())

    assert loaded == Cache.empty(_profile())

    cache_path.write_text(json.dumps({**base, "pages": {}, "islands": {"./counter.ts": ["x"]}}), encoding="utf-8")
    assert load_cache(cache_path, _profile()).islands == {}
