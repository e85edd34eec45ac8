from __future__ import annotations

from pathlib import Path

from archipel.hashing import hash_bytes, hash_file, short_hash
from archipel.snapshot import compute_snapshot, is_fresh, refresh_snapshot, snapshots_equal


def test_hash_file_returns_none_for_missing_file(tmp_path: Path) -> None:
    target = tmp_path / "page.py"
    assert hash_file(target) is None

    target.write_bytes(b"render = 'x'")
    assert hash_file(target) == hash_bytes(b"render = 'x'")
    assert len(short_hash("./counter.ts")) == 8


def test_compute_snapshot_resolves_relative_paths_against_root(tmp_path: Path) -> None:
    (tmp_path / "a.css").write_text(".a{}", encoding="utf-8")

    snapshot = compute_snapshot(["a.css", tmp_path / "missing.css"], tmp_path)

    assert snapshot[str((tmp_path / "a.css").resolve())] == hash_bytes(b".a{}")
    assert snapshot[str((tmp_path / "missing.css").resolve())] is None


def test_snapshot_equality_ignores_order_but_not_keys() -> None:
    left = {"/a": "1", "/b": "2"}
    right = {"/b": "2", "/a": "1"}

    assert snapshots_equal(left, right)
    assert not snapshots_equal(left, {"/a": "1"})
    assert not snapshots_equal(left, {"/a": "1", "/b": "3"})
    assert not snapshots_equal({"/a": None}, {"/a": "1"})


def test_is_fresh_detects_edits_and_deletions(tmp_path: Path) -> None:
    page = tmp_path / "index.py"
    page.write_text("render = '<p>a</p>'", encoding="utf-8")
    snapshot = compute_snapshot([page])

    assert is_fresh(snapshot)
    assert refresh_snapshot(snapshot) == snapshot

    page.write_text("render = '<p>b</p>'", encoding="utf-8")
    assert not is_fresh(snapshot)

    page.unlink()
    assert not is_fresh(snapshot)
    assert not is_fresh({})
