"""ビルド単位の依存ファイルスナップショット。"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, Mapping, Optional

from .hashing import hash_file

DependencySnapshot = dict[str, Optional[str]]


def _absolute(path: str | Path, root: Path | None) -> Path:
    candidate = Path(path)
    if not candidate.is_absolute() and root is not None:
        candidate = root / candidate
    return candidate.resolve()


def compute_snapshot(paths: Iterable[str | Path], root: Path | None = None) -> DependencySnapshot:
    """各パスを独立にハッシュし、絶対パスをキーとする辞書を返します。"""

    snapshot: DependencySnapshot = {}
    for path in paths:
        absolute = _absolute(path, root)
        snapshot[str(absolute)] = hash_file(absolute)
    return snapshot


def refresh_snapshot(previous: Mapping[str, str | None]) -> DependencySnapshot:
    """以前のスナップショットと同じキー集合で現在の状態を計算し直します。"""

    return {path: hash_file(path) for path in previous}


def snapshots_equal(a: Mapping[str, str | None] | None, b: Mapping[str, str | None] | None) -> bool:
    """キー集合とすべての値が一致する場合のみ True を返します。"""

    left = a or {}
    right = b or {}
    if left.keys() != right.keys():
        return False
    return all(right[path] == digest for path, digest in left.items())


def is_fresh(previous: Mapping[str, str | None] | None) -> bool:
    if not previous:
        return False
    return snapshots_equal(previous, refresh_snapshot(previous))
