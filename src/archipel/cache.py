"""ビルド結果を記録する永続キャッシュ (マニフェスト)。"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from .config import BuildProfile
from .snapshot import DependencySnapshot

logger = logging.getLogger(__name__)

CACHE_VERSION = 1


@dataclass(slots=True)
class PageRecord:
    dep_hashes: DependencySnapshot
    island_sources: list[str]
    html_path: str
    css_path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "depHashes": dict(self.dep_hashes),
            "islandSources": list(self.island_sources),
            "htmlPath": self.html_path,
        }
        if self.css_path is not None:
            payload["cssPath"] = self.css_path
        return payload

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "PageRecord":
        return cls(
            dep_hashes=_read_snapshot(raw.get("depHashes")),
            island_sources=[str(src) for src in raw.get("islandSources") or []],
            html_path=str(raw["htmlPath"]),
            css_path=_optional_str(raw.get("cssPath")),
        )


@dataclass(slots=True)
class IslandRecord:
    src_path: str
    dep_hashes: DependencySnapshot
    js_path: str
    css_path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "srcPath": self.src_path,
            "depHashes": dict(self.dep_hashes),
            "jsPath": self.js_path,
        }
        if self.css_path is not None:
            payload["cssPath"] = self.css_path
        return payload

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "IslandRecord":
        return cls(
            src_path=str(raw["srcPath"]),
            dep_hashes=_read_snapshot(raw.get("depHashes")),
            js_path=str(raw["jsPath"]),
            css_path=_optional_str(raw.get("cssPath")),
        )

    def output_urls(self) -> list[str]:
        return [url for url in (self.js_path, self.css_path) if url]


@dataclass(slots=True)
class Cache:
    """ページとアイランドの最終ビルド状態。"""

    version: int
    mode: str
    purge: bool
    class_keep_hash: str
    pages: dict[str, PageRecord] = field(default_factory=dict)
    islands: dict[str, IslandRecord] = field(default_factory=dict)

    @classmethod
    def empty(cls, profile: BuildProfile) -> "Cache":
        return cls(
            version=CACHE_VERSION,
            mode=profile.mode,
            purge=profile.purge,
            class_keep_hash=profile.class_keep_hash,
        )

    def matches(self, profile: BuildProfile) -> bool:
        return (
            self.version == CACHE_VERSION
            and self.mode == profile.mode
            and self.purge == profile.purge
            and self.class_keep_hash == profile.class_keep_hash
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "mode": self.mode,
            "purge": self.purge,
            "classKeepHash": self.class_keep_hash,
            "pages": {path: record.to_dict() for path, record in sorted(self.pages.items())},
            "islands": {src: record.to_dict() for src, record in sorted(self.islands.items())},
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, indent="\t")

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "Cache":
        pages = raw.get("pages") or {}
        islands = raw.get("islands") or {}
        if not isinstance(pages, Mapping) or not isinstance(islands, Mapping):
            raise ValueError("pages / islands はオブジェクトである必要があります")
        for entry in (*pages.values(), *islands.values()):
            if not isinstance(entry, Mapping):
                raise ValueError("キャッシュのレコードがオブジェクトではありません")
        return cls(
            version=raw.get("version"),
            mode=raw.get("mode"),
            purge=raw.get("purge"),
            class_keep_hash=raw.get("classKeepHash"),
            pages={str(path): PageRecord.from_dict(entry) for path, entry in pages.items()},
            islands={str(src): IslandRecord.from_dict(entry) for src, entry in islands.items()},
        )


def load_cache(path: Path, profile: BuildProfile) -> Cache:
    """キャッシュを読み込みます。欠落・破損・プロファイル不一致の場合は空のキャッシュを返します。"""

    if not path.exists():
        return Cache.empty(profile)
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(raw, Mapping):
            raise ValueError("キャッシュのルートがオブジェクトではありません")
        cache = Cache.from_dict(raw)
    except (OSError, ValueError, KeyError, TypeError) as exc:
        logger.info("キャッシュを読み込めないため破棄します (%s): %s", path.name, exc)
        return Cache.empty(profile)
    if not cache.matches(profile):
        logger.info(
            "ビルド設定が変わったためキャッシュを破棄します (version=%s, mode=%s, purge=%s)",
            cache.version,
            cache.mode,
            cache.purge,
        )
        return Cache.empty(profile)
    return cache


def save_cache(path: Path, cache: Cache) -> None:
    """キャッシュ全体を一時ファイル経由で原子的に書き出します。"""

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as stream:
            stream.write(cache.to_json())
        os.replace(temp_name, path)
    except BaseException:
        Path(temp_name).unlink(missing_ok=True)
        raise


def _read_snapshot(raw: Any) -> DependencySnapshot:
    if not isinstance(raw, Mapping):
        return {}
    return {str(path): (str(digest) if digest is not None else None) for path, digest in raw.items()}


def _optional_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)
