"""アイランド (クライアント側スクリプト) のインクリメンタルビルダー。"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Mapping

from slugify import slugify

from .bundler import Bundler, BundlerError, Optimizer
from .cache import IslandRecord
from .compiler import resolve_specifier
from .config import BuildConfig
from .css import CssEntry, compose_collected_css, minify_css, read_css_file
from .hashing import short_hash
from .render import island_class_name
from .snapshot import compute_snapshot, is_fresh

logger = logging.getLogger(__name__)

ISLANDS_URL_PREFIX = "/islands/"


@dataclass(slots=True)
class IslandBuildResult:
    """アイランドビルドの結果。`paths` と `css` はソース文字列から URL への対応。"""

    paths: dict[str, str] = field(default_factory=dict)
    css: dict[str, str] = field(default_factory=dict)
    cache: dict[str, IslandRecord] = field(default_factory=dict)
    changed_sources: set[str] = field(default_factory=set)
    stale_urls: set[str] = field(default_factory=set)
    built: list[str] = field(default_factory=list)
    reused: list[str] = field(default_factory=list)
    written: list[Path] = field(default_factory=list)

    def register(self, src: str, record: IslandRecord) -> None:
        self.cache[src] = record
        self.paths[src] = record.js_path
        if record.css_path:
            self.css[src] = record.css_path


def resolve_island_source(src: str, project_root: Path) -> Path | None:
    """アイランドのソース指定子を実ファイルへ解決します。見つからなければ None。"""

    candidate = resolve_specifier(src, project_root, project_root)
    if not candidate.is_file():
        return None
    return candidate.resolve()


def island_footer(class_name: str, global_name: str = "_island") -> str:
    """マーカークラスを持つ全要素に対して default エクスポートを呼び出すフッター。"""

    return (
        f'if({global_name}&&typeof {global_name}.default==="function"){{'
        f"const nodes=document.querySelectorAll('.{class_name}');"
        f"for(const el of nodes){{{global_name}.default(el)}}}}"
    )


def url_to_path(output_root: Path, url: str) -> Path:
    return output_root / url.lstrip("/")


class IslandBuilder:
    """到達可能なアイランドを再利用またはバンドルし、新しいキャッシュレコードを作ります。"""

    def __init__(self, config: BuildConfig, bundler: Bundler, optimizer: Optimizer | None = None) -> None:
        self.config = config
        self._bundler = bundler
        self._optimizer = optimizer
        self._logger = logging.getLogger(self.__class__.__module__ + "." + self.__class__.__name__)

    async def build(self, sources: Iterable[str], previous: Mapping[str, IslandRecord]) -> IslandBuildResult:
        result = IslandBuildResult()
        ordered = sorted(set(sources))
        names: dict[str, str] = {}
        pending: list[str] = []

        for src in ordered:
            record = previous.get(src)
            if record is not None and self._reusable(record):
                result.register(src, record)
                result.reused.append(src)
                names.setdefault(_name_of(record.js_path), src)
            else:
                pending.append(src)

        for index, src in enumerate(pending, start=1):
            record = previous.get(src)
            try:
                fresh = await self._build_one(src, names, result)
            except Exception as exc:
                self._logger.error(
                    "アイランドのビルドに失敗しました (%d/%d): %s (%s)",
                    index,
                    len(pending),
                    src,
                    exc,
                    exc_info=not isinstance(exc, BundlerError),
                )
                if record is not None:
                    result.register(src, record)
                else:
                    result.changed_sources.add(src)
                continue
            result.changed_sources.add(src)
            if fresh is None:
                continue
            result.register(src, fresh)
            result.built.append(src)
            if record is not None:
                new_urls = set(fresh.output_urls())
                result.stale_urls.update(url for url in record.output_urls() if url not in new_urls)
            self._logger.info("アイランドをビルドしました (%d/%d): %s", index, len(pending), fresh.js_path)
        return result

    def _reusable(self, record: IslandRecord) -> bool:
        if not is_fresh(record.dep_hashes):
            return False
        root = self.config.output.root
        return all(url_to_path(root, url).is_file() for url in record.output_urls())

    async def _build_one(self, src: str, names: dict[str, str], result: IslandBuildResult) -> IslandRecord | None:
        root = self.config.project_root
        entry = resolve_island_source(src, root)
        if entry is None:
            self._logger.warning("アイランドのソースが見つかりません: %s", src)
            return None

        production = self.config.production
        name = self._output_name(src, entry, names)
        islands_dir = self.config.output.islands_dir
        islands_dir.mkdir(parents=True, exist_ok=True)
        js_file = islands_dir / f"{name}.js"
        footer = island_footer(island_class_name(src), self.config.islands.global_name)
        bundle = await self._bundler.bundle_island(entry, js_file, footer=footer, production=production)
        result.written.append(js_file)

        if production and self._optimizer is not None:
            outcome = await self._optimizer.optimize(js_file)
            if not outcome.ok:
                self._logger.warning("最適化をスキップしました (%s): %s", js_file.name, outcome.degraded)

        css_url: str | None = None
        css_inputs = [path for path in bundle.inputs if path.suffix.lower() == ".css"]
        if css_inputs:
            entries = [CssEntry(path=path, content=read_css_file(path)) for path in css_inputs]
            css_text = compose_collected_css(
                entries,
                self.config.css.component_markers,
                self.config.css.component_layer,
            ).strip()
            if production:
                css_text = minify_css(css_text, production=True)
            if css_text:
                css_name = f"{name}.{short_hash(css_text)}" if production else name
                css_file = islands_dir / f"{css_name}.css"
                css_file.write_text(css_text, encoding="utf-8")
                result.written.append(css_file)
                css_url = f"{ISLANDS_URL_PREFIX}{css_file.name}"

        dependencies: list[Path] = [entry]
        for path in bundle.inputs:
            if path not in dependencies:
                dependencies.append(path)
        return IslandRecord(
            src_path=str(entry),
            dep_hashes=compute_snapshot(dependencies, root),
            js_path=f"{ISLANDS_URL_PREFIX}{js_file.name}",
            css_path=css_url,
        )

    def _output_name(self, src: str, entry: Path, names: dict[str, str]) -> str:
        name = slugify(entry.stem) or "island"
        if self.config.production:
            name = f"{name}.{short_hash(entry.read_bytes())}"
        owner = names.get(name)
        if owner is not None and owner != src:
            name = f"{name}.{short_hash(src)}"
        names[name] = src
        return name


def _name_of(url: str) -> str:
    filename = url.rsplit("/", 1)[-1]
    return filename[: -len(".js")] if filename.endswith(".js") else filename
