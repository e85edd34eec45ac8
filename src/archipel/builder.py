"""ページ・アイランド・CSS のインクリメンタルビルドを統括する中核オーケストレーター。"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Sequence

import brotli

from .bundler import Bundler, ClosureOptimizer, EsbuildBundler, NullOptimizer, Optimizer
from .cache import Cache, PageRecord, load_cache, save_cache
from .config import BuildConfig
from .css import extract_classes_from_html, optimize_css
from .document import build_document, script_tags, stylesheet_links, write_document
from .hashing import short_hash
from .islands import IslandBuilder, IslandBuildResult, url_to_path
from .pages import PageBuilder, RenderedPage, discover_pages, page_html_path, page_route
from .snapshot import is_fresh

COMPRESSIBLE_SUFFIXES = frozenset({".js", ".css"})
SIBLING_SUFFIXES = (".map", ".br")


class BuildError(RuntimeError):
    """ビルドを継続できない致命的なエラーの基底クラス。"""


class OutputDirectoryError(BuildError):
    """出力ディレクトリを作成できなかった場合に送出される例外。"""

    def __init__(self, path: Path, reason: str) -> None:
        super().__init__(f"出力ディレクトリを作成できません: {path} ({reason})")
        self.path = path
        self.reason = reason


class NoPagesFoundError(BuildError):
    """ビルド対象のページが 1 件も見つからなかった場合に送出される例外。"""

    def __init__(self, project_root: Path) -> None:
        super().__init__(f"ページが見つかりません: {project_root / 'src'} または {project_root / 'pages'}")
        self.project_root = project_root


@dataclass(slots=True)
class BuildResult:
    pages: int
    rebuilt: list[str] = field(default_factory=list)
    reused: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    islands_built: list[str] = field(default_factory=list)
    islands_reused: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    compressed: list[str] = field(default_factory=list)


class ArchipelBuilder:
    """キャッシュに基づいて変更のあったページとアイランドだけを再ビルドするパイプライン。"""

    def __init__(
        self,
        config: BuildConfig,
        bundler: Bundler | None = None,
        optimizer: Optimizer | None = None,
        page_builder: PageBuilder | None = None,
    ) -> None:
        self.config = config
        islands = config.islands
        self._bundler = bundler or EsbuildBundler(
            islands.bundler_command,
            config.project_root,
            global_name=islands.global_name,
            timeout=islands.bundle_timeout,
        )
        if optimizer is None:
            optimizer = (
                ClosureOptimizer(islands.optimizer_command, config.project_root)
                if islands.optimize
                else NullOptimizer()
            )
        self._optimizer = optimizer
        self._page_builder = page_builder or PageBuilder(config.project_root, config.css)
        self._logger = logging.getLogger(self.__class__.__module__ + "." + self.__class__.__name__)
        self._summary_base = {
            "project_root": str(config.project_root),
            "output_dir": str(config.output.root),
            "mode": config.mode,
            "created_at": config.created_at.isoformat(),
        }
        self._summary_path = config.logs_dir / "build_summary.json"

    async def build(self) -> BuildResult:
        config = self.config
        self._prepare_output()
        page_paths = discover_pages(config.project_root)
        self._update_summary("discovered", total_pages=len(page_paths))
        if not page_paths:
            raise NoPagesFoundError(config.project_root)
        self._logger.info("ページを %d 件検出しました。", len(page_paths))

        previous = load_cache(config.cache_path, config.profile)
        next_cache = Cache.empty(config.profile)
        result = BuildResult(pages=len(page_paths))

        candidates: list[Path] = []
        stale_pages: list[Path] = []
        for path in page_paths:
            record = previous.pages.get(str(path))
            if record is not None and is_fresh(record.dep_hashes):
                candidates.append(path)
            else:
                stale_pages.append(path)
        self._update_summary("classified", rebuild=len(stale_pages), candidates=len(candidates))
        self._logger.info("再ビルド対象 %d 件 / 再利用候補 %d 件", len(stale_pages), len(candidates))

        rendered = await self._render_pages(stale_pages, result)

        sources: list[str] = []
        for page in rendered.values():
            sources.extend(page.island_sources)
        for path in (*candidates, *(Path(key) for key in result.failed)):
            record = previous.pages.get(str(path))
            if record is not None:
                sources.extend(record.island_sources)

        island_builder = IslandBuilder(config, self._bundler, self._optimizer)
        islands = await island_builder.build(sources, previous.islands)
        result.islands_built = list(islands.built)
        result.islands_reused = list(islands.reused)
        self._update_summary(
            "islands",
            reachable=len(set(sources)),
            built=len(islands.built),
            reused=len(islands.reused),
            changed=len(islands.changed_sources),
        )

        promoted: list[Path] = []
        for path in candidates:
            record = previous.pages[str(path)]
            if any(src in islands.changed_sources for src in record.island_sources) or not self._outputs_exist(record):
                promoted.append(path)
                continue
            next_cache.pages[str(path)] = record
            result.reused.append(str(path))
        if promoted:
            self._logger.info("アイランドの変更または出力の欠落により %d 件を再描画します。", len(promoted))
            rendered.update(await self._render_pages(promoted, result))

        for key in result.failed:
            record = previous.pages.get(key)
            if record is not None:
                next_cache.pages[key] = record

        written: list[Path] = list(islands.written)
        stale_urls: set[str] = set(islands.stale_urls)
        ordered = sorted(rendered.items())
        for index, (key, page) in enumerate(ordered, start=1):
            try:
                record, page_files = await asyncio.to_thread(self._write_page, page, islands)
            except Exception as exc:
                self._logger.error("ページの書き出しに失敗しました: %s (%s)", page.path.name, exc, exc_info=exc)
                result.failed.append(key)
                previous_record = previous.pages.get(key)
                if previous_record is not None:
                    next_cache.pages[key] = previous_record
                continue
            written.extend(page_files)
            previous_record = previous.pages.get(key)
            if previous_record is not None and previous_record.css_path and previous_record.css_path != record.css_path:
                stale_urls.add(previous_record.css_path)
            next_cache.pages[key] = record
            result.rebuilt.append(key)
            self._logger.info("HTML を出力しました (%d/%d): %s", index, len(ordered), record.html_path)
            self._update_summary("writing", written=index, total=len(ordered), last_page=record.html_path)

        next_cache.islands = dict(islands.cache)
        _drop_incomplete_pages(next_cache)

        discovered = {str(path) for path in page_paths}
        for key, record in previous.pages.items():
            if key not in discovered or key in result.skipped:
                stale_urls.update(_page_urls(record))
        for src, record in previous.islands.items():
            if src not in next_cache.islands:
                stale_urls.update(record.output_urls())
        result.deleted = self._collect_garbage(stale_urls, next_cache)

        save_cache(config.cache_path, next_cache)

        if config.production and config.compress:
            result.compressed = [str(path) for path in compress_assets(written)]

        self._update_summary(
            "completed",
            pages=result.pages,
            rebuilt=len(result.rebuilt),
            reused=len(result.reused),
            skipped=len(result.skipped),
            failed=len(result.failed),
            deleted=len(result.deleted),
            cache=str(config.cache_path),
        )
        if result.failed:
            samples = ", ".join(Path(key).name for key in result.failed[:3])
            self._logger.warning("ビルドに失敗したページが %d 件あります。サンプル: %s", len(result.failed), samples)
        self._logger.info(
            "ビルドが完了しました (再ビルド %d 件 / 再利用 %d 件)。", len(result.rebuilt), len(result.reused)
        )
        return result

    async def _render_pages(self, paths: Sequence[Path], result: BuildResult) -> dict[str, RenderedPage]:
        rendered: dict[str, RenderedPage] = {}
        total = len(paths)
        for index, path in enumerate(paths, start=1):
            key = str(path)
            try:
                page = await asyncio.to_thread(self._page_builder.render_page, path)
            except Exception as exc:
                self._logger.error(
                    "ページの描画に失敗しました (%d/%d): %s (%s)", index, total, path.name, exc, exc_info=exc
                )
                result.failed.append(key)
                continue
            if page is None:
                result.skipped.append(key)
                continue
            self._logger.info("描画中 (%d/%d): %s", index, total, path.name)
            rendered[key] = page
        return rendered

    def _write_page(self, page: RenderedPage, islands: IslandBuildResult) -> tuple[PageRecord, list[Path]]:
        output_root = self.config.output.root
        written: list[Path] = []
        css_url: str | None = None
        if page.css:
            outcome = optimize_css(
                page.css,
                production=self.config.production,
                purge=self.config.should_purge,
                used_classes=extract_classes_from_html(page.html),
                class_keep=self.config.css.class_keep,
            )
            if not outcome.ok:
                self._logger.warning("CSS のパージをスキップしました (%s): %s", page.path.name, outcome.degraded)
            css_text = outcome.value
            if css_text.strip():
                name = page_route(page.path)
                if self.config.production:
                    name = f"{name}.{short_hash(css_text)}"
                css_file = output_root / f"{name}.css"
                css_file.write_text(css_text, encoding="utf-8")
                written.append(css_file)
                css_url = f"/{css_file.name}"

        scripts = [islands.paths[src] for src in page.island_sources if src in islands.paths]
        links = [css_url] if css_url else []
        links.extend(islands.css[src] for src in page.island_sources if src in islands.css)
        html_file = page_html_path(output_root, page.path)
        document = build_document(
            page.html,
            page.meta,
            scripts=script_tags(scripts),
            css_links=stylesheet_links(links),
        )
        write_document(html_file, document)
        record = PageRecord(
            dep_hashes=page.dep_hashes,
            island_sources=list(page.island_sources),
            html_path="/" + html_file.relative_to(output_root).as_posix(),
            css_path=css_url,
        )
        return record, written

    def _outputs_exist(self, record: PageRecord) -> bool:
        root = self.config.output.root
        return all(url_to_path(root, url).is_file() for url in _page_urls(record))

    def _collect_garbage(self, stale_urls: Iterable[str], cache: Cache) -> list[str]:
        live: set[str] = set()
        for record in cache.pages.values():
            live.update(_page_urls(record))
        for record in cache.islands.values():
            live.update(record.output_urls())
        root = self.config.output.root
        deleted: list[str] = []
        for url in sorted(set(stale_urls) - live):
            target = url_to_path(root, url)
            if not target.resolve().is_relative_to(root.resolve()):
                self._logger.warning("出力ディレクトリ外のため削除しません: %s", url)
                continue
            removed = False
            for path in (target, *(target.with_name(target.name + suffix) for suffix in SIBLING_SUFFIXES)):
                if path.is_file():
                    path.unlink()
                    removed = True
            if removed:
                deleted.append(url)
                self._logger.info("不要になった出力を削除しました: %s", url)
            parent = target.parent
            if parent not in (root, self.config.output.islands_dir) and parent.is_dir() and not any(parent.iterdir()):
                parent.rmdir()
        return deleted

    def _prepare_output(self) -> None:
        root = self.config.output.root
        if root.exists() and not root.is_dir():
            raise OutputDirectoryError(root, "ディレクトリではありません")
        try:
            root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise OutputDirectoryError(root, str(exc)) from exc
        self._summary_path.parent.mkdir(parents=True, exist_ok=True)
        self._summary_path.write_text("", encoding="utf-8")

    def _update_summary(self, stage: str, **extra: Any) -> None:
        payload = dict(self._summary_base)
        payload.update(extra)
        payload["stage"] = stage
        self._summary_path.parent.mkdir(parents=True, exist_ok=True)
        with self._summary_path.open("a", encoding="utf-8") as stream:
            stream.write(json.dumps(payload, ensure_ascii=False))
            stream.write("\n")


def compress_assets(paths: Iterable[Path]) -> list[Path]:
    """JS/CSS を Brotli で圧縮し、`.br` を隣に書き出します。"""

    compressed: list[Path] = []
    seen: set[Path] = set()
    for path in paths:
        if path in seen or path.suffix.lower() not in COMPRESSIBLE_SUFFIXES or not path.is_file():
            continue
        seen.add(path)
        target = path.with_name(path.name + ".br")
        target.write_bytes(brotli.compress(path.read_bytes(), mode=brotli.MODE_TEXT, quality=11))
        compressed.append(target)
    return compressed


def _page_urls(record: PageRecord) -> list[str]:
    return [url for url in (record.html_path, record.css_path) if url]


def _drop_incomplete_pages(cache: Cache) -> None:
    # 参照するアイランドのレコードが揃わないページは次回に再描画させる。
    incomplete = [
        key
        for key, record in cache.pages.items()
        if any(src not in cache.islands for src in record.island_sources)
    ]
    for key in incomplete:
        del cache.pages[key]


def build_site(config: BuildConfig) -> BuildResult:
    builder = ArchipelBuilder(config)
    return asyncio.run(builder.build())
