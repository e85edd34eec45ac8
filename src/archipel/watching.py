"""ファイル監視・デバウンス・ビルドスケジューリング。

監視タスクは変更セットを `asyncio.Queue` に積み、`debounced()` が静穏期間ごとに
まとめ、`BuildScheduler` のワーカーが 1 度に 1 つだけビルドを実行します。
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, Sequence

from watchfiles import Change, awatch

from .builder import ArchipelBuilder
from .config import BuildConfig

logger = logging.getLogger(__name__)

WATCHED_DIRECTORIES = frozenset({"src", "pages"})
WATCHED_FILES = frozenset({"tsconfig.json", "pyproject.toml"})
IGNORED_PARTS = frozenset({"__pycache__", "node_modules"})
SHARED_PACKAGE_ENTRIES = ("src", "dist", "bin", "styles.css")


async def debounced(queue: asyncio.Queue[set[Path]], quiet: float) -> AsyncIterator[set[Path]]:
    """キューに届いた変更を、`quiet` 秒間新しい変更が来なくなるまで 1 バッチにまとめます。"""

    while True:
        batch = set(await queue.get())
        while True:
            try:
                more = await asyncio.wait_for(queue.get(), timeout=quiet)
            except asyncio.TimeoutError:
                break
            batch.update(more)
        yield batch


async def pump_changes(
    roots: Sequence[Path],
    queue: asyncio.Queue[set[Path]],
    *,
    watch_filter: Callable[[Change, str], bool] | None = None,
    stop_event: asyncio.Event | None = None,
) -> None:
    """watchfiles の変更通知をパス集合としてキューへ転送します。"""

    existing = [str(root) for root in roots if root.exists()]
    if not existing:
        logger.warning("監視対象のディレクトリがありません。")
        return
    async for changes in awatch(*existing, watch_filter=watch_filter, stop_event=stop_event, debounce=50):
        paths = {Path(raw) for _, raw in changes}
        if paths:
            await queue.put(paths)


def shared_package_targets(project_root: Path, packages: Iterable[str]) -> list[Path]:
    """インストール済み共有パッケージの監視対象をシンボリックリンク解決後のパスで返します。"""

    targets: list[Path] = []
    for package in packages:
        location = project_root / package
        if not location.exists():
            continue
        real = location.resolve()
        for entry in SHARED_PACKAGE_ENTRIES:
            candidate = real / entry
            if candidate.exists() and candidate not in targets:
                targets.append(candidate)
    return targets


class SourceFilter:
    """ビルド入力となるソースの変更だけを通す watchfiles 用フィルター。"""

    def __init__(self, project_root: Path, output_root: Path, shared_roots: Sequence[Path] = ()) -> None:
        self._root = project_root.resolve()
        self._output = output_root.resolve()
        self._shared = [root.resolve() for root in shared_roots]

    def __call__(self, change: Change, path: str) -> bool:
        candidate = Path(path)
        for shared in self._shared:
            if candidate == shared or candidate.is_relative_to(shared):
                return not _has_ignored_part(candidate.relative_to(shared).parts)
        if candidate.is_relative_to(self._output):
            return False
        if not candidate.is_relative_to(self._root):
            return False
        parts = candidate.relative_to(self._root).parts
        if not parts or _has_ignored_part(parts):
            return False
        if parts[0] in WATCHED_DIRECTORIES:
            return True
        return len(parts) == 1 and parts[0] in WATCHED_FILES


def _has_ignored_part(parts: Sequence[str]) -> bool:
    return any(part.startswith(".") or part in IGNORED_PARTS for part in parts)


class BuildScheduler:
    """同時に 1 つだけビルドを走らせ、ビルド中の要求は 1 回の追加ビルドにまとめます。"""

    def __init__(self, build: Callable[[], Awaitable[Any]]) -> None:
        self._build = build
        self._wakeup = asyncio.Event()
        self.building = False
        self.queued = False
        self.completed = 0
        self._logger = logging.getLogger(self.__class__.__module__ + "." + self.__class__.__name__)

    def request(self) -> None:
        if self.building:
            self.queued = True
        else:
            self._wakeup.set()

    async def run(self) -> None:
        while True:
            await self._wakeup.wait()
            self._wakeup.clear()
            await self._run_once()
            while self.queued:
                self.queued = False
                await self._run_once()

    async def _run_once(self) -> None:
        self.building = True
        try:
            await self._build()
        except Exception:
            self._logger.exception("再ビルドに失敗しました。")
        finally:
            self.building = False
            self.completed += 1


async def watch_sources(config: BuildConfig, scheduler: BuildScheduler, stop_event: asyncio.Event | None = None) -> None:
    """ソースを監視し、静穏期間ごとにスケジューラへビルドを要求します。"""

    shared = shared_package_targets(config.project_root, config.serve.shared_packages)
    queue: asyncio.Queue[set[Path]] = asyncio.Queue()
    watch_filter = SourceFilter(config.project_root, config.output.root, shared)
    watcher = asyncio.create_task(
        pump_changes([config.project_root, *shared], queue, watch_filter=watch_filter, stop_event=stop_event)
    )
    logger.info("ソースの監視を開始しました: %s", config.project_root)
    try:
        async for batch in debounced(queue, config.serve.build_debounce):
            sample = ", ".join(sorted(path.name for path in batch)[:3])
            logger.info("ソースの変更を検知しました (%d 件): %s", len(batch), sample)
            scheduler.request()
    finally:
        watcher.cancel()


async def run_watch(config: BuildConfig) -> None:
    """初回ビルドの後、ソース変更のたびに再ビルドします。"""

    async def rebuild() -> None:
        await ArchipelBuilder(config).build()

    scheduler = BuildScheduler(rebuild)
    worker = asyncio.create_task(scheduler.run())
    scheduler.request()
    try:
        await watch_sources(config, scheduler)
    finally:
        worker.cancel()
