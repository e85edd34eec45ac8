"""ページモジュールを描画して HTML・アイランド参照・CSS を得るビルダー。"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from .compiler import PageCompiler
from .config import CssConfig
from .css import compose_collected_css
from .render import RenderContext, render_to_html
from .snapshot import DependencySnapshot, compute_snapshot

logger = logging.getLogger(__name__)

RENDER_ATTRIBUTE = "render"
META_ATTRIBUTE = "meta"
PAGE_SUFFIXES = frozenset({".py"})
PAGE_DIRECTORIES = ("src", "pages")


@dataclass(slots=True)
class RenderedPage:
    """1 ページ分の描画結果。"""

    path: Path
    html: str
    meta: dict[str, Any]
    island_sources: list[str]
    css: str
    dep_hashes: DependencySnapshot = field(default_factory=dict)


def discover_pages(project_root: Path) -> list[Path]:
    """`src/` と `pages/` 直下のページモジュールを列挙します。"""

    pages: list[Path] = []
    for directory in PAGE_DIRECTORIES:
        base = project_root / directory
        if not base.is_dir():
            continue
        for path in sorted(base.iterdir()):
            if not path.is_file() or path.suffix.lower() not in PAGE_SUFFIXES:
                continue
            if path.name.startswith((".", "_")):
                continue
            pages.append(path.resolve())
    return pages


def page_route(page_path: Path) -> str:
    return page_path.stem


def page_html_path(output_root: Path, page_path: Path) -> Path:
    route = page_route(page_path)
    if route == "index":
        return output_root / "index.html"
    return output_root / route / "index.html"


class PageBuilder:
    """ページを 1 件ずつコンパイル・実行・描画します。"""

    def __init__(self, project_root: Path, css_config: CssConfig, compiler: PageCompiler | None = None) -> None:
        self._root = project_root
        self._css_config = css_config
        self._compiler = compiler or PageCompiler(project_root)
        self._logger = logging.getLogger(self.__class__.__module__ + "." + self.__class__.__name__)

    def render_page(self, page_path: Path) -> RenderedPage | None:
        """ページを描画します。描画可能な `render` を持たない場合は None を返します。"""

        context = RenderContext()
        compiled = self._compiler.compile(page_path)
        module = compiled.module
        if not hasattr(module, RENDER_ATTRIBUTE):
            self._logger.warning("%s をスキップします: render が定義されていません", page_path.name)
            return None
        entry = getattr(module, RENDER_ATTRIBUTE)
        tree = entry(context) if callable(entry) else entry
        html = render_to_html(tree)
        css = compose_collected_css(
            compiled.css_entries,
            self._css_config.component_markers,
            self._css_config.component_layer,
        ).strip()
        return RenderedPage(
            path=compiled.path,
            html=html,
            meta=_read_meta(getattr(module, META_ATTRIBUTE, None)),
            island_sources=context.island_sources,
            css=css,
            dep_hashes=compute_snapshot(compiled.dependency_paths, self._root),
        )


def _read_meta(raw: Any) -> dict[str, Any]:
    if isinstance(raw, Mapping):
        return dict(raw)
    return {}
