"""ページ描画時のアイランド登録コンテキストと HTML レンダラー。"""

from __future__ import annotations

from dataclasses import dataclass, field
from html import escape
from typing import Any, Iterable

from slugify import slugify

from .hashing import short_hash

ISLAND_CLASS_PREFIX = "archipel-island-"


def island_class_name(src: str) -> str:
    """アイランドのソース文字列から決定的なマーカークラス名を導出します。"""

    return f"{ISLAND_CLASS_PREFIX}{short_hash(src)}"


def render_to_html(tree: Any) -> str:
    """描画結果を HTML 文字列へ変換します。

    文字列はそのままマークアップとして扱い、`__html__` を持つオブジェクトはその戻り値を、
    反復可能なものは要素を連結します。None と真偽値は空文字になります。
    """

    if tree is None or isinstance(tree, bool):
        return ""
    if isinstance(tree, str):
        return tree
    markup = getattr(tree, "__html__", None)
    if callable(markup):
        return str(markup())
    if isinstance(tree, (bytes, bytearray)):
        return bytes(tree).decode("utf-8")
    if isinstance(tree, Iterable):
        return "".join(render_to_html(node) for node in tree)
    return escape(str(tree))


@dataclass(slots=True)
class RenderContext:
    """1 回のページ描画で参照されたアイランドを記録します。

    描画ごとに新しいインスタンスを作るため、ページ間で登録内容が混ざることはありません。
    """

    _sources: dict[str, int] = field(default_factory=dict)

    @property
    def island_sources(self) -> list[str]:
        return list(self._sources)

    def island(self, src: str, children: Any = None, *, id: str | None = None) -> str:
        """アイランドのラッパー要素を返し、ソースを登録します。

        `id` を省略した場合は、同じソースの出現順から決定的な ID を割り当てます。
        """

        occurrence = self._sources.get(src, 0) + 1
        self._sources[src] = occurrence
        island_id = id or f"{slugify(src) or 'island'}-{occurrence}"
        return (
            f'<div class="{island_class_name(src)}" data-island="{escape(src)}"'
            f' data-island-id="{escape(island_id)}">{render_to_html(children)}</div>'
        )
