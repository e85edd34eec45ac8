"""HTML ドキュメントの外枠を組み立てるユーティリティ。"""

from __future__ import annotations

from html import escape
from pathlib import Path
from typing import Any, Mapping, Sequence

from .render import render_to_html

DEFAULT_LANG = "en"
DEFAULT_THEME_LIGHT = "#ffffff"
DEFAULT_THEME_DARK = "#000000"

THEME_BOOTSTRAP = (
    "<script>(()=>{const a=v=>{const t=v===\"dark\"?\"dark\":\"light\";"
    "document.documentElement.style.colorScheme=t};"
    "try{a(localStorage.getItem(\"theme\"))}catch{a(null)};"
    "addEventListener(\"storage\",e=>{if(e.key===\"theme\")a(e.newValue)})})();</script>"
)


def build_document(body: str, meta: Mapping[str, Any], scripts: str = "", css_links: str = "") -> str:
    """ページ本文を `<!DOCTYPE html>` から始まる完全なドキュメントに包みます。"""

    lang = escape(str(meta.get("lang") or DEFAULT_LANG))
    title = meta.get("title")
    title_tag = f"<title>{escape(str(title))}</title>" if title else ""
    head_html = render_to_html(meta.get("head"))
    light, dark = _theme_colors(meta.get("theme_color"))
    theme_meta = (
        f'<meta name="theme-color" media="(prefers-color-scheme: light)" content="{escape(light)}">'
        f'<meta name="theme-color" media="(prefers-color-scheme: dark)" content="{escape(dark)}">'
    )
    return (
        f'<!DOCTYPE html><html lang="{lang}"><head><meta charset="utf-8">'
        '<meta name="viewport" content="width=device-width">'
        '<meta name="color-scheme" content="dark light">'
        f"{theme_meta}{THEME_BOOTSTRAP}{title_tag}{css_links}{head_html}</head>"
        f"<body>{body}{scripts}</body></html>"
    )


def script_tags(urls: Sequence[str]) -> str:
    return "".join(f'<script src="{escape(url)}"></script>' for url in urls)


def stylesheet_links(urls: Sequence[str]) -> str:
    return "".join(f'<link rel="stylesheet" href="{escape(url)}">' for url in urls)


def write_document(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def _theme_colors(raw: Any) -> tuple[str, str]:
    if isinstance(raw, str):
        return raw, raw
    if isinstance(raw, Mapping):
        light = raw.get("light")
        dark = raw.get("dark")
        return (
            light if isinstance(light, str) else DEFAULT_THEME_LIGHT,
            dark if isinstance(dark, str) else DEFAULT_THEME_DARK,
        )
    return DEFAULT_THEME_LIGHT, DEFAULT_THEME_DARK
