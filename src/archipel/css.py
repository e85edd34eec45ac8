"""収集した CSS の結合・未使用クラスの除去・圧縮を行うパイプライン。"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Sequence

import rcssmin
from bs4 import BeautifulSoup
from charset_normalizer import from_bytes as detect_charset

from .outcome import Outcome

logger = logging.getLogger(__name__)

_CLASS_SYMBOL = re.compile(r"\.(-?(?:[_a-zA-Z]|\\.)(?:[_a-zA-Z0-9-]|\\.)*)")
_ESCAPE = re.compile(r"\\(.)")
_COMMENT = re.compile(r"/\*.*?\*/", re.S)
_STRING = re.compile(r"\"(?:\\.|[^\"\\])*\"|'(?:\\.|[^'\\])*'", re.S)
_LAYER_PREFIX = re.compile(r"^\s*@layer\b", re.I)
_AT_KEYWORD = re.compile(r"^@(-?[a-zA-Z][a-zA-Z0-9-]*)")

_GROUP_AT_RULES = frozenset({"media", "supports", "layer", "container", "document", "scope"})


class CssParseError(RuntimeError):
    """パージのために CSS を解析できなかった場合に送出される例外。"""

    def __init__(self, message: str, *, position: int) -> None:
        super().__init__(f"{message} (offset={position})")
        self.position = position


@dataclass(slots=True)
class CssEntry:
    """コンパイル中に収集された CSS ファイル 1 件。"""

    path: Path
    content: str


def read_css_file(path: Path) -> str:
    """CSS ファイルを読み込み、文字コードを推定してデコードします。"""

    data = path.read_bytes()
    if not data:
        return ""
    encoding = "utf-8"
    try:
        result = detect_charset(data).best()
    except Exception:
        logger.debug("文字コード判定に失敗したため UTF-8 を使用します。", exc_info=True)
        result = None
    if result is not None and result.encoding:
        encoding = result.encoding
    try:
        return data.decode(encoding, errors="replace")
    except LookupError:
        logger.debug("未知のエンコーディング %s のため UTF-8 フォールバックを使用します。", encoding)
    return data.decode("utf-8", errors="replace")


# Composition -----------------------------------------------------------


def is_component_css_path(path: Path | str, markers: Sequence[str]) -> bool:
    normalized = str(path).replace("\\", "/")
    return any(marker in normalized for marker in markers)


def compose_collected_css(
    entries: Iterable[CssEntry],
    markers: Sequence[str],
    layer: str = "components",
) -> str:
    """収集順に CSS を結合し、コンポーネントライブラリ由来の塊をカスケードレイヤーで包みます。"""

    chunks: list[str] = []
    layer_open = False
    for entry in entries:
        content = (entry.content or "").strip()
        if not content:
            continue
        wrap = is_component_css_path(entry.path, markers) and not _LAYER_PREFIX.match(content)
        if wrap:
            if not layer_open:
                chunks.append(f"@layer {layer} {{")
                layer_open = True
            chunks.append(content)
            continue
        if layer_open:
            chunks.append("}")
            layer_open = False
        chunks.append(content)
    if layer_open:
        chunks.append("}")
    return "\n\n".join(chunks) + "\n" if chunks else ""


# Class symbols ---------------------------------------------------------


def extract_classes_from_html(html: str) -> set[str]:
    """レンダリング済み HTML に現れる class トークンを列挙します。"""

    if not html:
        return set()
    soup = BeautifulSoup(html, "html.parser")
    classes: set[str] = set()
    for tag in soup.find_all(class_=True):
        value = tag.get("class")
        if isinstance(value, str):
            value = value.split()
        classes.update(token for token in value or () if token)
    return classes


def extract_class_symbols(css: str) -> set[str]:
    """CSS のセレクタに現れるクラス名を列挙します。"""

    try:
        rules = _parse_rules(css, 0, len(css))
    except CssParseError:
        stripped = _STRING.sub("", _COMMENT.sub("", css))
        return _symbols_in(stripped)
    symbols: set[str] = set()
    for selector in _iter_selectors(rules):
        symbols |= _selector_symbols(selector)
    return symbols


def expand_keep_set(symbols: Iterable[str], keep: Iterable[str]) -> set[str]:
    """ダッシュ区切りの接頭辞関係にあるシンボルを保持対象へ加えます。

    `btn` を保持するなら `btn-active` も保持し、逆も同様です。
    """

    keep_tokens = set(keep)
    expanded = set(keep_tokens)
    for symbol in symbols:
        for token in keep_tokens:
            if symbol == token or symbol.startswith(f"{token}-") or token.startswith(f"{symbol}-"):
                expanded.add(symbol)
                break
    return expanded


def compute_unused_symbols(css: str, used_classes: Iterable[str], class_keep: Iterable[str]) -> set[str]:
    symbols = extract_class_symbols(css)
    keep = expand_keep_set(symbols, {*used_classes, *class_keep})
    return {symbol for symbol in symbols if symbol not in keep}


# Transform -------------------------------------------------------------


def transform_css(css: str, *, minify: bool, unused_symbols: Iterable[str] = ()) -> Outcome[str]:
    """未使用シンボルを含むセレクタを除去し、必要に応じて圧縮します。

    解析に失敗した場合はパージせずに圧縮だけを行い、劣化として報告します。
    """

    unused = frozenset(unused_symbols)
    result = css
    degraded: str | None = None
    if unused:
        try:
            rules = _parse_rules(css, 0, len(css))
            result = _serialize(rules, unused)
        except CssParseError as exc:
            degraded = f"css_purge_failed: {exc}"
            result = css
    if minify:
        result = rcssmin.cssmin(result)
    if degraded is not None:
        return Outcome.fallback(result, degraded)
    return Outcome.success(result)


def optimize_css(
    css: str,
    *,
    production: bool,
    purge: bool,
    used_classes: Iterable[str] = (),
    class_keep: Iterable[str] = (),
) -> Outcome[str]:
    """ページ CSS を最終形に整えます。開発モードかつパージ無効なら手を加えません。"""

    if not purge and not production:
        return Outcome.success(css)
    unused = compute_unused_symbols(css, used_classes, class_keep) if purge else set()
    return transform_css(css, minify=production, unused_symbols=unused)


def minify_css(css: str, *, production: bool) -> str:
    if not production:
        return css
    return transform_css(css, minify=True).value


# Internal parser -------------------------------------------------------


@dataclass(slots=True)
class _Rule:
    prelude: str
    block: str | None = None
    children: list["_Rule"] | None = None
    terminated: bool = False


def _parse_rules(text: str, start: int, end: int) -> list[_Rule]:
    rules: list[_Rule] = []
    index = start
    while index < end:
        stop = _scan_until(text, index, end, "{;}")
        if stop >= end:
            tail = text[index:end]
            if _COMMENT.sub("", tail).strip():
                raise CssParseError("ブロック外に解釈できない記述があります", position=index)
            if tail.strip():
                rules.append(_Rule(prelude=tail.strip()))
            break
        char = text[stop]
        if char == "}":
            raise CssParseError("対応する '{' のない '}' があります", position=stop)
        prelude = text[index:stop].strip()
        if char == ";":
            rules.append(_Rule(prelude=prelude, terminated=True))
            index = stop + 1
            continue
        close = _matching_brace(text, stop, end)
        rule = _Rule(prelude=prelude, block=text[stop + 1 : close])
        if _at_keyword(prelude) in _GROUP_AT_RULES:
            rule.children = _parse_rules(text, stop + 1, close)
        rules.append(rule)
        index = close + 1
    return rules


def _scan_until(text: str, index: int, end: int, targets: str) -> int:
    depth = 0
    while index < end:
        char = text[index]
        if char in "\"'":
            index = _skip_string(text, index, end)
            continue
        if text.startswith("/*", index):
            close = text.find("*/", index + 2, end)
            if close < 0:
                raise CssParseError("閉じられていないコメントがあります", position=index)
            index = close + 2
            continue
        if char == "(":
            depth += 1
        elif char == ")":
            depth = max(0, depth - 1)
        elif depth == 0 and char in targets:
            return index
        index += 1
    return end


def _matching_brace(text: str, open_index: int, end: int) -> int:
    depth = 0
    index = open_index
    while index < end:
        char = text[index]
        if char in "\"'":
            index = _skip_string(text, index, end)
            continue
        if text.startswith("/*", index):
            close = text.find("*/", index + 2, end)
            if close < 0:
                raise CssParseError("閉じられていないコメントがあります", position=index)
            index = close + 2
            continue
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return index
        index += 1
    raise CssParseError("閉じられていないブロックがあります", position=open_index)


def _skip_string(text: str, index: int, end: int) -> int:
    quote = text[index]
    index += 1
    while index < end:
        char = text[index]
        if char == "\\":
            index += 2
            continue
        if char == quote:
            return index + 1
        if char == "\n":
            raise CssParseError("閉じられていない文字列があります", position=index)
        index += 1
    raise CssParseError("閉じられていない文字列があります", position=index)


def _at_keyword(prelude: str) -> str | None:
    match = _AT_KEYWORD.match(_COMMENT.sub("", prelude).strip())
    return match.group(1).lower() if match else None


def _split_selectors(prelude: str) -> list[str]:
    selectors: list[str] = []
    depth = 0
    current: list[str] = []
    index = 0
    while index < len(prelude):
        char = prelude[index]
        if char in "\"'":
            close = _skip_string(prelude, index, len(prelude))
            current.append(prelude[index:close])
            index = close
            continue
        if char in "([":
            depth += 1
        elif char in ")]":
            depth = max(0, depth - 1)
        elif char == "," and depth == 0:
            selectors.append("".join(current).strip())
            current = []
            index += 1
            continue
        current.append(char)
        index += 1
    selectors.append("".join(current).strip())
    return [selector for selector in selectors if selector]


def _symbols_in(text: str) -> set[str]:
    return {_ESCAPE.sub(r"\1", match.group(1)) for match in _CLASS_SYMBOL.finditer(text)}


def _selector_symbols(selector: str) -> set[str]:
    return _symbols_in(_STRING.sub("", _COMMENT.sub("", selector)))


def _iter_selectors(rules: Sequence[_Rule]) -> Iterable[str]:
    for rule in rules:
        if rule.block is None:
            continue
        if rule.children is not None:
            yield from _iter_selectors(rule.children)
            continue
        if _at_keyword(rule.prelude):
            continue
        yield from _split_selectors(rule.prelude)


def _serialize(rules: Sequence[_Rule], unused: frozenset[str]) -> str:
    parts: list[str] = []
    for rule in rules:
        if rule.block is None:
            parts.append(rule.prelude + (";" if rule.terminated else ""))
            continue
        if rule.children is not None:
            inner = _serialize(rule.children, unused)
            if rule.children and not inner.strip():
                continue
            parts.append(f"{rule.prelude} {{\n{inner}\n}}")
            continue
        if _at_keyword(rule.prelude):
            parts.append(f"{rule.prelude} {{{rule.block}}}")
            continue
        selectors = _split_selectors(rule.prelude)
        kept = [selector for selector in selectors if not (_selector_symbols(selector) & unused)]
        if not kept:
            continue
        prelude = rule.prelude if len(kept) == len(selectors) else ", ".join(kept)
        parts.append(f"{prelude} {{{rule.block}}}")
    return "\n".join(parts)
