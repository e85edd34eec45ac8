"""ページモジュールを読み込み、依存ファイルと CSS を収集するコンパイラ。"""

from __future__ import annotations

import ast
import importlib.machinery
import importlib.util
import logging
import sys
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from types import ModuleType
from typing import Iterator, Sequence

from .css import CssEntry, read_css_file
from .hashing import short_hash

logger = logging.getLogger(__name__)

STYLES_ATTRIBUTE = "styles"


class PageCompileError(RuntimeError):
    """ページモジュールを読み込めなかった場合に送出される例外。"""

    def __init__(self, path: Path, reason: str) -> None:
        super().__init__(f"ページを読み込めません: {path} ({reason})")
        self.path = path
        self.reason = reason


class _PageSourceLoader(importlib.machinery.SourceFileLoader):
    """バイトコードキャッシュを読み書きせずにソースから直接コンパイルするローダー。"""

    def get_code(self, fullname: str):
        path = self.get_filename(fullname)
        return self.source_to_code(self.get_data(path), path)


@dataclass(slots=True)
class CompiledPage:
    """コンパイル済みページとその副産物。"""

    path: Path
    module: ModuleType
    css_entries: list[CssEntry]
    dependency_paths: list[Path]


def resolve_specifier(specifier: str, base_dir: Path, project_root: Path) -> Path:
    """インポート指定子をファイルパスへ解決します。存在確認は呼び出し側が行います。"""

    if specifier.startswith("@/"):
        in_src = project_root / "src" / specifier[2:]
        return in_src if in_src.exists() else project_root / specifier[2:]
    if specifier.startswith(("./", "../")):
        return (base_dir / specifier).resolve()
    if specifier.startswith("/"):
        candidate = Path(specifier)
        if candidate.exists():
            return candidate
        return project_root / specifier.lstrip("/")
    return project_root / "node_modules" / specifier


class PageCompiler:
    """ページモジュールを新しいモジュールオブジェクトとして実行します。

    ページが推移的にインポートするプロジェクト内モジュールは `sys.modules` から追い出してから
    実行するため、編集内容は再ビルド時に必ず反映されます。
    """

    def __init__(self, project_root: Path) -> None:
        self._root = project_root.resolve()

    def compile(self, path: Path) -> CompiledPage:
        page_path = path.resolve()
        search_roots = self._search_roots(page_path)
        local_modules = self._collect_local_modules(page_path, search_roots)
        self._evict(local_modules, search_roots)
        module = self._execute(page_path, search_roots)
        css_entries = self._collect_styles(page_path, module, local_modules)
        dependency_paths: list[Path] = []
        for dependency in (page_path, *local_modules, *(entry.path for entry in css_entries)):
            if dependency not in dependency_paths:
                dependency_paths.append(dependency)
        return CompiledPage(
            path=page_path,
            module=module,
            css_entries=css_entries,
            dependency_paths=dependency_paths,
        )

    # Module graph -----------------------------------------------------

    def _search_roots(self, page_path: Path) -> list[Path]:
        roots: list[Path] = []
        for candidate in (page_path.parent, self._root, self._root / "src"):
            if candidate.is_dir() and candidate not in roots:
                roots.append(candidate)
        return roots

    def _collect_local_modules(self, page_path: Path, search_roots: Sequence[Path]) -> list[Path]:
        ordered: list[Path] = []
        visited: set[Path] = {page_path}

        def visit(file: Path) -> None:
            for dependency in self._imports_of(file, search_roots):
                if dependency in visited:
                    continue
                visited.add(dependency)
                visit(dependency)
                ordered.append(dependency)

        visit(page_path)
        return ordered

    def _imports_of(self, file: Path, search_roots: Sequence[Path]) -> list[Path]:
        try:
            tree = ast.parse(file.read_bytes(), filename=str(file))
        except (OSError, SyntaxError, ValueError):
            logger.debug("インポート解析をスキップします: %s", file, exc_info=True)
            return []
        nodes = [node for node in ast.walk(tree) if isinstance(node, (ast.Import, ast.ImportFrom))]
        nodes.sort(key=lambda node: (node.lineno, node.col_offset))
        found: list[Path] = []
        for node in nodes:
            if isinstance(node, ast.Import):
                for alias in node.names:
                    found.extend(self._resolve_module(alias.name, search_roots))
                continue
            if node.level:
                base = self._relative_base(file, node.level)
                if base is None:
                    continue
                roots: Sequence[Path] = (base,)
                prefix = node.module or ""
            else:
                roots = search_roots
                prefix = node.module or ""
            if prefix:
                found.extend(self._resolve_module(prefix, roots))
            for alias in node.names:
                if alias.name == "*":
                    continue
                name = f"{prefix}.{alias.name}" if prefix else alias.name
                found.extend(self._resolve_module(name, roots))
        return [path for path in found if path != file]

    def _relative_base(self, file: Path, level: int) -> Path | None:
        if not (file.parent / "__init__.py").exists():
            return None
        base = file.parent
        for _ in range(level - 1):
            base = base.parent
        if not base.is_relative_to(self._root):
            return None
        return base

    def _resolve_module(self, name: str, roots: Sequence[Path]) -> list[Path]:
        parts = [part for part in name.split(".") if part]
        if not parts:
            return []
        for root in roots:
            target = root.joinpath(*parts)
            module_file = target.with_suffix(".py")
            if not module_file.is_file():
                module_file = target / "__init__.py"
                if not module_file.is_file():
                    continue
            resolved: list[Path] = []
            for depth in range(1, len(parts)):
                package_init = root.joinpath(*parts[:depth]) / "__init__.py"
                if package_init.is_file():
                    resolved.append(package_init.resolve())
            resolved.append(module_file.resolve())
            return [path for path in resolved if self._is_project_file(path)]
        return []

    def _is_project_file(self, path: Path) -> bool:
        if not path.is_relative_to(self._root):
            return False
        relative_parts = path.relative_to(self._root).parts
        return not any(part in {"node_modules", ".venv", "venv", "site-packages"} for part in relative_parts)

    # Execution --------------------------------------------------------

    def _evict(self, local_modules: Sequence[Path], search_roots: Sequence[Path]) -> None:
        targets = set(local_modules)
        if not targets:
            return
        # 同名の別プロジェクトのモジュールが残っていても新しいファイルを読ませる
        names = {name for path in targets for name in _dotted_names(path, search_roots)}
        for name, module in list(sys.modules.items()):
            module_file = _module_file(module)
            if name in names or (module_file is not None and module_file in targets):
                del sys.modules[name]

    def _execute(self, page_path: Path, search_roots: Sequence[Path]) -> ModuleType:
        module_name = f"_archipel_page_{short_hash(str(page_path))}"
        loader = _PageSourceLoader(module_name, str(page_path))
        spec = importlib.util.spec_from_file_location(module_name, page_path, loader=loader)
        if spec is None:
            raise PageCompileError(page_path, "モジュール仕様を作成できません")
        module = importlib.util.module_from_spec(spec)
        importlib.invalidate_caches()
        sys.modules[module_name] = module
        try:
            with _prepended_sys_path(search_roots):
                loader.exec_module(module)
        except SyntaxError as exc:
            raise PageCompileError(page_path, str(exc)) from exc
        finally:
            sys.modules.pop(module_name, None)
        return module

    # Styles -----------------------------------------------------------

    def _collect_styles(
        self, page_path: Path, page_module: ModuleType, local_modules: Sequence[Path]
    ) -> list[CssEntry]:
        loaded: dict[Path, ModuleType] = {}
        for module in list(sys.modules.values()):
            module_file = _module_file(module)
            if module_file is not None:
                loaded.setdefault(module_file, module)
        owners: list[tuple[Path, ModuleType]] = [
            (file, loaded[file]) for file in local_modules if file in loaded
        ]
        owners.append((page_path, page_module))

        entries: list[CssEntry] = []
        seen: set[Path] = set()
        for owner_path, module in owners:
            for specifier in _declared_styles(module):
                css_path = resolve_specifier(specifier, owner_path.parent, self._root)
                if not css_path.is_file():
                    logger.warning("CSS が見つかりません: %s (%s)", specifier, owner_path.name)
                    continue
                css_path = css_path.resolve()
                if css_path in seen:
                    continue
                seen.add(css_path)
                entries.append(CssEntry(path=css_path, content=read_css_file(css_path)))
        return entries


def _declared_styles(module: ModuleType) -> list[str]:
    raw = getattr(module, STYLES_ATTRIBUTE, None)
    if raw is None:
        return []
    if isinstance(raw, str):
        return [raw]
    return [str(item) for item in raw if item]


def _dotted_names(path: Path, search_roots: Sequence[Path]) -> set[str]:
    names: set[str] = set()
    for root in search_roots:
        if not path.is_relative_to(root.resolve()):
            continue
        parts = list(path.relative_to(root.resolve()).with_suffix("").parts)
        if parts and parts[-1] == "__init__":
            parts.pop()
        if parts:
            names.add(".".join(parts))
    return names


def _module_file(module: ModuleType | None) -> Path | None:
    file_attr = getattr(module, "__file__", None)
    if not file_attr:
        return None
    try:
        return Path(file_attr).resolve()
    except (OSError, RuntimeError, ValueError):
        return None


@contextmanager
def _prepended_sys_path(paths: Sequence[Path]) -> Iterator[None]:
    entries = [str(path) for path in paths]
    original = list(sys.path)
    sys.path[:0] = [entry for entry in entries if entry not in sys.path]
    try:
        yield
    finally:
        sys.path[:] = original
