"""archipel ビルドパイプラインの設定モデル群。"""

from __future__ import annotations

import json
import logging
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Literal, Mapping, Optional, Sequence

from .hashing import hash_text

logger = logging.getLogger(__name__)

BuildMode = Literal["production", "development"]

CACHE_FILE_NAME = ".archipel-cache.json"
STATE_DIR_NAME = ".archipel"


def _merge_class_keep(defaults: Sequence[str], extras: Sequence[str]) -> tuple[str, ...]:
    """既定の許可リストと追加指定を重複なく結合します。"""

    seen: set[str] = set()
    merged: list[str] = []
    for token in (*defaults, *extras):
        if token in seen:
            continue
        seen.add(token)
        merged.append(token)
    return tuple(merged)


def default_timestamp() -> datetime:
    """メタデータ用に現在時刻 (UTC) を返します。"""

    return datetime.now(timezone.utc)


@dataclass(slots=True)
class CssConfig:
    """CSS の結合・パージ・圧縮の設定。"""

    class_keep: tuple[str, ...] = ()
    component_layer: str = "components"
    component_markers: Sequence[str] = (
        "/@archipel/ui/dist/components/",
        "/packages/archipel-ui/dist/components/",
    )

    @property
    def class_keep_hash(self) -> str:
        return hash_text(json.dumps(list(self.class_keep)))


@dataclass(slots=True)
class IslandConfig:
    """アイランドのバンドルと最適化の設定。"""

    bundler_command: Sequence[str] = ("esbuild",)
    optimizer_command: Sequence[str] = ("npx", "google-closure-compiler")
    optimize: bool = True
    global_name: str = "_island"
    bundle_timeout: float = 120.0


@dataclass(slots=True)
class ServeConfig:
    """開発サーバーとライブリロードの設定。"""

    host: str = "127.0.0.1"
    port: int = 3000
    hot: bool = False
    live_reload_path: str = "/__archipel_live"
    reload_debounce: float = 0.08
    build_debounce: float = 0.12
    shared_packages: Sequence[str] = (
        "node_modules/@archipel/ui",
        "node_modules/@archipel/core",
    )


@dataclass(slots=True)
class OutputConfig:
    """出力ディレクトリの設定。"""

    root: Path
    islands_dir: Path = field(init=False)

    def __post_init__(self) -> None:
        self.islands_dir = self.root / "islands"


@dataclass(slots=True)
class BuildProfile:
    """キャッシュの有効性を左右するビルド全体のパラメータ。"""

    mode: BuildMode
    purge: bool
    class_keep_hash: str


@dataclass(slots=True)
class BuildConfig:
    """ビルド全体を束ねる設定。"""

    project_root: Path
    output: OutputConfig
    mode: BuildMode = "development"
    purge: bool | None = None
    css: CssConfig = field(default_factory=CssConfig)
    islands: IslandConfig = field(default_factory=IslandConfig)
    serve: ServeConfig = field(default_factory=ServeConfig)
    compress: bool = True
    created_at: datetime = field(default_factory=default_timestamp)

    @property
    def production(self) -> bool:
        return self.mode == "production"

    @property
    def should_purge(self) -> bool:
        """明示指定がなければ本番モードでのみパージします。"""

        return self.purge if self.purge is not None else self.production

    @property
    def cache_path(self) -> Path:
        return self.project_root / CACHE_FILE_NAME

    @property
    def logs_dir(self) -> Path:
        return self.project_root / STATE_DIR_NAME / "logs"

    @property
    def profile(self) -> BuildProfile:
        return BuildProfile(
            mode=self.mode,
            purge=self.should_purge,
            class_keep_hash=self.css.class_keep_hash,
        )

    @classmethod
    def from_args(
        cls,
        project_root: Path,
        output_dir: Optional[Path] = None,
        mode: Optional[BuildMode] = None,
        purge: Optional[bool] = None,
        class_keep: Optional[Iterable[str]] = None,
        serve_overrides: Mapping[str, Any] | None = None,
        island_overrides: Mapping[str, Any] | None = None,
    ) -> "BuildConfig":
        from .env import current_mode

        root = project_root.resolve()
        project_settings = load_project_settings(root)
        configured_keep = _read_class_keep(project_settings)
        extra_keep = tuple(token.strip() for token in (class_keep or ()) if token and token.strip())
        css_config = CssConfig(class_keep=_merge_class_keep(configured_keep, extra_keep))
        island_kwargs: dict[str, Any] = {}
        raw_islands = project_settings.get("islands")
        if isinstance(raw_islands, Mapping):
            for key in ("bundler_command", "optimizer_command"):
                value = raw_islands.get(key)
                if isinstance(value, list) and all(isinstance(item, str) for item in value):
                    island_kwargs[key] = tuple(value)
            if isinstance(raw_islands.get("optimize"), bool):
                island_kwargs["optimize"] = raw_islands["optimize"]
        if island_overrides:
            island_kwargs.update(island_overrides)
        return cls(
            project_root=root,
            output=OutputConfig((output_dir or root / "dist").resolve()),
            mode=mode or current_mode(),
            purge=purge,
            css=css_config,
            islands=IslandConfig(**island_kwargs),
            serve=ServeConfig(**(dict(serve_overrides) if serve_overrides else {})),
        )


def load_project_settings(project_root: Path) -> dict[str, Any]:
    """`pyproject.toml` の `[tool.archipel]` テーブルを読み込みます。"""

    pyproject = project_root / "pyproject.toml"
    if not pyproject.exists():
        return {}
    try:
        with pyproject.open("rb") as stream:
            data = tomllib.load(stream)
    except (OSError, tomllib.TOMLDecodeError) as exc:
        logger.warning("pyproject.toml の読み込みに失敗したため既定値を使用します: %s", exc)
        return {}
    tool = data.get("tool")
    if not isinstance(tool, dict):
        return {}
    settings = tool.get("archipel")
    return settings if isinstance(settings, dict) else {}


def _read_class_keep(settings: Mapping[str, Any]) -> tuple[str, ...]:
    class_table = settings.get("class")
    if not isinstance(class_table, Mapping):
        return ()
    keep = class_table.get("keep")
    if not isinstance(keep, list):
        return ()
    return tuple(token for token in keep if isinstance(token, str))
