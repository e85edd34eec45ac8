"""環境変数とビルドモードのローダー。"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Iterable, Mapping

from .config import BuildMode

DEFAULT_ENV_NAME = ".env"
MODE_ENV = "ARCHIPEL_ENV"
NODE_MODE_ENV = "NODE_ENV"
PRODUCTION_VALUES = frozenset({"production", "prod"})


def load_env_file(path: str | Path | None = None) -> dict[str, str]:
    """`.env` ファイルを読み込み、未設定の環境変数を補完します。"""

    env_path = _locate_env_file(path)
    if env_path is None or not env_path.exists():
        return {}
    loaded: dict[str, str] = {}
    for raw_line in env_path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if key.startswith("export "):
            key = key[len("export ") :].strip()
        if not key:
            continue
        value = _strip_quotes(value.strip())
        if key not in os.environ:
            os.environ[key] = value
        loaded[key] = value
    return loaded


def current_mode(source: Mapping[str, str] | None = None) -> BuildMode:
    """環境変数からビルドモードを判定します。`ARCHIPEL_ENV` が `NODE_ENV` より優先されます。"""

    env = source if source is not None else os.environ
    raw = env.get(MODE_ENV) or env.get(NODE_MODE_ENV) or ""
    return "production" if raw.strip().lower() in PRODUCTION_VALUES else "development"


def _locate_env_file(path: str | Path | None) -> Path | None:
    if path is not None:
        candidate = Path(path)
        if candidate.is_dir():
            candidate = candidate / DEFAULT_ENV_NAME
        return candidate
    candidates: Iterable[Path] = (Path.cwd() / DEFAULT_ENV_NAME,)
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return None


def _strip_quotes(value: str) -> str:
    if not value:
        return value
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
        return value[1:-1]
    return value
