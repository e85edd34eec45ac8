from __future__ import annotations

import os
from pathlib import Path

from archipel import env


def test_load_env_file_populates_missing_variables(tmp_path: Path, monkeypatch) -> None:
    env_path = tmp_path / ".env"
    env_path.write_text(
        """
        # comment
        export ARCHIPEL_ENV=production
        ARCHIPEL_TOKEN="quoted"
        NODE_ENV=ignored
        """,
        encoding="utf-8",
    )
    monkeypatch.delenv("ARCHIPEL_ENV", raising=False)
    monkeypatch.delenv("ARCHIPEL_TOKEN", raising=False)
    monkeypatch.setenv("NODE_ENV", "preserve")

    loaded = env.load_env_file(tmp_path)

    assert loaded["ARCHIPEL_ENV"] == "production"
    assert loaded["ARCHIPEL_TOKEN"] == "quoted"
    assert os.environ["ARCHIPEL_ENV"] == "production"
    # 既存の環境変数は上書きしない
    assert os.environ["NODE_ENV"] == "preserve"


def test_current_mode_prefers_archipel_env() -> None:
    assert env.current_mode({"ARCHIPEL_ENV": "production", "NODE_ENV": "development"}) == "production"
    assert env.current_mode({"ARCHIPEL_ENV": "development", "NODE_ENV": "production"}) == "development"
    assert env.current_mode({"NODE_ENV": "prod"}) == "production"
    assert env.current_mode({}) == "development"


def test_load_env_file_missing_returns_empty(tmp_path: Path) -> None:
    assert env.load_env_file(tmp_path / "absent.env") == {}
