from __future__ import annotations

from pathlib import Path

from archipel.config import BuildConfig, CssConfig, OutputConfig


def test_from_args_merges_class_keep_from_pyproject(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.delenv("ARCHIPEL_ENV", raising=False)
    monkeypatch.delenv("NODE_ENV", raising=False)
    (tmp_path / "pyproject.toml").write_text(
        """
[tool.archipel.class]
keep = ["btn", "card"]

[tool.archipel.islands]
optimize = false
bundler_command = ["npx", "esbuild"]
""",
        encoding="utf-8",
    )

    config = BuildConfig.from_args(tmp_path, class_keep=["card", " prose "])

    assert config.css.class_keep == ("btn", "card", "prose")
    assert config.islands.optimize is False
    assert tuple(config.islands.bundler_command) == ("npx", "esbuild")
    assert config.mode == "development"
    assert config.output.root == (tmp_path / "dist").resolve()
    assert config.output.islands_dir == config.output.root / "islands"
    assert config.cache_path == tmp_path.resolve() / ".archipel-cache.json"


def test_purge_defaults_to_production_mode(tmp_path: Path) -> None:
    production = BuildConfig(project_root=tmp_path, output=OutputConfig(tmp_path / "dist"), mode="production")
    development = BuildConfig(project_root=tmp_path, output=OutputConfig(tmp_path / "dist"))
    forced = BuildConfig(project_root=tmp_path, output=OutputConfig(tmp_path / "dist"), purge=True)

    assert production.should_purge is True
    assert development.should_purge is False
    assert forced.should_purge is True
    assert production.profile.mode == "production"


def test_class_keep_hash_depends_on_allow_list() -> None:
    assert CssConfig(class_keep=("btn",)).class_keep_hash != CssConfig().class_keep_hash
    assert CssConfig(class_keep=("btn",)).class_keep_hash == CssConfig(class_keep=("btn",)).class_keep_hash


def test_from_args_ignores_broken_pyproject(tmp_path: Path) -> None:
    (tmp_path / "pyproject.toml").write_text("[tool.archipel\n", encoding="utf-8")

    config = BuildConfig.from_args(tmp_path, mode="production")

    assert config.css.class_keep == ()
    assert config.production
