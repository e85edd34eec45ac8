from __future__ import annotations

import asyncio
import json
import logging
import threading
from pathlib import Path

import pytest

from archipel.builder import ArchipelBuilder, BuildResult, NoPagesFoundError, OutputDirectoryError
from archipel.bundler import BundleResult, NullOptimizer
from archipel.config import BuildConfig, OutputConfig


class FakeBundler:
    def __init__(self) -> None:
        self.calls: list[Path] = []

    async def bundle_island(self, entry: Path, outfile: Path, *, footer: str, production: bool) -> BundleResult:
        self.calls.append(entry)
        outfile.parent.mkdir(parents=True, exist_ok=True)
        outfile.write_text(f"/*{entry.name}*/{footer}", encoding="utf-8")
        return BundleResult(outfile=outfile, inputs=[entry])


INDEX_PAGE = """
styles = "./site.css"
meta = {"title": "Home"}


def render(ctx):
    return f'<main class="home">{ctx.island("./counter.ts", "<button>0</button>")}</main>'
"""

ABOUT_PAGE = """
def render(ctx):
    return ["<article>", ctx.island("./counter.ts"), "</article>"]
"""


def _write(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


def _project(root: Path) -> None:
    _write(root / "src" / "index.py", INDEX_PAGE)
    _write(root / "src" / "site.css", ".home { color: red }\n.unused { color: blue }\n")
    _write(root / "pages" / "about.py", ABOUT_PAGE)
    _write(root / "counter.ts", "export default (el) => { el.dataset.ready = '1' }")


def _config(root: Path, mode: str = "development") -> BuildConfig:
    return BuildConfig(project_root=root, output=OutputConfig(root / "dist"), mode=mode)


def _build(config: BuildConfig, bundler: FakeBundler) -> BuildResult:
    builder = ArchipelBuilder(config, bundler=bundler, optimizer=NullOptimizer())
    return asyncio.run(builder.build())


def _cache(root: Path) -> dict:
    return json.loads((root / ".archipel-cache.json").read_text(encoding="utf-8"))


def test_build_writes_pages_islands_and_cache(tmp_path: Path) -> None:
    _project(tmp_path)
    bundler = FakeBundler()

    result = _build(_config(tmp_path), bundler)

    assert result.pages == 2
    assert len(result.rebuilt) == 2
    assert len(bundler.calls) == 1
    index_html = (tmp_path / "dist" / "index.html").read_text(encoding="utf-8")
    about_html = (tmp_path / "dist" / "about" / "index.html").read_text(encoding="utf-8")
    assert index_html.startswith("<!DOCTYPE html>")
    assert "<title>Home</title>" in index_html
    assert '<link rel="stylesheet" href="/index.css">' in index_html
    assert '<script src="/islands/counter.js"></script>' in index_html
    assert '<script src="/islands/counter.js"></script>' in about_html
    assert (tmp_path / "dist" / "index.css").read_text(encoding="utf-8").startswith(".home { color: red }")

    cache = _cache(tmp_path)
    assert cache["version"] == 1
    assert cache["mode"] == "development"
    assert set(cache["islands"]) == {"./counter.ts"}
    for record in cache["pages"].values():
        assert record["islandSources"] == ["./counter.ts"]

    summary_path = tmp_path / ".archipel" / "logs" / "build_summary.json"
    stages = [json.loads(line)["stage"] for line in summary_path.read_text(encoding="utf-8").splitlines()]
    assert stages[0] == "discovered"
    assert stages[-1] == "completed"
    assert {"classified", "islands", "writing"} <= set(stages)


def test_second_build_without_changes_is_a_no_op(tmp_path: Path) -> None:
    _project(tmp_path)
    bundler = FakeBundler()
    config = _config(tmp_path)
    _build(config, bundler)
    cache_before = (tmp_path / ".archipel-cache.json").read_text(encoding="utf-8")
    html_mtime = (tmp_path / "dist" / "index.html").stat().st_mtime_ns

    result = _build(config, bundler)

    assert result.rebuilt == []
    assert len(result.reused) == 2
    assert result.islands_reused == ["./counter.ts"]
    assert result.deleted == []
    assert len(bundler.calls) == 1
    assert (tmp_path / ".archipel-cache.json").read_text(encoding="utf-8") == cache_before
    assert (tmp_path / "dist" / "index.html").stat().st_mtime_ns == html_mtime


def test_removed_page_outputs_are_collected(tmp_path: Path) -> None:
    _project(tmp_path)
    config = _config(tmp_path)
    _build(config, FakeBundler())

    (tmp_path / "pages" / "about.py").unlink()
    result = _build(config, FakeBundler())

    assert result.deleted == ["/about/index.html"]
    assert not (tmp_path / "dist" / "about").exists()
    assert (tmp_path / "dist" / "islands" / "counter.js").exists()
    assert len(_cache(tmp_path)["pages"]) == 1


def test_unreferenced_island_is_collected(tmp_path: Path) -> None:
    _project(tmp_path)
    config = _config(tmp_path)
    _build(config, FakeBundler())

    _write(tmp_path / "src" / "index.py", 'render = "<main>static</main>"\n')
    (tmp_path / "pages" / "about.py").unlink()
    result = _build(config, FakeBundler())

    assert "/islands/counter.js" in result.deleted
    assert not (tmp_path / "dist" / "islands" / "counter.js").exists()
    assert _cache(tmp_path)["islands"] == {}
    assert "<script" not in (tmp_path / "dist" / "index.html").read_text(encoding="utf-8").split("</head>")[1]


def test_css_change_rehashes_page_css_without_rebuilding_islands(tmp_path: Path) -> None:
    _project(tmp_path)
    config = _config(tmp_path, mode="production")
    bundler = FakeBundler()
    _build(config, bundler)
    first_css = _cache(tmp_path)["pages"][str((tmp_path / "src" / "index.py").resolve())]["cssPath"]
    assert (tmp_path / "dist" / first_css.lstrip("/")).read_text(encoding="utf-8") == ".home{color:red}"

    _write(tmp_path / "src" / "site.css", ".home { color: green }\n")
    result = _build(config, bundler)

    second_css = _cache(tmp_path)["pages"][str((tmp_path / "src" / "index.py").resolve())]["cssPath"]
    assert second_css != first_css
    assert first_css in result.deleted
    assert not (tmp_path / "dist" / first_css.lstrip("/")).exists()
    assert (tmp_path / "dist" / second_css.lstrip("/")).exists()
    assert len(bundler.calls) == 1
    assert result.islands_reused == ["./counter.ts"]
    assert len(result.rebuilt) == 1


def test_island_change_rebuilds_every_page_that_uses_it(tmp_path: Path) -> None:
    _project(tmp_path)
    config = _config(tmp_path)
    bundler = FakeBundler()
    _build(config, bundler)

    _write(tmp_path / "counter.ts", "export default (el) => { el.dataset.ready = '2' }")
    result = _build(config, bundler)

    assert sorted(result.rebuilt) == sorted(
        [str((tmp_path / "src" / "index.py").resolve()), str((tmp_path / "pages" / "about.py").resolve())]
    )
    assert result.islands_built == ["./counter.ts"]
    assert result.islands_reused == []
    assert len(bundler.calls) == 2


def test_production_build_precompresses_assets(tmp_path: Path) -> None:
    _project(tmp_path)

    result = _build(_config(tmp_path, mode="production"), FakeBundler())

    compressed = sorted(Path(path).name for path in result.compressed)
    assert len(compressed) == 2
    assert all(name.endswith((".js.br", ".css.br")) for name in compressed)
    assert not list((tmp_path / "dist").rglob("*.html.br"))


def test_old_cache_version_is_discarded(tmp_path: Path) -> None:
    _project(tmp_path)
    (tmp_path / ".archipel-cache.json").write_text(
        json.dumps({"version": 0, "mode": "development", "purge": False, "pages": {}, "islands": {}}),
        encoding="utf-8",
    )

    result = _build(_config(tmp_path), FakeBundler())

    assert len(result.rebuilt) == 2
    assert _cache(tmp_path)["version"] == 1


def test_no_pages_is_fatal_and_writes_no_cache(tmp_path: Path) -> None:
    (tmp_path / "src").mkdir()

    with pytest.raises(NoPagesFoundError):
        _build(_config(tmp_path), FakeBundler())

    assert not (tmp_path / ".archipel-cache.json").exists()


def test_output_path_that_is_a_file_is_fatal(tmp_path: Path) -> None:
    _project(tmp_path)
    (tmp_path / "dist").write_text("", encoding="utf-8")

    with pytest.raises(OutputDirectoryError):
        _build(_config(tmp_path), FakeBundler())


def test_page_without_render_is_skipped_and_outputs_removed(tmp_path: Path, caplog) -> None:
    _project(tmp_path)
    config = _config(tmp_path)
    _build(config, FakeBundler())

    _write(tmp_path / "pages" / "about.py", "meta = {}\n")
    with caplog.at_level(logging.WARNING):
        result = _build(config, FakeBundler())

    assert result.skipped == [str((tmp_path / "pages" / "about.py").resolve())]
    assert not (tmp_path / "dist" / "about" / "index.html").exists()
    assert "render が定義されていません" in caplog.text


def test_failed_page_keeps_previous_record(tmp_path: Path, caplog) -> None:
    _project(tmp_path)
    config = _config(tmp_path)
    _build(config, FakeBundler())
    key = str((tmp_path / "src" / "index.py").resolve())
    previous = _cache(tmp_path)["pages"][key]

    _write(tmp_path / "src" / "index.py", "def render(ctx):\n    raise RuntimeError('broken page')\n")
    with caplog.at_level(logging.ERROR):
        result = _build(config, FakeBundler())

    assert result.failed == [key]
    assert _cache(tmp_path)["pages"][key] == previous
    assert (tmp_path / "dist" / "index.html").exists()
    assert "broken page" in caplog.text


def test_missing_output_promotes_unchanged_page(tmp_path: Path) -> None:
    _project(tmp_path)
    config = _config(tmp_path)
    _build(config, FakeBundler())

    (tmp_path / "dist" / "about" / "index.html").unlink()
    result = _build(config, FakeBundler())

    assert result.rebuilt == [str((tmp_path / "pages" / "about.py").resolve())]
    assert (tmp_path / "dist" / "about" / "index.html").exists()


def test_pages_are_written_off_the_event_loop_thread(tmp_path: Path, monkeypatch) -> None:
    _project(tmp_path)
    threads: list[int] = []
    original = ArchipelBuilder._write_page

    def recording_write_page(self, page, islands):
        threads.append(threading.get_ident())
        return original(self, page, islands)

    monkeypatch.setattr(ArchipelBuilder, "_write_page", recording_write_page)

    result = _build(_config(tmp_path), FakeBundler())

    assert len(result.rebuilt) == 2
    assert len(threads) == 2
    assert threading.get_ident() not in threads
