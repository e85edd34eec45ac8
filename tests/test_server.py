from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
from starlette.testclient import TestClient

from archipel.config import BuildConfig, OutputConfig
from archipel.server import (
    ForbiddenPathError,
    LiveReloadHub,
    create_app,
    inject_live_reload,
    resolve_static_path,
)


def _client(tmp_path: Path) -> TestClient:
    dist = tmp_path / "dist"
    (dist / "about").mkdir(parents=True)
    (dist / "index.html").write_text("<html><body><h1>Home</h1></body></html>", encoding="utf-8")
    (dist / "about" / "index.html").write_text("<html><body>About</body></html>", encoding="utf-8")
    (dist / "index.css").write_text(".a{}", encoding="utf-8")
    (dist / "data.bin").write_bytes(b"\x00\x01")
    config = BuildConfig(project_root=tmp_path, output=OutputConfig(dist))
    return TestClient(create_app(config, LiveReloadHub()))


def test_root_serves_index_with_live_reload_script(tmp_path: Path) -> None:
    client = _client(tmp_path)

    response = client.get("/")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/html")
    assert 'new EventSource("/__archipel_live")' in response.text
    assert response.text.endswith("</script></body></html>")


def test_directory_redirects_to_index(tmp_path: Path) -> None:
    client = _client(tmp_path)

    response = client.get("/about", follow_redirects=False)

    assert response.status_code == 302
    assert response.headers["location"] == "/about/index.html"
    assert "About" in client.get("/about").text


def test_static_files_use_fixed_mime_table(tmp_path: Path) -> None:
    client = _client(tmp_path)

    css = client.get("/index.css")
    binary = client.get("/data.bin")

    assert css.headers["content-type"].startswith("text/css")
    assert css.text == ".a{}"
    assert binary.headers["content-type"] == "application/octet-stream"
    assert client.get("/missing.js").status_code == 404


def test_resolve_static_path_rejects_traversal(tmp_path: Path) -> None:
    root = tmp_path / "dist"
    root.mkdir()

    assert resolve_static_path(root, "/") == root.resolve() / "index.html"
    assert resolve_static_path(root, "/a%20b.css") == root.resolve() / "a b.css"
    with pytest.raises(ForbiddenPathError):
        resolve_static_path(root, "/../secret.txt")
    with pytest.raises(ForbiddenPathError):
        resolve_static_path(root, "/%2e%2e/secret.txt")


def test_inject_live_reload_appends_without_body() -> None:
    assert inject_live_reload("<p>x</p>", "/live").startswith('<p>x</p><script>(()=>{const es=new EventSource("/live")')


def test_hub_broadcasts_reload_events_to_every_client() -> None:
    async def scenario() -> tuple[list[str], list[str], int]:
        hub = LiveReloadHub()
        first = hub.stream(hub.connect())
        second = hub.stream(hub.connect())
        opening = [await first.__anext__(), await second.__anext__()]
        notified = hub.broadcast()
        events = [await first.__anext__(), await second.__anext__()]
        await first.aclose()
        return opening, events, notified - hub.clients

    opening, events, disconnected = asyncio.run(scenario())

    assert opening == ["\n", "\n"]
    assert events == ["event: reload\ndata: now\n\n"] * 2
    assert disconnected == 1
