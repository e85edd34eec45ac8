"""出力ディレクトリを配信する開発サーバーとライブリロード。"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import AsyncIterator
from urllib.parse import unquote

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import FileResponse, PlainTextResponse, RedirectResponse, Response, StreamingResponse
from starlette.routing import Route

from .builder import ArchipelBuilder
from .config import BuildConfig
from .watching import BuildScheduler, debounced, pump_changes, watch_sources

logger = logging.getLogger(__name__)

MIME_TYPES = {
    ".html": "text/html; charset=utf-8",
    ".css": "text/css; charset=utf-8",
    ".js": "application/javascript; charset=utf-8",
    ".json": "application/json; charset=utf-8",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".svg": "image/svg+xml",
    ".ico": "image/x-icon",
}
DEFAULT_MIME_TYPE = "application/octet-stream"

LIVE_RELOAD_SCRIPT = (
    '<script>(()=>{{const es=new EventSource("{path}");'
    'es.addEventListener("reload",()=>location.reload());}})();</script>'
)


class ForbiddenPathError(RuntimeError):
    """要求パスが出力ディレクトリの外を指している場合に送出される例外。"""

    def __init__(self, request_path: str) -> None:
        super().__init__(f"出力ディレクトリ外へのアクセスは禁止されています: {request_path}")
        self.request_path = request_path


def resolve_static_path(output_root: Path, request_path: str) -> Path:
    """URL パスを出力ディレクトリ内のファイルパスへ変換します。"""

    relative = unquote(request_path).lstrip("/")
    root = output_root.resolve()
    if not relative:
        return root / "index.html"
    target = (root / relative).resolve()
    if target != root and not target.is_relative_to(root):
        raise ForbiddenPathError(request_path)
    return target


def content_type_for(path: Path) -> str:
    return MIME_TYPES.get(path.suffix.lower(), DEFAULT_MIME_TYPE)


def inject_live_reload(html: str, live_reload_path: str) -> str:
    script = LIVE_RELOAD_SCRIPT.format(path=live_reload_path)
    index = html.rfind("</body>")
    if index == -1:
        return html + script
    return html[:index] + script + html[index:]


class LiveReloadHub:
    """接続中のライブリロードクライアントへイベントを配信します。"""

    def __init__(self) -> None:
        self._clients: set[asyncio.Queue[str]] = set()

    @property
    def clients(self) -> int:
        return len(self._clients)

    def connect(self) -> asyncio.Queue[str]:
        queue: asyncio.Queue[str] = asyncio.Queue()
        self._clients.add(queue)
        return queue

    def disconnect(self, queue: asyncio.Queue[str]) -> None:
        self._clients.discard(queue)

    def broadcast(self, event: str = "reload", data: str = "now") -> int:
        message = f"event: {event}\ndata: {data}\n\n"
        for queue in list(self._clients):
            queue.put_nowait(message)
        return len(self._clients)

    async def stream(self, queue: asyncio.Queue[str]) -> AsyncIterator[str]:
        try:
            yield "\n"
            while True:
                yield await queue.get()
        finally:
            self.disconnect(queue)


def create_app(config: BuildConfig, hub: LiveReloadHub) -> Starlette:
    output_root = config.output.root
    live_reload_path = config.serve.live_reload_path

    async def live_reload(request: Request) -> Response:
        queue = hub.connect()
        return StreamingResponse(
            hub.stream(queue),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    async def static(request: Request) -> Response:
        request_path = request.url.path
        try:
            target = resolve_static_path(output_root, request_path)
        except ForbiddenPathError:
            logger.warning("出力ディレクトリ外へのアクセスを拒否しました: %s", request_path)
            return PlainTextResponse("Forbidden", status_code=403)
        if target.is_dir():
            return RedirectResponse(url=request_path.rstrip("/") + "/index.html", status_code=302)
        if not target.is_file():
            return PlainTextResponse("Not Found", status_code=404)
        media_type = content_type_for(target)
        if target.suffix.lower() == ".html":
            html = target.read_text(encoding="utf-8")
            return Response(inject_live_reload(html, live_reload_path), media_type=media_type)
        return FileResponse(target, media_type=media_type)

    return Starlette(
        routes=[
            Route(live_reload_path, live_reload, methods=["GET"]),
            Route("/{path:path}", static, methods=["GET", "HEAD"]),
        ]
    )


async def watch_output(config: BuildConfig, hub: LiveReloadHub) -> None:
    """出力ディレクトリの変更をまとめてリロードイベントとして配信します。"""

    queue: asyncio.Queue[set[Path]] = asyncio.Queue()
    watcher = asyncio.create_task(pump_changes([config.output.root], queue))
    try:
        async for batch in debounced(queue, config.serve.reload_debounce):
            notified = hub.broadcast()
            logger.info("出力の変更 %d 件をリロードとして %d クライアントへ通知しました。", len(batch), notified)
    finally:
        watcher.cancel()


async def serve(config: BuildConfig) -> None:
    """開発サーバーを起動します。ホットモードではソース変更で再ビルドします。"""

    config.output.root.mkdir(parents=True, exist_ok=True)
    hub = LiveReloadHub()
    tasks = [asyncio.create_task(watch_output(config, hub))]
    if config.serve.hot:

        async def rebuild() -> None:
            await ArchipelBuilder(config).build()

        scheduler = BuildScheduler(rebuild)
        tasks.append(asyncio.create_task(scheduler.run()))
        tasks.append(asyncio.create_task(watch_sources(config, scheduler)))
        scheduler.request()
    server = uvicorn.Server(
        uvicorn.Config(
            create_app(config, hub),
            host=config.serve.host,
            port=config.serve.port,
            log_level="warning",
            timeout_graceful_shutdown=1,
        )
    )
    logger.info("開発サーバーを起動しました: http://%s:%d", config.serve.host, config.serve.port)
    try:
        await server.serve()
    finally:
        for task in tasks:
            task.cancel()
