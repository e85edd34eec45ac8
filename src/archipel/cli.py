"""archipel のコマンドラインインターフェース。"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Iterable

from .builder import BuildError, build_site
from .config import BuildConfig, BuildMode
from .env import load_env_file
from .server import serve
from .watching import run_watch


def parse_args(argv: Iterable[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="archipel", description="ページとアイランドから静的サイトをインクリメンタルにビルドします")
    subparsers = parser.add_subparsers(dest="command", required=True)

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--root", dest="project_root", type=Path, default=Path("."), help="プロジェクトのルートディレクトリ")
    common.add_argument("--out", dest="output_dir", type=Path, default=None, help="成果物を書き出すディレクトリ (既定: <root>/dist)")
    common.add_argument(
        "--purge",
        dest="purge",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="未使用 CSS クラスを除去する (既定: 本番モードのみ)",
    )
    common.add_argument(
        "--keep-class",
        dest="keep_class",
        type=str,
        default="",
        help="パージ対象から除外するクラスをカンマ区切りで指定",
    )
    common.add_argument("--no-optimize", dest="no_optimize", action="store_true", help="Closure Compiler による最適化を無効化する")
    common.add_argument("--verbose", dest="verbose", action="store_true", help="進捗ログを表示")

    subparsers.add_parser("build", parents=[common], help="環境変数のモードでビルドする")
    subparsers.add_parser("dev", parents=[common], help="開発モードでビルドする")
    subparsers.add_parser("watch", parents=[common], help="ビルド後、ソースの変更を監視して再ビルドする")
    serve_parser = subparsers.add_parser("serve", parents=[common], help="出力ディレクトリを開発サーバーで配信する")
    serve_parser.add_argument("--host", dest="host", type=str, default=None, help="待ち受けるホスト名")
    serve_parser.add_argument("--port", dest="port", type=int, default=None, help="待ち受けるポート番号 (既定: 3000)")
    serve_parser.add_argument("--hot", dest="hot", action="store_true", help="ソース変更時に自動で再ビルドする")
    return parser.parse_args(list(argv) if argv is not None else None)


def main(argv: Iterable[str] | None = None) -> None:
    args = parse_args(argv)
    _validate_args(args)
    _configure_logging(args.verbose)
    load_env_file(args.project_root / ".env")
    config = BuildConfig.from_args(
        args.project_root,
        args.output_dir,
        mode=_mode_for(args.command),
        purge=args.purge,
        class_keep=_parse_keep_classes(args.keep_class),
        serve_overrides=_collect_serve_overrides(args),
        island_overrides={"optimize": False} if args.no_optimize else None,
    )

    if args.command == "serve":
        _run_forever(serve(config))
        return
    if args.command == "watch":
        _run_forever(run_watch(config))
        return

    try:
        result = build_site(config)
    except BuildError as exc:
        print(f"[エラー] {exc}", file=sys.stderr)
        raise SystemExit(1)
    summary: dict[str, Any] = {
        "mode": config.mode,
        "pages": result.pages,
        "rebuilt": len(result.rebuilt),
        "reused": len(result.reused),
        "islands_built": len(result.islands_built),
        "islands_reused": len(result.islands_reused),
        "deleted": len(result.deleted),
        "output": str(config.output.root),
    }
    if result.skipped:
        summary["skipped"] = len(result.skipped)
    if result.failed:
        summary["failed"] = [Path(path).name for path in result.failed]
    print(json.dumps(summary, ensure_ascii=False))


def _mode_for(command: str) -> BuildMode | None:
    if command in {"dev", "serve", "watch"}:
        return "development"
    return None


def _validate_args(args: argparse.Namespace) -> None:
    errors: list[str] = []
    if not args.project_root.exists():
        errors.append(f"[エラー] プロジェクトディレクトリが見つかりません: {args.project_root}")
    elif not args.project_root.is_dir():
        errors.append(f"[エラー] プロジェクトパスはディレクトリではありません: {args.project_root}")

    if args.output_dir is not None and args.output_dir.exists() and not args.output_dir.is_dir():
        errors.append(f"[エラー] 出力パスがディレクトリではありません: {args.output_dir}")

    port = getattr(args, "port", None)
    if port is not None and not 0 < port < 65536:
        errors.append("[エラー] --port には 1 から 65535 までの整数を指定してください。")

    if errors:
        for message in errors:
            print(message, file=sys.stderr)
        print("プロジェクト・出力パスを確認し、存在するディレクトリを指定してください。", file=sys.stderr)
        raise SystemExit(2)

    args.project_root = args.project_root.resolve()
    if args.output_dir is not None:
        args.output_dir = args.output_dir.resolve()


def _parse_keep_classes(raw: str | None) -> Iterable[str]:
    if not raw:
        return ()
    return [chunk.strip() for chunk in raw.split(",") if chunk.strip()]


def _collect_serve_overrides(args: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    if getattr(args, "host", None):
        overrides["host"] = args.host
    if getattr(args, "port", None) is not None:
        overrides["port"] = args.port
    if getattr(args, "hot", False):
        overrides["hot"] = True
    return overrides


def _configure_logging(verbose: bool) -> None:
    level = logging.INFO if verbose else logging.WARNING
    logging.basicConfig(level=level, format="%(asctime)s [%(levelname)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S")


def _run_forever(coroutine: Any) -> None:
    try:
        asyncio.run(coroutine)
    except KeyboardInterrupt:
        print("停止しました。", file=sys.stderr)


if __name__ == "__main__":
    main()
