"""外部バンドラー (esbuild) と最適化コンパイラ (Closure Compiler) のアダプター。"""

from __future__ import annotations

import asyncio
import json
import logging
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, Sequence

from .outcome import Outcome

logger = logging.getLogger(__name__)


class BundlerError(RuntimeError):
    """バンドラーの実行に失敗した場合に送出される例外。"""

    def __init__(self, entry: Path, detail: str, *, returncode: int | None = None) -> None:
        super().__init__(f"バンドルに失敗しました: {entry} ({detail})")
        self.entry = entry
        self.detail = detail
        self.returncode = returncode


@dataclass(slots=True)
class BundleResult:
    """バンドル結果。`inputs` はバンドルに取り込まれた全ファイル (CSS を含む)。"""

    outfile: Path
    inputs: list[Path]


@dataclass(slots=True)
class CommandResult:
    returncode: int
    stdout: str
    stderr: str


class Bundler(Protocol):
    async def bundle_island(
        self, entry: Path, outfile: Path, *, footer: str, production: bool
    ) -> BundleResult: ...


class Optimizer(Protocol):
    async def optimize(self, js_path: Path) -> Outcome[Path]: ...


async def run_command(args: Sequence[str], cwd: Path, timeout: float) -> CommandResult:
    """サブプロセスを実行し、終了コードと出力を返します。タイムアウト時はプロセスを停止します。"""

    process = await asyncio.create_subprocess_exec(
        *args,
        cwd=str(cwd),
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise
    return CommandResult(
        returncode=process.returncode if process.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )


class EsbuildBundler:
    """esbuild CLI でアイランドを単体のブラウザ向け IIFE にバンドルします。"""

    def __init__(
        self,
        command: Sequence[str],
        cwd: Path,
        *,
        global_name: str = "_island",
        timeout: float = 120.0,
    ) -> None:
        self._command = tuple(command)
        self._cwd = cwd
        self._global_name = global_name
        self._timeout = timeout

    async def bundle_island(self, entry: Path, outfile: Path, *, footer: str, production: bool) -> BundleResult:
        outfile.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(prefix="archipel-meta-") as temp_dir:
            metafile = Path(temp_dir) / "meta.json"
            args = [
                *self._command,
                str(entry),
                "--bundle",
                "--format=iife",
                f"--global-name={self._global_name}",
                "--platform=browser",
                "--tree-shaking=true",
                "--loader:.css=empty",
                f"--outfile={outfile}",
                f"--metafile={metafile}",
                f"--footer:js={footer}",
                f"--legal-comments={'none' if production else 'inline'}",
            ]
            if not production:
                args.append("--sourcemap=inline")
            try:
                result = await run_command(args, self._cwd, self._timeout)
            except FileNotFoundError as exc:
                raise BundlerError(entry, f"バンドラーが見つかりません: {self._command[0]}") from exc
            except asyncio.TimeoutError as exc:
                raise BundlerError(entry, f"{self._timeout:.0f} 秒でタイムアウトしました") from exc
            if result.returncode != 0:
                raise BundlerError(entry, result.stderr.strip() or "unknown", returncode=result.returncode)
            inputs = self._read_inputs(metafile)
        return BundleResult(outfile=outfile, inputs=inputs)

    def _read_inputs(self, metafile: Path) -> list[Path]:
        try:
            meta = json.loads(metafile.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.warning("esbuild のメタファイルを読めませんでした: %s", metafile)
            return []
        inputs: list[Path] = []
        for key in (meta.get("inputs") or {}):
            candidate = Path(key)
            if not candidate.is_absolute():
                candidate = self._cwd / candidate
            if candidate.exists():
                inputs.append(candidate.resolve())
        return inputs


class ClosureOptimizer:
    """Closure Compiler による最適化パス。失敗しても元のバンドルを残します。"""

    def __init__(self, command: Sequence[str], cwd: Path, *, timeout: float = 300.0) -> None:
        self._command = tuple(command)
        self._cwd = cwd
        self._timeout = timeout

    async def optimize(self, js_path: Path) -> Outcome[Path]:
        temp_path = js_path.with_name(js_path.name + ".tmp")
        temp_map = temp_path.with_name(temp_path.name + ".map")
        args = [
            *self._command,
            f"--js={js_path}",
            f"--js_output_file={temp_path}",
            "--compilation_level=ADVANCED",
            "--language_out=ES_2020",
            "--create_source_map=%outname%.map",
        ]
        try:
            result = await run_command(args, self._cwd, self._timeout)
        except (OSError, asyncio.TimeoutError) as exc:
            _cleanup(temp_path, temp_map)
            return Outcome.fallback(js_path, f"optimizer_unavailable: {exc!r}")
        if result.returncode != 0 or not temp_path.exists():
            _cleanup(temp_path, temp_map)
            reason = result.stderr.strip().splitlines()[-1] if result.stderr.strip() else f"exit={result.returncode}"
            return Outcome.fallback(js_path, f"optimizer_failed: {reason}")

        compiled = temp_path.read_text(encoding="utf-8")
        map_path = js_path.with_name(js_path.name + ".map")
        map_written = False
        if temp_map.exists():
            try:
                source_map = json.loads(temp_map.read_text(encoding="utf-8"))
                source_map["file"] = js_path.name
                map_path.write_text(json.dumps(source_map), encoding="utf-8")
                map_written = True
            except ValueError:
                logger.debug("ソースマップを解釈できませんでした: %s", temp_map)
        if map_written:
            compiled = f"{compiled}\n//# sourceMappingURL={map_path.name}"
        else:
            map_path.unlink(missing_ok=True)
        js_path.write_text(compiled, encoding="utf-8")
        _cleanup(temp_path, temp_map)
        return Outcome.success(js_path)


class NullOptimizer:
    """最適化を行わないオプティマイザー。"""

    async def optimize(self, js_path: Path) -> Outcome[Path]:
        return Outcome.success(js_path)


def _cleanup(*paths: Path) -> None:
    for path in paths:
        path.unlink(missing_ok=True)
