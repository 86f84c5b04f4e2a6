"""esbuild adapter: bundles test files into in-memory artifacts.

esbuild runs in a Node bridge process (``esbuild_bridge.mjs``). The bridge
prints one ``BUNDLE_RESULT_JSON=`` line per finished build; every other line
it writes is passed through to the terminal.
"""

from __future__ import annotations

import asyncio
import base64
import inspect
import json
import re
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Sequence

import structlog

from .artifacts import Artifact
from .errors import BuildMessage, BundlerError

logger = structlog.get_logger(__name__)

BRIDGE_PATH = Path(__file__).resolve().parent / "esbuild_bridge.mjs"
RESULT_PREFIX = "BUNDLE_RESULT_JSON="
_RESULT_LINE_RE = re.compile(r"^BUNDLE_RESULT_JSON=(\{.*\})\s*$")
ENTRY_SOURCEFILE = "generated-tests-index.js"

# Bundles and their source maps arrive base64 encoded on a single line.
_STREAM_LIMIT = 512 * 1024 * 1024

# Options the pipeline needs to address the build output in memory.
RESERVED_OPTIONS = ("stdin", "outfile", "outdir", "write", "sourcemap", "bundle", "format", "logLevel", "plugins")


@dataclass(frozen=True)
class BuildResult:
    outputs: tuple[Artifact, ...] = ()
    errors: tuple[BuildMessage, ...] = ()
    warnings: tuple[BuildMessage, ...] = ()

    @property
    def ok(self) -> bool:
        return bool(self.outputs) and not self.errors


OutputCallback = Callable[[BuildResult], Any]


def build_entry_contents(test_files: Sequence[str]) -> str:
    """Synthesize the entry module requiring every test file, in order."""
    return "\n".join(f"require({json.dumps(f)});" for f in test_files)


def _message_from_json(data: dict[str, Any]) -> BuildMessage:
    return BuildMessage(
        text=str(data.get("text") or ""),
        file=data.get("file") or None,
        line=data.get("line"),
        column=data.get("column"),
        line_text=data.get("line_text"),
    )


def parse_result_line(line: str) -> BuildResult | None:
    """Parse a bridge stdout line; ``None`` when it is not a result line."""
    m = _RESULT_LINE_RE.match(line.strip())
    if not m:
        return None
    data = json.loads(m.group(1))
    outputs = tuple(
        Artifact.from_bytes(str(item["path"]), base64.b64decode(item["contents"]))
        for item in data.get("output_files") or []
    )
    return BuildResult(
        outputs=outputs,
        errors=tuple(_message_from_json(m) for m in data.get("errors") or []),
        warnings=tuple(_message_from_json(m) for m in data.get("warnings") or []),
    )


@dataclass
class EsbuildBundler:
    """Bundles via esbuild, once or in a standing watch."""

    working_dir: str
    bundler_options: dict[str, Any] = field(default_factory=dict)
    config_path: str | None = None
    node_executable: str = "node"
    bridge_path: Path = BRIDGE_PATH

    def __post_init__(self) -> None:
        self._proc: asyncio.subprocess.Process | None = None
        self._tasks: list[asyncio.Task] = []

    def _request(self, test_files: Sequence[str], watch: bool) -> dict[str, Any]:
        options = {k: v for k, v in self.bundler_options.items() if k not in RESERVED_OPTIONS}
        return {
            "entry_contents": build_entry_contents(test_files),
            "sourcefile": ENTRY_SOURCEFILE,
            "working_dir": str(self.working_dir),
            "config_path": str(self.config_path) if self.config_path else None,
            "options": options,
            "watch": watch,
        }

    async def _spawn(self, test_files: Sequence[str], watch: bool) -> asyncio.subprocess.Process:
        cmd = [self.node_executable, str(self.bridge_path)]
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self.working_dir),
                limit=_STREAM_LIMIT,
            )
        except FileNotFoundError as exc:
            raise BundlerError(f"Cannot start esbuild bridge: {self.node_executable} not found") from exc

        assert proc.stdin is not None
        proc.stdin.write((json.dumps(self._request(test_files, watch)) + "\n").encode("utf-8"))
        await proc.stdin.drain()
        if not watch:
            proc.stdin.close()
        self._proc = proc
        return proc

    async def _pump_stderr(self, proc: asyncio.subprocess.Process) -> None:
        assert proc.stderr is not None
        async for raw in proc.stderr:
            sys.stderr.write(raw.decode("utf-8", errors="replace"))
            sys.stderr.flush()

    async def _pump_results(self, proc: asyncio.subprocess.Process, on_output: OutputCallback) -> BuildResult | None:
        """Read bridge stdout, handing each build result to ``on_output``."""
        assert proc.stdout is not None
        last: BuildResult | None = None
        async for raw in proc.stdout:
            line = raw.decode("utf-8", errors="replace")
            result = parse_result_line(line)
            if result is None:
                sys.stdout.write(line)
                sys.stdout.flush()
                continue
            for warning in result.warnings:
                logger.warning("esbuild warning", message=warning.format("WARNING"))
            maybe_awaitable = on_output(result)
            if inspect.isawaitable(maybe_awaitable):
                await maybe_awaitable
            last = result
        return last

    async def build(self, test_files: Sequence[str], on_output: OutputCallback) -> BuildResult:
        """Run a single build and return its result once the bridge exits."""
        proc = await self._spawn(test_files, watch=False)
        try:
            stderr_task = asyncio.create_task(self._pump_stderr(proc))
            result = await self._pump_results(proc, on_output)
            await stderr_task
            returncode = await proc.wait()
        except BaseException:
            if proc.returncode is None:
                proc.kill()
            raise
        finally:
            self._proc = None

        if result is None:
            raise BundlerError(f"esbuild bridge exited with code {returncode} without a build result")
        return result

    async def watch(self, test_files: Sequence[str], on_output: OutputCallback) -> BuildResult:
        """Start watching; resolves with the first build, later builds keep calling ``on_output``."""
        loop = asyncio.get_running_loop()
        first: asyncio.Future[BuildResult] = loop.create_future()

        async def _on_output(result: BuildResult) -> None:
            maybe_awaitable = on_output(result)
            if inspect.isawaitable(maybe_awaitable):
                await maybe_awaitable
            if not first.done():
                first.set_result(result)

        proc = await self._spawn(test_files, watch=True)
        self._tasks = [
            asyncio.create_task(self._pump_stderr(proc)),
            asyncio.create_task(self._pump_results(proc, _on_output)),
        ]
        results_task = self._tasks[1]

        done, _ = await asyncio.wait({first, results_task}, return_when=asyncio.FIRST_COMPLETED)
        if first in done:
            return first.result()

        first.cancel()
        results_task.result()
        raise BundlerError(f"esbuild bridge exited with code {await proc.wait()} before the first build")

    async def close(self) -> None:
        """Stop a watching bridge. Safe to call when nothing runs."""
        proc, self._proc = self._proc, None
        if proc is not None and proc.returncode is None:
            if proc.stdin is not None and not proc.stdin.is_closing():
                proc.stdin.close()
            try:
                await asyncio.wait_for(proc.wait(), timeout=5.0)
            except asyncio.TimeoutError:
                logger.warning("esbuild bridge did not exit; killing it")
                proc.kill()
                await proc.wait()

        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
