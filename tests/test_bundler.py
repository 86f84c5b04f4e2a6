from __future__ import annotations

import asyncio
import base64
import json
import sys
import textwrap
from pathlib import Path

import pytest

from mocha_web.bundler import (
    RESULT_PREFIX,
    BuildResult,
    EsbuildBundler,
    build_entry_contents,
    parse_result_line,
)
from mocha_web.errors import BuildFailedError, BuildMessage, BundlerError


def _result_line(files: dict[str, str], errors: list[dict] | None = None) -> str:
    payload = {
        "errors": errors or [],
        "warnings": [],
        "output_files": [
            {"path": path, "contents": base64.b64encode(text.encode()).decode()} for path, text in files.items()
        ],
    }
    return RESULT_PREFIX + json.dumps(payload)


def test_entry_requires_every_file_in_order_with_duplicates() -> None:
    files = ["/a/one.spec.js", '/b/"quoted".js', "/a/one.spec.js"]
    contents = build_entry_contents(files)
    assert contents.splitlines() == [
        'require("/a/one.spec.js");',
        'require("/b/\\"quoted\\".js");',
        'require("/a/one.spec.js");',
    ]


def test_parse_result_line_decodes_outputs() -> None:
    result = parse_result_line(_result_line({"/tests.js": "run()", "/tests.js.map": "{}"}) + "\n")
    assert result is not None
    assert result.ok is True
    assert {a.path: a.contents for a in result.outputs} == {"/tests.js": b"run()", "/tests.js.map": b"{}"}


def test_parse_result_line_ignores_other_output() -> None:
    assert parse_result_line("esbuild plugin says hi\n") is None


def test_parse_result_line_with_errors_is_not_ok() -> None:
    error = {"text": 'Unexpected "@"', "file": "broken-syntax.js", "line": 2, "column": 0, "line_text": "@"}
    result = parse_result_line(_result_line({}, [error]))
    assert result is not None
    assert result.ok is False
    assert result.errors == (BuildMessage('Unexpected "@"', "broken-syntax.js", 2, 0, "@"),)


def test_build_failed_error_lists_locations() -> None:
    exc = BuildFailedError([BuildMessage('Unexpected "@"', "broken-syntax.js", 2, 0), BuildMessage("boom")])
    assert str(exc) == 'broken-syntax.js:2:0: ERROR: Unexpected "@"\nERROR: boom'


def test_coordinator_fields_win_over_user_options() -> None:
    bundler = EsbuildBundler(
        working_dir="/work",
        bundler_options={"outfile": "elsewhere.js", "write": True, "target": "es2020", "define": {"X": "1"}},
    )
    request = bundler._request(["/work/a.js"], watch=False)
    assert request["options"] == {"target": "es2020", "define": {"X": "1"}}
    assert request["working_dir"] == "/work"
    assert request["watch"] is False


def _fake_bridge(tmp_path: Path, body: str) -> Path:
    script = tmp_path / "fake_bridge.py"
    script.write_text(
        textwrap.dedent(
            """
            import base64, json, sys

            PREFIX = "BUNDLE_RESULT_JSON="

            def emit(files, errors=()):
                print(PREFIX + json.dumps({
                    "errors": list(errors),
                    "warnings": [],
                    "output_files": [
                        {"path": p, "contents": base64.b64encode(t.encode()).decode()} for p, t in files.items()
                    ],
                }), flush=True)

            request = json.loads(sys.stdin.readline())
            """
        )
        + textwrap.dedent(body),
        encoding="utf-8",
    )
    return script


def _bundler(tmp_path: Path, body: str) -> EsbuildBundler:
    return EsbuildBundler(
        working_dir=str(tmp_path),
        node_executable=sys.executable,
        bridge_path=_fake_bridge(tmp_path, body),
    )


@pytest.mark.asyncio
async def test_build_reports_result_and_passes_through_other_output(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    bundler = _bundler(
        tmp_path,
        """
        print("plugin output", flush=True)
        emit({"/tests.js": request["entry_contents"]})
        """,
    )
    seen: list[BuildResult] = []
    result = await bundler.build(["/x/a.spec.js"], seen.append)

    assert result.ok is True
    assert seen == [result]
    assert result.outputs[0].contents == b'require("/x/a.spec.js");'
    assert "plugin output" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_build_errors_are_returned_not_raised(tmp_path: Path) -> None:
    bundler = _bundler(
        tmp_path,
        """
        emit({}, [{"text": "Syntax error", "file": "broken.js", "line": 2, "column": 1}])
        sys.exit(1)
        """,
    )
    seen: list[BuildResult] = []
    result = await bundler.build(["/x/broken.js"], seen.append)
    assert result.ok is False
    assert result.errors[0].format() == "broken.js:2:1: ERROR: Syntax error"
    assert seen == [result]


@pytest.mark.asyncio
async def test_build_without_result_raises(tmp_path: Path) -> None:
    bundler = _bundler(tmp_path, "sys.exit(3)\n")
    with pytest.raises(BundlerError, match="code 3"):
        await bundler.build(["/x/a.js"], lambda result: None)


@pytest.mark.asyncio
async def test_missing_node_raises_bundler_error(tmp_path: Path) -> None:
    bundler = EsbuildBundler(working_dir=str(tmp_path), node_executable=str(tmp_path / "no-such-node"))
    with pytest.raises(BundlerError, match="not found"):
        await bundler.build(["/x/a.js"], lambda result: None)


@pytest.mark.asyncio
async def test_watch_returns_after_first_build_and_keeps_reporting(tmp_path: Path) -> None:
    bundler = _bundler(
        tmp_path,
        """
        emit({"/tests.js": "v1"})
        emit({"/tests.js": "v2"})
        sys.stdin.read()
        """,
    )
    seen: list[bytes] = []

    async def on_output(result: BuildResult) -> None:
        seen.append(result.outputs[0].contents)

    first = await bundler.watch(["/x/a.js"], on_output)
    assert first.outputs[0].contents == b"v1"

    # the second build is delivered by the background reader
    for _ in range(200):
        if len(seen) == 2:
            break
        await asyncio.sleep(0.01)
    assert seen == [b"v1", b"v2"]

    await bundler.close()
    await bundler.close()
