from __future__ import annotations

import asyncio
import io
from typing import Any

import pytest

from mocha_web.console_relay import ConsoleRelay, format_console_args


@pytest.mark.parametrize(
    ("values", "expected"),
    [
        (["%d passing", 2], "2 passing"),
        (["%s%d passing%s", "  ", 3, ""], "  3 passing"),
        (["plain", "words", 1], "plain words 1"),
        (["%c styled", "color: red"], " styled"),
        (["100%% done"], "100% done"),
        (["%i items", 2.9], "2 items"),
        (["%f ms", 1.5], "1.5 ms"),
        (["%j", {"a": 1}], '{"a": 1}'),
        (["%o", "x"], "x"),
        (["%O", {"a": 1}], '{"a": 1}'),
        (["%j", "x"], '"x"'),
        (["missing %s"], "missing %s"),
        ([1, True, None, [1, 2]], "1 true null [1, 2]"),
        (["%d", "abc"], "NaN"),
        ([], ""),
    ],
)
def test_format_console_args(values: list[Any], expected: str) -> None:
    assert format_console_args(values) == expected


class _Handle:
    def __init__(self, value: Any, delay: float = 0.0):
        self.value = value
        self.delay = delay

    async def evaluate(self, expression: str) -> Any:
        await asyncio.sleep(self.delay)
        return self.value


class _Message:
    def __init__(self, type_: str, *handles: _Handle):
        self.type = type_
        self.args = list(handles)
        self.text = " ".join(str(h.value) for h in handles)


class _Page:
    def __init__(self) -> None:
        self.listeners: dict[str, list] = {}

    def on(self, event: str, handler) -> None:
        self.listeners.setdefault(event, []).append(handler)

    def remove_listener(self, event: str, handler) -> None:
        self.listeners[event].remove(handler)

    def emit(self, event: str, payload: Any) -> None:
        for handler in list(self.listeners.get(event, [])):
            handler(payload)


@pytest.mark.asyncio
async def test_relay_preserves_emission_order_when_args_resolve_out_of_order() -> None:
    page = _Page()
    out, err = io.StringIO(), io.StringIO()
    relay = ConsoleRelay(page, stdout=out, stderr=err).attach()  # type: ignore[arg-type]

    # earlier messages take longer to resolve than later ones
    for i in range(5):
        page.emit("console", _Message("log", _Handle(f"m{i}", delay=0.05 - i * 0.01)))
    page.emit("console", _Message("error", _Handle("Error: printed to log")))
    await relay.flush()

    assert out.getvalue().splitlines() == ["m0", "m1", "m2", "m3", "m4"]
    assert err.getvalue() == "Error: printed to log\n"
    await relay.close()


@pytest.mark.asyncio
async def test_detached_relay_ignores_new_messages() -> None:
    page = _Page()
    out = io.StringIO()
    relay = ConsoleRelay(page, stdout=out, stderr=io.StringIO()).attach()  # type: ignore[arg-type]

    page.emit("console", _Message("log", _Handle("before")))
    relay.detach()
    page.emit("console", _Message("log", _Handle("after")))
    await relay.close()

    assert out.getvalue() == "before\n"
    assert page.listeners["console"] == []
