"""Forwards page console messages to the terminal in emission order."""

from __future__ import annotations

import asyncio
import json
import re
import sys
from typing import Any, TextIO

import structlog
from playwright.async_api import ConsoleMessage, Page
from playwright.async_api import Error as PlaywrightError

logger = structlog.get_logger(__name__)

# Errors lose their stack when serialized; everything else goes through as-is.
_SERIALIZE_ARG = """value => {
  if (value instanceof Error) return value.stack || String(value);
  if (typeof value === "function" || typeof value === "symbol") return String(value);
  if (typeof value === "bigint") return value.toString() + "n";
  return value;
}"""

_FORMAT_RE = re.compile(r"%[sdifjoOc%]")
_STDERR_TYPES = {"error", "warning", "assert", "trace"}


def _inspect(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def _as_number(value: Any, integer: bool) -> str:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return "NaN"
    if integer or number.is_integer():
        return str(int(number))
    return str(number)


def format_console_args(values: list[Any]) -> str:
    """Join console arguments the way the browser console prints them.

    A leading string may carry printf-style directives (``%s``, ``%d``,
    ``%i``, ``%f``, ``%j``, ``%o``, ``%O``, ``%c``, ``%%``).
    """
    if not values:
        return ""
    if not isinstance(values[0], str):
        return " ".join(_inspect(v) for v in values)

    rest = list(values[1:])

    def _substitute(match: re.Match) -> str:
        directive = match.group(0)
        if directive == "%%":
            return "%"
        if not rest:
            return directive
        value = rest.pop(0)
        if directive == "%c":
            return ""
        if directive in ("%d", "%i"):
            return _as_number(value, integer=True)
        if directive == "%f":
            return _as_number(value, integer=False)
        if directive in ("%o", "%O") and isinstance(value, str):
            return value
        if directive in ("%j", "%o", "%O"):
            return json.dumps(value, ensure_ascii=False)
        return _inspect(value)

    head = _FORMAT_RE.sub(_substitute, values[0])
    return " ".join([head, *(_inspect(v) for v in rest)])


class ConsoleRelay:
    """Relays ``console.*`` calls of a page to stdout/stderr.

    Handlers only enqueue; a single worker resolves the message arguments and
    writes them, so output order equals emission order.
    """

    def __init__(self, page: Page, stdout: TextIO | None = None, stderr: TextIO | None = None):
        self._page = page
        self._stdout = stdout or sys.stdout
        self._stderr = stderr or sys.stderr
        self._queue: asyncio.Queue[ConsoleMessage] = asyncio.Queue()
        self._worker: asyncio.Task | None = None
        self._attached = False

    def attach(self) -> "ConsoleRelay":
        self._page.on("console", self._on_console)
        self._attached = True
        self._worker = asyncio.create_task(self._drain())
        return self

    def detach(self) -> None:
        """Stop accepting new messages; queued ones are still written."""
        if self._attached:
            self._page.remove_listener("console", self._on_console)
            self._attached = False

    def _on_console(self, message: ConsoleMessage) -> None:
        self._queue.put_nowait(message)

    async def render(self, message: ConsoleMessage) -> str:
        values = []
        try:
            for handle in message.args:
                values.append(await handle.evaluate(_SERIALIZE_ARG))
        except PlaywrightError:
            # Page is gone; the preformatted text is all that is left.
            return message.text
        return format_console_args(values) if values else message.text

    async def _drain(self) -> None:
        while True:
            message = await self._queue.get()
            try:
                text = await self.render(message)
                stream = self._stderr if message.type in _STDERR_TYPES else self._stdout
                stream.write(text + "\n")
                stream.flush()
            except Exception:
                logger.exception("Failed to relay console message")
            finally:
                self._queue.task_done()

    async def flush(self, timeout: float = 5.0) -> None:
        """Wait until every queued message has been written."""
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Console relay did not drain", pending=self._queue.qsize())

    async def close(self) -> None:
        self.detach()
        await self.flush()
        worker, self._worker = self._worker, None
        if worker is not None:
            worker.cancel()
            await asyncio.gather(worker, return_exceptions=True)
