"""Error taxonomy for the test pipeline."""

from __future__ import annotations

from dataclasses import dataclass


class MochaWebError(Exception):
    """Base class for every error the pipeline reports to the user."""


class NoTestFilesError(MochaWebError):
    def __init__(self, message: str = "Cannot find any test files"):
        super().__init__(message)


class MochaNotFoundError(MochaWebError):
    pass


class BundlerError(MochaWebError):
    """The bundler process failed without producing a build result."""


@dataclass(frozen=True)
class BuildMessage:
    text: str
    file: str | None = None
    line: int | None = None
    column: int | None = None
    line_text: str | None = None

    def format(self, severity: str = "ERROR") -> str:
        if self.file:
            return f"{self.file}:{self.line}:{self.column}: {severity}: {self.text}"
        return f"{severity}: {self.text}"


class BuildFailedError(MochaWebError):
    def __init__(self, messages: tuple[BuildMessage, ...] | list[BuildMessage]):
        self.messages = tuple(messages)
        lines = [m.format() for m in self.messages] or ["Build failed"]
        super().__init__("\n".join(lines))


class ServerBindError(MochaWebError):
    pass


class PageError(MochaWebError):
    """Uncaught exception raised inside the harness page."""

    def __init__(self, name: str, message: str, stack: str | None = None):
        self.name = name or "Error"
        self.message = message
        self.stack = stack
        super().__init__(f"{self.name}: {message}" if message else self.name)


class PageCrashedError(PageError):
    def __init__(self):
        super().__init__("Error", "Page crashed")


class FailedTestsError(MochaWebError):
    def __init__(self, failed_count: int):
        self.failed_count = failed_count
        super().__init__(f"{failed_count} tests failed!")
