"""In-memory build artifacts and the swappable map the server reads from."""

from __future__ import annotations

import hashlib
import mimetypes
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Mapping

HARNESS_PATH = "/tests.html"
BUNDLE_PATH = "/tests.js"
STYLESHEET_PATH = "/tests.css"

_TEXT_TYPES = {"application/javascript", "application/json", "image/svg+xml"}

# Source maps are JSON; mimetypes does not know the extension everywhere.
mimetypes.add_type("application/json", ".map")
mimetypes.add_type("application/javascript", ".js")
mimetypes.add_type("application/javascript", ".mjs")


def content_type_for(path: str) -> str:
    guessed, _ = mimetypes.guess_type(path)
    return guessed or "text/plain"


@dataclass(frozen=True)
class Artifact:
    """One named, content-addressed unit of build output."""

    path: str
    contents: bytes = field(repr=False)
    content_hash: str

    @classmethod
    def from_bytes(cls, path: str, contents: bytes) -> "Artifact":
        return cls(path=path, contents=contents, content_hash=hashlib.sha256(contents).hexdigest())

    @classmethod
    def from_text(cls, path: str, text: str) -> "Artifact":
        return cls.from_bytes(path, text.encode("utf-8"))

    @property
    def content_type(self) -> str:
        return content_type_for(self.path)

    @property
    def is_text(self) -> bool:
        ctype = self.content_type
        return ctype.startswith("text/") or ctype in _TEXT_TYPES

    @property
    def text(self) -> str | None:
        return self.contents.decode("utf-8", errors="replace") if self.is_text else None


def freeze_artifacts(artifacts: Iterable[Artifact]) -> Mapping[str, Artifact]:
    return MappingProxyType({a.path: a for a in artifacts})


class ArtifactStore:
    """Single slot holding the current read-only artifact map.

    The build-completion handler is the only writer and always installs a
    complete new map; HTTP handlers take ``snapshot()`` once per request.
    """

    def __init__(self) -> None:
        self._current: Mapping[str, Artifact] = MappingProxyType({})
        self._generation = 0

    @property
    def ready(self) -> bool:
        return self._generation > 0

    @property
    def generation(self) -> int:
        return self._generation

    def snapshot(self) -> Mapping[str, Artifact]:
        return self._current

    def replace(self, artifacts: Iterable[Artifact]) -> Mapping[str, Artifact]:
        frozen = freeze_artifacts(artifacts)
        self._current = frozen
        self._generation += 1
        return frozen
