"""Harness page generation.

The harness is the HTML document the browser driver navigates to. It loads
mocha and the test bundle from the ephemeral server, expands repeated tests,
runs the suite once the document is parsed and publishes progress on
``window.mochaStatus`` for the driver to poll.
"""

from __future__ import annotations

from typing import Mapping

from jinja2 import Environment, PackageLoader, StrictUndefined, select_autoescape

from .artifacts import BUNDLE_PATH, HARNESS_PATH, STYLESHEET_PATH, Artifact
from .config import RunConfig

STATUS_GLOBAL = "mochaStatus"

_env = Environment(
    loader=PackageLoader("mocha_web", "templates"),
    autoescape=select_autoescape(["html"]),
    undefined=StrictUndefined,
    keep_trailing_newline=True,
)


def create_tests_html(
    title: str,
    ui: str,
    color: bool,
    reporter: str,
    timeout: int,
    grep: str | None,
    repeat: int,
    stylesheet: str | None,
) -> str:
    """Render the harness page. Pure: the same arguments give the same text."""
    template = _env.get_template("harness.html")
    return template.render(
        title=title,
        ui=ui,
        color=color,
        reporter=reporter,
        timeout=timeout,
        grep=grep or None,
        repeat=repeat,
        stylesheet=stylesheet,
        bundle=BUNDLE_PATH.lstrip("/"),
    )


def repeat_script() -> str:
    """Source of the suite-expansion functions embedded in the harness."""
    return _env.loader.get_source(_env, "repeat.js")[0]


def build_harness_artifact(config: RunConfig, artifacts: Mapping[str, Artifact]) -> Artifact:
    stylesheet = STYLESHEET_PATH.lstrip("/") if STYLESHEET_PATH in artifacts else None
    html = create_tests_html(
        config.title,
        config.ui,
        config.colors,
        config.reporter,
        config.timeout,
        config.grep,
        config.repeat,
        stylesheet,
    )
    return Artifact.from_text(HARNESS_PATH, html)
