"""Configuration management for browser test runs."""

import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field

from .errors import MochaNotFoundError

DEFAULT_CONFIG_PATH = "mocha-web.yaml"


class RunConfig(BaseModel):
    """Immutable settings for a single pipeline invocation."""

    model_config = ConfigDict(frozen=True)

    # HTTP settings
    preferred_port: int = Field(default=3000, ge=0, le=65535, description="Port to try first; any free port otherwise")
    host: str = Field(default="127.0.0.1", description="Interface the ephemeral server binds to")

    # Bundling settings
    working_dir: str = Field(default_factory=os.getcwd, description="Root for bundling and static files")
    bundler_options: Dict[str, Any] = Field(default_factory=dict, description="Extra esbuild options, passed through")
    bundler_config_path: Optional[str] = Field(default=None, description="esbuild config module to load")
    node_executable: str = Field(default="node", description="Node.js binary running the esbuild bridge")
    mocha_dir: Optional[str] = Field(default=None, description="Directory of the mocha package")

    # Browser settings
    launch_options: Dict[str, Any] = Field(default_factory=dict, description="Playwright chromium.launch() kwargs")
    context_options: Dict[str, Any] = Field(
        default_factory=lambda: {"viewport": {"width": 1024, "height": 768}},
        description="Playwright browser.new_context() kwargs",
    )
    keep_open: bool = Field(default=False, description="Watch sources and leave server and browser running")

    # Harness settings
    title: str = Field(default="mocha tests", description="Harness page title")
    ui: str = Field(default="bdd", description="mocha user interface")
    colors: bool = Field(default=True, description="Colored reporter output")
    reporter: str = Field(default="spec", description="mocha reporter")
    timeout: int = Field(default=2000, ge=0, description="Per-test timeout in ms")
    grep: Optional[str] = Field(default=None, description="Only run tests matching this pattern")
    repeat: int = Field(default=1, ge=1, description="Times to run every test")


def load_config(config_path: Optional[str] = None, **overrides: Any) -> RunConfig:
    """Load configuration from file and environment, then apply explicit overrides."""
    if config_path is None:
        config_path = os.getenv("MOCHA_WEB_CONFIG", DEFAULT_CONFIG_PATH)

    config_data: Dict[str, Any] = {}

    # Load from file if exists
    if os.path.exists(config_path):
        with open(config_path, "r") as f:
            config_data = yaml.safe_load(f) or {}

    # Override with environment variables
    env_overrides = {
        "preferred_port": os.getenv("MOCHA_WEB_PORT"),
        "timeout": os.getenv("MOCHA_WEB_TIMEOUT"),
        "reporter": os.getenv("MOCHA_WEB_REPORTER"),
        "ui": os.getenv("MOCHA_WEB_UI"),
        "host": os.getenv("MOCHA_WEB_HOST"),
    }

    for key, value in env_overrides.items():
        if value is not None:
            if key in ["preferred_port", "timeout"]:
                value = int(value)
            config_data[key] = value

    config_data.update({k: v for k, v in overrides.items() if v is not None})
    return RunConfig(**config_data)


def find_up(names: list[str], start: Optional[str] = None) -> Optional[Path]:
    """Return the first of ``names`` found in ``start`` or any parent directory."""
    current = Path(start or os.getcwd()).resolve()
    for directory in [current, *current.parents]:
        for name in names:
            candidate = directory / name
            if candidate.is_file():
                return candidate
    return None


def resolve_mocha_dir(config: RunConfig) -> Path:
    """Locate the installed mocha package the harness page loads its assets from."""
    if config.mocha_dir:
        mocha_dir = Path(config.mocha_dir)
        if not (mocha_dir / "mocha.js").is_file():
            raise MochaNotFoundError(f"No mocha.js in {mocha_dir}")
        return mocha_dir

    package_json = find_up([os.path.join("node_modules", "mocha", "package.json")], config.working_dir)
    if package_json is None:
        raise MochaNotFoundError(f"Cannot resolve mocha from {config.working_dir}; is it installed?")
    return package_json.parent
