"""Run mocha test suites inside a real browser."""

from .config import RunConfig, load_config
from .runner import KeepOpenSession, PipelineCoordinator, run_tests

__version__ = "0.3.0"

__all__ = ["RunConfig", "load_config", "KeepOpenSession", "PipelineCoordinator", "run_tests", "__version__"]
