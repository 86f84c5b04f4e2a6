"""Pipeline coordinator: bundle, serve, drive the browser, tear down."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Sequence

import structlog

from .artifacts import HARNESS_PATH, ArtifactStore
from .browser import BrowserDriver
from .bundler import BuildResult, EsbuildBundler
from .config import RunConfig, resolve_mocha_dir
from .errors import BuildFailedError, FailedTestsError, PageError
from .harness import build_harness_artifact
from .server import EphemeralServer

logger = structlog.get_logger(__name__)

Closer = Callable[[], Awaitable[Any]]


class PipelineHandle:
    """Teardown actions collected as resources are acquired."""

    def __init__(self) -> None:
        self._closers: list[tuple[str, Closer]] = []

    def __len__(self) -> int:
        return len(self._closers)

    def add(self, name: str, closer: Closer) -> None:
        self._closers.append((name, closer))

    async def close(self) -> None:
        """Run every action once, newest first; failures are logged and skipped."""
        closers, self._closers = self._closers, []
        for name, closer in reversed(closers):
            try:
                await closer()
            except Exception as exc:
                logger.error("Teardown failed", resource=name, error=str(exc))


class KeepOpenSession:
    """Resources left running in keep-open mode, owned by the caller."""

    def __init__(self, url: str, store: ArtifactStore, driver: BrowserDriver, handle: PipelineHandle):
        self.url = url
        self.store = store
        self.driver = driver
        self._handle = handle

    async def wait_closed(self) -> None:
        await self.driver.wait_closed()

    async def close(self) -> None:
        await self._handle.close()


class PipelineCoordinator:
    """Runs one invocation of the bundle → serve → browser pipeline."""

    def __init__(
        self,
        config: RunConfig,
        bundler: EsbuildBundler | None = None,
        driver: BrowserDriver | None = None,
        server_factory: Callable[..., EphemeralServer] = EphemeralServer,
    ):
        self.config = config
        self.store = ArtifactStore()
        self.bundler = bundler or EsbuildBundler(
            working_dir=config.working_dir,
            bundler_options=config.bundler_options,
            config_path=config.bundler_config_path,
            node_executable=config.node_executable,
        )
        self.driver = driver or BrowserDriver(config.launch_options, config.context_options)
        self._server_factory = server_factory

    def on_build_end(self, result: BuildResult) -> None:
        """Install a successful build, harness page included; keep the old map otherwise."""
        if not result.ok:
            # One-shot runs raise the errors instead; watch mode only has the log.
            if self.config.keep_open:
                event = "Rebuild failed; serving previous build" if self.store.ready else "Build failed; waiting for changes"
                for message in result.errors:
                    logger.error(event, message=message.format())
            return

        outputs = {a.path: a for a in result.outputs}
        outputs[HARNESS_PATH] = build_harness_artifact(self.config, outputs)
        self.store.replace(outputs.values())
        if self.store.generation > 1:
            logger.info("Rebuilt tests", files=sorted(outputs))

    async def run(self, test_files: Sequence[str]) -> KeepOpenSession | None:
        """Run the tests.

        Raises ``FailedTestsError`` when tests fail, ``BuildFailedError`` on bundling
        errors and ``PageError`` on fatal browser signals. In keep-open mode, returns
        the session holding the still-running resources instead.
        """
        if not test_files:
            raise ValueError("test_files must not be empty")

        keep_open = self.config.keep_open
        handle = PipelineHandle()
        session_handle = PipelineHandle()

        try:
            mocha_dir = resolve_mocha_dir(self.config)
            logger.info("Bundling using esbuild...")

            if keep_open:
                session_handle.add("bundler", self.bundler.close)
                await self.bundler.watch(test_files, self.on_build_end)
            else:
                result = await self.bundler.build(test_files, self.on_build_end)
                if not result.ok:
                    raise BuildFailedError(result.errors)

            server = self._server_factory(self.store, self.config.working_dir, mocha_dir, host=self.config.host)
            (session_handle if keep_open else handle).add("server", server.close)
            port = await server.start(self.config.preferred_port)
            logger.info(f"HTTP server is listening on port {port}")

            (session_handle if keep_open else handle).add("browser", self.driver.close)
            await self.driver.start()
            url = f"http://{self.config.host}:{port}{HARNESS_PATH}"

            if keep_open:
                session = KeepOpenSession(url, self.store, self.driver, session_handle)
                try:
                    await self.driver.navigate(url)
                except PageError as exc:
                    # The operator fixes the file and reloads; the session stays up.
                    logger.error("Page error in watch session", error=str(exc))
                return session

            failed_count = await self.driver.run(url)
            if failed_count:
                raise FailedTestsError(failed_count)
            return None
        except BaseException:
            # A keep-open session that never got handed over still has to go.
            await session_handle.close()
            raise
        finally:
            if not keep_open:
                await handle.close()


async def run_tests(test_files: Sequence[str], config: RunConfig | None = None, **kwargs: Any) -> KeepOpenSession | None:
    """Convenience wrapper around ``PipelineCoordinator(config).run(test_files)``."""
    return await PipelineCoordinator(config or RunConfig(), **kwargs).run(test_files)
