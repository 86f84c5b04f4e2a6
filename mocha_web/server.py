"""Ephemeral HTTP server for the harness page, the bundle and static files."""

from __future__ import annotations

import asyncio
import contextlib
import socket
from pathlib import Path

import structlog
import uvicorn
from fastapi import FastAPI, Request, Response
from starlette.exceptions import HTTPException
from starlette.staticfiles import StaticFiles

from .artifacts import ArtifactStore
from .errors import ServerBindError

logger = structlog.get_logger(__name__)

MOCHA_MOUNT = "/mocha"
CACHE_CONTROL = "public, max-age=0"


def bind_listening_socket(host: str, preferred_port: int) -> socket.socket:
    """Bind ``preferred_port``, falling back to any free port when it is taken."""
    last_error: OSError | None = None
    for port in dict.fromkeys([preferred_port, 0]):
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
            sock.listen(128)
        except OSError as exc:
            sock.close()
            last_error = exc
            if port:
                logger.info("Preferred port unavailable, using a free port", port=port, error=str(exc))
            continue
        sock.setblocking(False)
        return sock
    raise ServerBindError(f"Cannot bind any port on {host}: {last_error}")


def create_app(store: ArtifactStore, working_dir: str | Path, mocha_dir: str | Path | None) -> FastAPI:
    """Build the app serving artifacts first, then the favicon, then static files."""
    app = FastAPI(title="mocha-web", docs_url=None, redoc_url=None, openapi_url=None)

    static_layers: list[tuple[str, StaticFiles]] = [
        ("/", StaticFiles(directory=str(working_dir), html=True, check_dir=False)),
    ]
    if mocha_dir is not None:
        static_layers.append((MOCHA_MOUNT + "/", StaticFiles(directory=str(mocha_dir), check_dir=False)))

    @app.middleware("http")
    async def serve_artifacts(request: Request, call_next):
        # One snapshot per request; a rebuild swaps the map, never edits it.
        artifact = store.snapshot().get(request.url.path)
        if artifact is None or request.method not in ("GET", "HEAD"):
            return await call_next(request)

        headers = {"ETag": artifact.content_hash, "Cache-Control": CACHE_CONTROL}
        if request.headers.get("if-none-match") == artifact.content_hash:
            return Response(status_code=304, headers=headers)
        body = artifact.contents if request.method == "GET" else b""
        return Response(content=body, media_type=artifact.content_type, headers=headers)

    @app.get("/favicon.ico")
    async def favicon() -> Response:
        return Response(status_code=204)

    @app.api_route("/{file_path:path}", methods=["GET", "HEAD"])
    async def serve_static(file_path: str, request: Request):
        url_path = "/" + file_path
        for prefix, files in static_layers:
            if not url_path.startswith(prefix):
                continue
            relative = url_path[len(prefix):]
            try:
                response = await files.get_response(relative, request.scope)
            except HTTPException as exc:
                if exc.status_code != 404:
                    raise
                continue
            if response.status_code != 404:
                return response
        return Response(status_code=404, content="Not Found", media_type="text/plain")

    return app


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves process signal handling to the caller."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class EphemeralServer:
    """Serves an ``ArtifactStore`` on a local port for the lifetime of a run."""

    def __init__(self, store: ArtifactStore, working_dir: str | Path, mocha_dir: str | Path | None, host: str = "127.0.0.1"):
        self.app = create_app(store, working_dir, mocha_dir)
        self.host = host
        self.port: int | None = None
        self._server: _EmbeddedServer | None = None
        self._task: asyncio.Task | None = None

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"

    async def start(self, preferred_port: int) -> int:
        """Start serving and return the port actually bound."""
        sock = bind_listening_socket(self.host, preferred_port)
        self.port = int(sock.getsockname()[1])

        config = uvicorn.Config(self.app, log_level="warning", access_log=False, lifespan="off")
        self._server = _EmbeddedServer(config)
        self._task = asyncio.create_task(self._server.serve(sockets=[sock]))

        while not self._server.started:
            if self._task.done():
                self._task.result()
                raise ServerBindError(f"HTTP server exited before listening on port {self.port}")
            await asyncio.sleep(0.01)
        return self.port

    async def close(self) -> None:
        """Stop accepting connections and wait until the server has shut down."""
        server, task = self._server, self._task
        self._server = self._task = None
        if server is None or task is None:
            return
        server.should_exit = True
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning("HTTP server shutdown timed out; forcing exit")
            server.force_exit = True
            await task
