import errno
import logging
import socket
import sys
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from starlette.types import ASGIApp, Receive, Scope, Send

from backend.app.api import routes_jobs
from backend.app.schemas.jobs import HealthResponse
from backend.config import Settings, load_settings
from backend.domain.services.job_service import JobController
from backend.infrastructure.workspace import WorkspaceManager

logger = logging.getLogger("uvicorn.access")


class LogRequestsMiddleware:
    """
    Log when a request is received (before body is read), so long uploads show up immediately.

    Plain ASGI: ``receive`` is passed through untouched so routes still see
    ``http.disconnect``.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "http":
            logger.info("Request started: %s %s", scope["method"], scope["path"])
        await self.app(scope, receive, send)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # scratch root lives exactly as long as the server process
        workspaces = WorkspaceManager(settings.workspace_root)
        workspaces.open()
        app.state.settings = settings
        app.state.workspaces = workspaces
        app.state.controller = JobController(settings, workspaces)
        logging.getLogger(__name__).info(
            "Engine ready: rhubarb=%s ffmpeg=%s workspace=%s",
            settings.rhubarb_path, settings.ffmpeg_binary, settings.workspace_root,
        )
        try:
            yield
        finally:
            workspaces.close()

    app = FastAPI(title="LipForge Engine", version="0.1.0", lifespan=lifespan)

    app.add_middleware(LogRequestsMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(routes_jobs.router)

    @app.get("/", response_class=PlainTextResponse)
    async def index():
        return "LipForge Local Engine Active"

    @app.get("/health", response_model=HealthResponse)
    async def health(request: Request):
        current: Settings = request.app.state.settings
        return HealthResponse(
            status="ok",
            active_jobs=len(request.app.state.workspaces.active()),
            recognizer_installed=current.rhubarb_path.is_file(),
            recognizer_assets_installed=current.assets_dir.is_dir(),
        )

    return app


app = create_app()


def _port_in_use(host: str, port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError as e:
            return e.errno == errno.EADDRINUSE
    return False


def serve() -> None:
    """Run the engine with uvicorn on the configured host and port."""
    import uvicorn

    settings = load_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if _port_in_use(settings.host, settings.port):
        logging.getLogger(__name__).error(
            "Port %s is already in use. Please close other instances.", settings.port
        )
        sys.exit(1)
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    serve()
