from __future__ import annotations

import logging
import threading
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .health import HealthState

logger = logging.getLogger(__name__)


def create_app(health: HealthState) -> FastAPI:
    app = FastAPI(title="ThermoBeacon gateway health", docs_url=None, redoc_url=None, openapi_url=None)

    @app.get("/health")
    def healthcheck() -> JSONResponse:
        snapshot = health.snapshot()
        logger.debug("Health checked: %s", snapshot.status.value)
        return JSONResponse(status_code=snapshot.http_status, content={"message": snapshot.message})

    @app.exception_handler(StarletteHTTPException)
    async def not_found(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
        message = "Resource not found" if exc.status_code == 404 else str(exc.detail)
        return JSONResponse(status_code=exc.status_code, content={"message": message})

    return app


class HealthServer:
    """Serve ``/health`` with uvicorn from a daemon thread."""

    def __init__(self, health: HealthState, host: str = "127.0.0.1", port: int = 8080):
        self.host = host
        self.port = port
        config = uvicorn.Config(
            create_app(health),
            host=host,
            port=port,
            log_level="warning",
            log_config=None,
        )
        self._server = uvicorn.Server(config)
        self._thread: Optional[threading.Thread] = None

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}/health"

    def start(self) -> None:
        self._thread = threading.Thread(target=self._server.run, name="health-server", daemon=True)
        self._thread.start()
        logger.info("Started health check service at %s", self.url)

    def stop(self) -> None:
        self._server.should_exit = True
        if self._thread is not None:
            self._thread.join(timeout=5.0)
            self._thread = None
