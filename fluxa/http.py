"""Cross-monitoring endpoint and read-only status API."""

from __future__ import annotations

from typing import Any, Sequence

import structlog
import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.responses import PlainTextResponse

from fluxa import __version__
from fluxa.settings import ServiceConfig
from fluxa.status import StatusBoard


logger = structlog.get_logger(__name__)

# Cross-monitoring checkers use whatever verb they like; all of them get the same answer.
HEALTH_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


def _service_info(config: ServiceConfig, board: StatusBoard) -> dict[str, Any] | None:
    snapshot = board.get(config.url)
    if snapshot is None:
        return None
    info = snapshot.to_dict()
    info["retry_interval_seconds"] = config.retry_interval_seconds
    return info


def create_app(board: StatusBoard, services: Sequence[ServiceConfig]) -> FastAPI:
    app = FastAPI(title="fluxa", version=__version__)
    services = list(services)

    @app.api_route("/", methods=HEALTH_METHODS, response_class=PlainTextResponse)
    async def root() -> str:
        """Liveness for cross-monitoring. Independent of monitored services."""
        return "Ok"

    @app.get("/api/services")
    async def list_services() -> dict[str, Any]:
        infos = [info for info in (_service_info(s, board) for s in services) if info is not None]
        return {"services": infos, "total_count": len(infos)}

    @app.get("/api/services/{service_id:path}")
    async def get_service(service_id: str) -> dict[str, Any]:
        config: ServiceConfig | None = None
        if service_id.isascii() and service_id.isdigit():
            index = int(service_id)
            if index < len(services):
                config = services[index]
        else:
            config = next((s for s in services if s.url == service_id), None)

        if config is None:
            raise HTTPException(status_code=404, detail="unknown service")
        info = _service_info(config, board)
        if info is None:
            raise HTTPException(status_code=404, detail="service not probed yet")
        return info

    return app


def build_server(app: FastAPI, listen: str) -> uvicorn.Server:
    if listen.startswith("unix:"):
        config = uvicorn.Config(app, uds=listen[len("unix:"):], log_level="warning", access_log=False)
    else:
        host, _, port = listen.rpartition(":")
        config = uvicorn.Config(app, host=host.strip("[]"), port=int(port), log_level="warning", access_log=False)
    return uvicorn.Server(config)


async def serve(app: FastAPI, listen: str) -> None:
    """Run the endpoint inside the current event loop. Returns once uvicorn shuts down."""
    server = build_server(app, listen)
    logger.info("Listening", listen=listen)
    await server.serve()
