"""Runtime Agent - host-level container reconciler.

This agent runs on each compute host and handles:
- Starting containers from control-plane specifications
- Reporting whether a specification's container is running
- Health reporting
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI

from runtime_agent.config import settings
from runtime_agent.errors import ReconcileError
from runtime_agent.logging_config import setup_agent_logging
from runtime_agent.progress import get_progress
from runtime_agent.runtime import get_container_starter
from runtime_agent.schemas import (
    AgentInfo,
    ContainerStatusRequest,
    ContainerStatusResponse,
    StartContainerRequest,
    StartContainerResponse,
)
from runtime_agent.version import __version__

# Generate agent ID if not configured
AGENT_ID = settings.agent_id or str(uuid.uuid4())[:8]

AGENT_STARTED_AT = datetime.now(timezone.utc)

setup_agent_logging(AGENT_ID)
logger = logging.getLogger(__name__)


def get_agent_info() -> AgentInfo:
    return AgentInfo(
        agent_id=AGENT_ID,
        address=f"{settings.agent_host}:{settings.agent_port}",
        started_at=AGENT_STARTED_AT,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan."""
    logger.info(f"Agent {AGENT_ID} starting...")
    logger.info(f"Docker socket: {settings.docker_socket}")
    yield
    logger.info(f"Agent {AGENT_ID} shutting down")


app = FastAPI(
    title="Runtime Agent",
    version=__version__,
    lifespan=lifespan,
)


# --- Health Endpoints ---

@app.get("/health")
def health():
    """Basic health check."""
    return {
        "status": "ok",
        "agent_id": AGENT_ID,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/info")
def info():
    """Return agent info."""
    return get_agent_info().model_dump()


# --- Container Endpoints ---

@app.post("/containers/start")
async def start_container(request: StartContainerRequest) -> StartContainerResponse:
    """Reconcile a container specification to a started container.

    Failures are reported in the response body with their category so
    the controller can tell a bad specification from an engine problem.
    """
    spec = request.container
    logger.info(f"Start request for container {spec.name or spec.uuid}")

    progress = get_progress(spec.id)
    try:
        container_id = await get_container_starter().start_container(
            spec,
            volumes=request.volumes,
            network_kind=request.network_kind,
            credentials=request.credentials,
            ids_map=request.ids_map,
            progress=progress,
        )
    except ReconcileError as e:
        logger.error(f"Failed to start container {spec.name or spec.uuid}: {e}")
        return StartContainerResponse(success=False, error=e.to_dict())
    finally:
        progress.close()

    return StartContainerResponse(success=True, container_id=container_id)


@app.post("/containers/status")
async def container_status(request: ContainerStatusRequest) -> ContainerStatusResponse:
    """Report whether the container of a specification is running."""
    try:
        running, restarting = await get_container_starter().is_container_started(request.container)
    except ReconcileError as e:
        logger.error(f"Failed to query container {request.container.uuid}: {e}")
        return ContainerStatusResponse(running=False, restarting=False, error=e.to_dict())
    return ContainerStatusResponse(running=running, restarting=restarting)


# --- Entry point ---

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "runtime_agent.main:app",
        host=settings.agent_host,
        port=settings.agent_port,
        reload=False,
    )
