"""Health check endpoints."""

from fastapi import APIRouter

from preview_gateway.deps import ServicesSingleton

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy", "service": "preview-gateway"}


@router.get("/ready")
async def readiness_check() -> dict[str, str | int]:
    """Readiness check endpoint. Ready once the service container exists."""
    container = ServicesSingleton._container
    if container is None:
        return {"status": "starting", "service": "preview-gateway"}
    running = sum(1 for i in container.registry.all() if i.is_running)
    return {"status": "ready", "service": "preview-gateway", "running_previews": running}
