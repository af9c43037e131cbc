"""Preview gateway routes."""

from preview_gateway.routes.health import router as health_router
from preview_gateway.routes.previews import router as previews_router
from preview_gateway.routes.websocket_proxy import router as websocket_router

__all__ = [
    "health_router",
    "previews_router",
    "websocket_router",
]
