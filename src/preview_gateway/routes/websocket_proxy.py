"""WebSocket proxy for live reload connections of preview instances.

The rewriter points live-reload socket URLs (Next.js ``/_next/webpack-hmr``,
webpack-dev-server ``/ws``, ...) at the instance's proxy path; this route
bridges those connections to the backing process.
"""

import asyncio
import contextlib
from urllib.parse import urlencode

import structlog
import websockets
from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status
from starlette.websockets import WebSocketState
from websockets.asyncio.client import ClientConnection

from preview_gateway.classifier import is_asset_path
from preview_gateway.config import settings
from preview_gateway.deps import Gateway, Registry
from preview_gateway.exceptions import PreviewGatewayError
from preview_gateway.validation import ValidationError, validate_instance_id, validate_project_id

logger = structlog.get_logger()

router = APIRouter(prefix="/projects/{project_id}/preview", tags=["websocket"])


async def _forward_client_to_upstream(
    websocket: WebSocket,
    upstream: ClientConnection,
) -> None:
    """Forward messages from client to upstream."""
    try:
        while True:
            data = await websocket.receive()
            if data.get("type") == "websocket.disconnect":
                return
            if data.get("text") is not None:
                await upstream.send(data["text"])
            elif data.get("bytes") is not None:
                await upstream.send(data["bytes"])
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.debug("Client to upstream error", error=str(e))


async def _forward_upstream_to_client(
    websocket: WebSocket,
    upstream: ClientConnection,
) -> None:
    """Forward messages from upstream to client."""
    try:
        async for message in upstream:
            if isinstance(message, str):
                await websocket.send_text(message)
            else:
                await websocket.send_bytes(message)
    except websockets.ConnectionClosed:
        pass
    except Exception as e:
        logger.debug("Upstream to client error", error=str(e))


async def _run_bidirectional_proxy(
    websocket: WebSocket,
    upstream: ClientConnection,
) -> None:
    """Run bidirectional WebSocket proxy until either side closes."""
    client_task = asyncio.create_task(_forward_client_to_upstream(websocket, upstream))
    upstream_task = asyncio.create_task(_forward_upstream_to_client(websocket, upstream))

    _done, pending = await asyncio.wait(
        [client_task, upstream_task],
        return_when=asyncio.FIRST_COMPLETED,
    )

    for task in pending:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


async def _reject(
    websocket: WebSocket,
    reason: str,
    code: int = status.WS_1008_POLICY_VIOLATION,
) -> None:
    if websocket.client_state == WebSocketState.DISCONNECTED:
        return
    if websocket.client_state == WebSocketState.CONNECTING:
        await websocket.accept()
    await websocket.close(code=code, reason=reason)


async def _handle_websocket_errors(
    websocket: WebSocket,
    instance_id: str,
    target_url: str,
    error: Exception,
) -> None:
    """Close the client socket with a code matching the upstream failure."""
    if isinstance(error, websockets.InvalidURI):
        logger.warning("Invalid WebSocket URI", instance_id=instance_id)
        await _reject(websocket, "Invalid target URI")
    elif isinstance(error, websockets.InvalidHandshake):
        logger.warning("WebSocket handshake failed", instance_id=instance_id, error=str(error))
        await _reject(websocket, "Handshake failed")
    elif isinstance(error, OSError):
        logger.warning(
            "WebSocket connection refused",
            instance_id=instance_id,
            target_url=target_url,
        )
        await _reject(websocket, "Could not connect to preview server")
    else:
        logger.exception("WebSocket proxy error", instance_id=instance_id)
        await _reject(websocket, "Proxy error", status.WS_1011_INTERNAL_ERROR)


@router.websocket("/{instance_id}/proxy/{path:path}")
async def websocket_proxy(
    websocket: WebSocket,
    project_id: str,
    instance_id: str,
    path: str,
    registry: Registry,
    gateway: Gateway,
) -> None:
    """Bridge a live reload socket to the instance.

    Socket paths classified as assets (``/_next/webpack-hmr``, ``/__vite...``)
    need no token; any other path needs the owner's ``token`` query parameter,
    which is then not forwarded.
    """
    try:
        validate_project_id(project_id)
        validate_instance_id(instance_id)
    except ValidationError:
        await _reject(websocket, "Invalid preview ID")
        return

    instance = registry.get(instance_id)
    if instance is None or instance.project_id != project_id:
        await _reject(websocket, "Preview not found")
        return
    if not instance.is_running or not instance.backing_address:
        await _reject(websocket, f"Preview is {instance.status.value}")
        return

    target_path = f"/{path}"
    query = websocket.query_params.multi_items()
    if not is_asset_path(target_path, settings.extra_asset_prefixes):
        try:
            await gateway.authorize(instance, websocket.query_params.get("token"))
        except PreviewGatewayError as e:
            await _reject(websocket, e.message)
            return
        query = [(k, v) for k, v in query if k != "token"]

    ws_url = f"ws://{instance.backing_address}{target_path}"
    if query:
        ws_url = f"{ws_url}?{urlencode(query)}"

    subprotocols = websocket.scope.get("subprotocols") or []

    logger.info(
        "Establishing WebSocket proxy",
        instance_id=instance_id,
        path=target_path,
    )

    try:
        async with websockets.connect(
            ws_url,
            subprotocols=subprotocols or None,
            open_timeout=settings.upstream_connect_timeout,
        ) as upstream:
            await websocket.accept(subprotocol=upstream.subprotocol)
            registry.touch(instance_id)
            await _run_bidirectional_proxy(websocket, upstream)
    except Exception as e:
        await _handle_websocket_errors(websocket, instance_id, ws_url, e)
    finally:
        with contextlib.suppress(RuntimeError):
            await websocket.close()
        logger.debug("WebSocket proxy closed", instance_id=instance_id)
