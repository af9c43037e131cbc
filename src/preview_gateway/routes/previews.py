"""Preview lifecycle, proxy and inspection routes."""

from typing import Annotated

import structlog
from fastapi import APIRouter, Query, Request, Response, status
from fastapi.responses import HTMLResponse

from preview_gateway.deps import CurrentPrincipal, Gateway, Inspector, Launcher, Registry, Tracker
from preview_gateway.exceptions import (
    ForbiddenError,
    NotFoundError,
    PreviewGatewayError,
    RenderDegradedError,
    UnauthorizedError,
)
from preview_gateway.gateway import NO_CACHE_HEADERS, ProxyGateway
from preview_gateway.models.instance import (
    InspectionElementsResponse,
    LastPathResponse,
    PreviewEnvelope,
    PreviewInstance,
    PreviewInstanceResponse,
    PreviewListResponse,
    PreviewStartRequest,
    SetPathRequest,
)
from preview_gateway.models.proxy import ProxyRequest
from preview_gateway.registry import InstanceRegistry
from preview_gateway.validation import validate_instance_id, validate_project_id

logger = structlog.get_logger()

router = APIRouter(prefix="/projects/{project_id}/preview", tags=["preview"])

BODY_METHODS = ("POST", "PUT", "PATCH", "DELETE")
PROXY_METHODS = ["GET", "HEAD", "OPTIONS", "POST", "PUT", "PATCH", "DELETE"]


def _find_instance(
    registry: InstanceRegistry, project_id: str, instance_id: str
) -> PreviewInstance | None:
    validate_project_id(project_id)
    validate_instance_id(instance_id)
    instance = registry.get(instance_id)
    if instance is None or instance.project_id != project_id:
        return None
    return instance


def _owned_instance(
    registry: InstanceRegistry, project_id: str, instance_id: str, user_id: str
) -> PreviewInstance:
    instance = _find_instance(registry, project_id, instance_id)
    if instance is None:
        raise NotFoundError("Preview not found")
    if instance.owner_id != user_id:
        raise ForbiddenError("Access denied")
    return instance


# --- Lifecycle ---


@router.post("/start", status_code=status.HTTP_201_CREATED, response_model=PreviewEnvelope)
async def start_preview(
    project_id: str,
    principal: CurrentPrincipal,
    registry: Registry,
    launcher: Launcher,
    body: PreviewStartRequest | None = None,
) -> PreviewEnvelope:
    """Create a preview instance. It is returned while still starting."""
    validate_project_id(project_id)
    options = body or PreviewStartRequest()
    try:
        instance = registry.create(
            project_id,
            principal.user_id,
            launcher.launch,
            name=options.name,
            app_type=options.type or "nextjs",
        )
    except Exception as e:
        logger.exception("Failed to start preview", project_id=project_id)
        raise PreviewGatewayError("Failed to start preview", 500) from e
    return PreviewEnvelope(preview=PreviewInstanceResponse.from_instance(instance))


@router.get("/list", response_model=PreviewListResponse)
async def list_previews(
    project_id: str,
    principal: CurrentPrincipal,
    registry: Registry,
) -> PreviewListResponse:
    """List the caller's preview instances for a project."""
    validate_project_id(project_id)
    previews = [
        PreviewInstanceResponse.from_instance(i)
        for i in registry.list_by_project(project_id)
        if i.owner_id == principal.user_id
    ]
    return PreviewListResponse(previews=previews)


@router.delete("/{instance_id}")
async def stop_preview(
    project_id: str,
    instance_id: str,
    principal: CurrentPrincipal,
    registry: Registry,
) -> dict[str, bool | str]:
    """Stop a preview instance. Stopping a stopped instance succeeds."""
    _owned_instance(registry, project_id, instance_id, principal.user_id)
    await registry.stop(instance_id)
    return {"success": True, "message": "Preview stopped"}


@router.get("/{instance_id}/status", response_model=PreviewEnvelope)
async def preview_status(
    project_id: str,
    instance_id: str,
    principal: CurrentPrincipal,
    registry: Registry,
) -> PreviewEnvelope:
    instance = _owned_instance(registry, project_id, instance_id, principal.user_id)
    return PreviewEnvelope(preview=PreviewInstanceResponse.from_instance(instance))


# --- Navigation diagnostics ---


@router.get("/{instance_id}/last-path", response_model=LastPathResponse)
async def last_path(
    project_id: str,
    instance_id: str,
    principal: CurrentPrincipal,
    registry: Registry,
    tracker: Tracker,
) -> LastPathResponse:
    _owned_instance(registry, project_id, instance_id, principal.user_id)
    return LastPathResponse(
        instance_id=instance_id,
        path=tracker.get(instance_id),
        tracked=tracker.has(instance_id),
    )


@router.post("/{instance_id}/set-path")
async def set_path(
    project_id: str,
    instance_id: str,
    body: SetPathRequest,
    principal: CurrentPrincipal,
    registry: Registry,
    tracker: Tracker,
) -> dict[str, bool | str]:
    _owned_instance(registry, project_id, instance_id, principal.user_id)
    recorded = tracker.record(instance_id, body.path)
    return {"success": True, "path": recorded}


@router.post("/{instance_id}/clear-cache")
async def clear_cache(
    project_id: str,
    instance_id: str,
    principal: CurrentPrincipal,
    registry: Registry,
    tracker: Tracker,
) -> dict[str, bool]:
    _owned_instance(registry, project_id, instance_id, principal.user_id)
    tracker.clear(instance_id)
    return {"success": True}


# --- Proxy ---


async def _to_proxy_request(request: Request) -> ProxyRequest:
    body = None
    if request.method in BODY_METHODS:
        body = await request.body()
    return ProxyRequest(
        method=request.method,
        path=request.url.path,
        headers=dict(request.headers.items()),
        body=body,
        query=request.query_params.multi_items(),
        client_host=request.client.host if request.client else None,
        scheme=request.url.scheme,
    )


async def _proxy(
    project_id: str, instance_id: str, request: Request, gateway: ProxyGateway
) -> Response:
    validate_project_id(project_id)
    validate_instance_id(instance_id)
    proxy_request = await _to_proxy_request(request)
    result = await gateway.handle(project_id, instance_id, proxy_request)
    response = Response(content=result.body, status_code=result.status_code)
    for name, value in result.headers.multi_items():
        response.headers.append(name, value)
    return response


@router.api_route("/{instance_id}/proxy", methods=PROXY_METHODS)
async def proxy_root(
    project_id: str,
    instance_id: str,
    request: Request,
    gateway: Gateway,
) -> Response:
    return await _proxy(project_id, instance_id, request, gateway)


@router.api_route("/{instance_id}/proxy/{path:path}", methods=PROXY_METHODS)
async def proxy_path(
    project_id: str,
    instance_id: str,
    path: str,  # noqa: ARG001
    request: Request,
    gateway: Gateway,
) -> Response:
    """Proxy any request into the preview instance.

    Bundle assets are served without a token. Everything else needs the
    owner's token in the ``token`` query parameter.
    """
    return await _proxy(project_id, instance_id, request, gateway)


# --- Inspection ---


async def _authorize_inspection(
    gateway: ProxyGateway, instance: PreviewInstance | None, token: str | None
) -> None:
    if not token:
        raise UnauthorizedError("Authentication required")
    if instance is not None:
        await gateway.authorize(instance, token)


@router.get("/{instance_id}/inspection", response_class=HTMLResponse)
async def inspection(
    project_id: str,
    instance_id: str,
    registry: Registry,
    gateway: Gateway,
    inspector: Inspector,
    path: Annotated[str | None, Query()] = None,
    token: Annotated[str | None, Query()] = None,
) -> HTMLResponse:
    """Live page annotated for element inspection."""
    instance = _find_instance(registry, project_id, instance_id)
    await _authorize_inspection(gateway, instance, token)
    document = await inspector.generate(instance.id if instance else instance_id, path)
    return HTMLResponse(content=document, headers=NO_CACHE_HEADERS)


@router.get(
    "/{instance_id}/inspection/elements",
    response_model=InspectionElementsResponse,
    response_model_by_alias=True,
)
async def inspection_elements(
    project_id: str,
    instance_id: str,
    registry: Registry,
    gateway: Gateway,
    inspector: Inspector,
    path: Annotated[str | None, Query()] = None,
    token: Annotated[str | None, Query()] = None,
) -> InspectionElementsResponse:
    """Inspection elements of the live page as JSON."""
    instance = _find_instance(registry, project_id, instance_id)
    await _authorize_inspection(gateway, instance, token)
    if instance is None:
        raise NotFoundError("Preview not found")
    try:
        inspected_path, elements = await inspector.elements(instance.id, path)
    except RenderDegradedError as e:
        raise PreviewGatewayError(e.message, status.HTTP_502_BAD_GATEWAY) from e
    return InspectionElementsResponse(path=inspected_path, elements=elements)
