"""Preview gateway models."""

from preview_gateway.models.instance import (
    ActionKind,
    InspectionElement,
    InspectionElementsResponse,
    LastPathResponse,
    ParentContext,
    PreviewEnvelope,
    PreviewInstance,
    PreviewInstanceResponse,
    PreviewListResponse,
    PreviewStartRequest,
    PreviewStatus,
    SemanticRole,
    SetPathRequest,
    build_public_base_path,
)
from preview_gateway.models.proxy import ProxyRequest, ProxyResponse

__all__ = [
    "ActionKind",
    "InspectionElement",
    "InspectionElementsResponse",
    "LastPathResponse",
    "ParentContext",
    "PreviewEnvelope",
    "PreviewInstance",
    "PreviewInstanceResponse",
    "PreviewListResponse",
    "PreviewStartRequest",
    "PreviewStatus",
    "ProxyRequest",
    "ProxyResponse",
    "SemanticRole",
    "SetPathRequest",
    "build_public_base_path",
]
