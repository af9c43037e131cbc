"""Preview instance and inspection models."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class PreviewStatus(str, Enum):
    """Preview instance lifecycle status.

    starting -> running | error | stopped; running -> stopped.
    error and stopped are terminal.
    """

    STARTING = "starting"
    RUNNING = "running"
    ERROR = "error"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self in (PreviewStatus.ERROR, PreviewStatus.STOPPED)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def build_public_base_path(project_id: str, instance_id: str) -> str:
    """Stable external path prefix for one instance's proxied traffic."""
    return f"/projects/{project_id}/preview/{instance_id}/proxy"


class PreviewInstance(BaseModel):
    """One running (or starting, or dead) copy of a previewed application."""

    id: str
    project_id: str
    owner_id: str
    status: PreviewStatus = PreviewStatus.STARTING
    backing_address: str | None = None
    public_base_path: str
    workspace_path: str
    name: str = "Project Preview"
    app_type: str = "nextjs"
    started_at: datetime = Field(default_factory=_utcnow)
    last_accessed_at: datetime = Field(default_factory=_utcnow)
    error_message: str | None = None

    @property
    def origin_url(self) -> str | None:
        """Raw origin of the backing process, None until it is bound."""
        if not self.backing_address:
            return None
        return f"http://{self.backing_address}"

    @property
    def is_running(self) -> bool:
        return self.status == PreviewStatus.RUNNING


class PreviewInstanceResponse(BaseModel):
    """Public view of a preview instance."""

    id: str
    project_id: str
    owner_id: str
    name: str
    type: str
    status: PreviewStatus
    url: str
    backing_address: str | None
    workspace_path: str
    started_at: datetime
    last_accessed_at: datetime
    error_message: str | None = None

    @classmethod
    def from_instance(cls, instance: PreviewInstance) -> PreviewInstanceResponse:
        return cls(
            id=instance.id,
            project_id=instance.project_id,
            owner_id=instance.owner_id,
            name=instance.name,
            type=instance.app_type,
            status=instance.status,
            url=f"{instance.public_base_path}/",
            backing_address=instance.backing_address,
            workspace_path=instance.workspace_path,
            started_at=instance.started_at,
            last_accessed_at=instance.last_accessed_at,
            error_message=instance.error_message,
        )


class PreviewStartRequest(BaseModel):
    """Body of a start request; every field is optional."""

    name: str | None = None
    type: str | None = None


class PreviewEnvelope(BaseModel):
    success: bool = True
    preview: PreviewInstanceResponse


class PreviewListResponse(BaseModel):
    success: bool = True
    previews: list[PreviewInstanceResponse]


class SetPathRequest(BaseModel):
    path: str


class LastPathResponse(BaseModel):
    instance_id: str
    path: str
    tracked: bool


class SemanticRole(str, Enum):
    """What a user most likely means when pointing at an element."""

    ACTION = "action"
    NAVIGATION = "navigation"
    INPUT = "input"
    LAYOUT = "layout"
    CONTENT = "content"
    UNKNOWN = "unknown"


class ActionKind(str, Enum):
    """Keyword-based sub-classification of action elements."""

    SUBMIT = "submit"
    CANCEL = "cancel"
    DESTRUCTIVE = "destructive"
    EDIT = "edit"
    CREATE = "create"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ParentContext(_CamelModel):
    tag_name: str
    class_name: str = ""
    role: str | None = None


class InspectionElement(_CamelModel):
    """Structured description of one clickable element, built per inspection pass."""

    id: str
    selector: str
    tag_name: str
    component_name_guess: str
    text_snippet: str = ""
    attributes: dict[str, str] = Field(default_factory=dict)
    semantic_role: SemanticRole = SemanticRole.UNKNOWN
    action_kind: ActionKind | None = None
    parent_context: ParentContext | None = None


class InspectionElementsResponse(_CamelModel):
    path: str
    elements: list[InspectionElement]
