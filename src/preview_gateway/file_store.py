"""Project file store adapters used for live-edit overrides."""

from __future__ import annotations

from http import HTTPStatus
from typing import TYPE_CHECKING
from urllib.parse import quote

import httpx
import structlog

from preview_gateway.collaborators import ProjectFileStore

if TYPE_CHECKING:
    from preview_gateway.config import Settings

logger = structlog.get_logger()


class HttpProjectFileStore:
    """Reads live file contents from the platform's project file service."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        service_token: str | None = None,
    ) -> None:
        self._client = client
        self._base_url = base_url.rstrip("/")
        self._headers: dict[str, str] = {}
        if service_token:
            self._headers["X-Internal-Service-Token"] = service_token

    async def read(self, project_id: str, path: str) -> bytes | None:
        file_path = quote(path.lstrip("/"))
        response = await self._client.get(
            f"{self._base_url}/projects/{project_id}/files/{file_path}",
            headers=self._headers,
        )
        if response.status_code == HTTPStatus.NOT_FOUND:
            return None
        response.raise_for_status()
        return response.content

    async def list_files(self, project_id: str) -> list[str]:
        response = await self._client.get(
            f"{self._base_url}/projects/{project_id}/files",
            headers=self._headers,
        )
        if response.status_code == HTTPStatus.NOT_FOUND:
            return []
        response.raise_for_status()
        data = response.json()
        if isinstance(data, dict):
            data = data.get("files", [])
        paths: list[str] = []
        for entry in data:
            if isinstance(entry, str):
                paths.append(entry)
            elif isinstance(entry, dict) and entry.get("path"):
                paths.append(str(entry["path"]))
        return paths


class NullFileStore:
    """File store with no overrides."""

    async def read(self, project_id: str, path: str) -> bytes | None:  # noqa: ARG002
        return None

    async def list_files(self, project_id: str) -> list[str]:  # noqa: ARG002
        return []


def build_file_store(settings: Settings, client: httpx.AsyncClient) -> ProjectFileStore:
    if settings.file_store_url:
        return HttpProjectFileStore(
            client, settings.file_store_url, settings.internal_service_token
        )
    logger.info("No file store configured - live-edit overrides disabled")
    return NullFileStore()
