"""Interfaces of the services the gateway depends on but does not own."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from preview_gateway.models.instance import PreviewInstance


@dataclass(frozen=True)
class LaunchResult:
    """Where a freshly launched preview process can be reached."""

    address: str


@dataclass(frozen=True)
class Principal:
    """Authenticated caller."""

    user_id: str


class InstanceLauncher(Protocol):
    """Starts and stops preview processes. How they are built is opaque."""

    async def launch(self, instance: PreviewInstance) -> LaunchResult:
        """Start a process for the instance and return its address once it accepts traffic."""
        ...

    async def terminate(self, instance_id: str) -> None:
        """Stop the process backing the instance, if any."""
        ...


class ProjectFileStore(Protocol):
    """Virtual file store holding live, unsaved edits of a project."""

    async def read(self, project_id: str, path: str) -> bytes | None:
        """Return the stored content of a file, or None when there is no override."""
        ...

    async def list_files(self, project_id: str) -> list[str]:
        """Return every stored file path of the project."""
        ...


class AuthVerifier(Protocol):
    """Resolves bearer tokens to principals."""

    async def verify(self, token: str) -> Principal | None: ...
