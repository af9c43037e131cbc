"""Shared fixtures for preview gateway tests."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Generator
from pathlib import Path
from typing import Any

import httpx
import pytest
from fastapi.testclient import TestClient

from preview_gateway.auth import StaticTokenVerifier
from preview_gateway.collaborators import LaunchResult
from preview_gateway.config import Settings
from preview_gateway.deps import ServiceContainer, ServicesSingleton, build_services
from preview_gateway.models.instance import PreviewInstance, PreviewStatus
from preview_gateway.navigation import NavigationTracker
from preview_gateway.registry import InstanceRegistry

OWNER_ID = "user-1"
OWNER_TOKEN = "owner-token"
OTHER_ID = "user-2"
OTHER_TOKEN = "other-token"
PROJECT_ID = "proj-1"
UPSTREAM_ADDRESS = "127.0.0.1:3101"
UPSTREAM_ORIGIN = f"http://{UPSTREAM_ADDRESS}"
PUBLIC_BASE_URL = "https://preview.example.com"


# ============================================
# Collaborator fakes
# ============================================


class FakeLauncher:
    """Launcher that binds every instance to a fixed address without starting anything."""

    def __init__(
        self,
        address: str = UPSTREAM_ADDRESS,
        error: Exception | None = None,
        delay: float = 0.0,
    ) -> None:
        self.address = address
        self.error = error
        self.delay = delay
        self.launched: list[str] = []
        self.terminated: list[str] = []

    async def launch(self, instance: PreviewInstance) -> LaunchResult:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        self.launched.append(instance.id)
        return LaunchResult(address=self.address)

    async def terminate(self, instance_id: str) -> None:
        self.terminated.append(instance_id)


class InMemoryFileStore:
    """Project file store backed by a dict of (project_id, path) -> content."""

    def __init__(self, files: dict[tuple[str, str], bytes] | None = None) -> None:
        self.files = dict(files or {})
        self.reads: list[tuple[str, str]] = []

    def put(self, project_id: str, path: str, content: str | bytes) -> None:
        data = content.encode() if isinstance(content, str) else content
        self.files[(project_id, path)] = data

    async def read(self, project_id: str, path: str) -> bytes | None:
        self.reads.append((project_id, path))
        return self.files.get((project_id, path))

    async def list_files(self, project_id: str) -> list[str]:
        return sorted(p.lstrip("/") for (pid, p) in self.files if pid == project_id)


# ============================================
# Unit fixtures
# ============================================


@pytest.fixture
def fake_launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture
def file_store() -> InMemoryFileStore:
    return InMemoryFileStore()


@pytest.fixture
def auth_verifier() -> StaticTokenVerifier:
    return StaticTokenVerifier({OWNER_TOKEN: OWNER_ID, OTHER_TOKEN: OTHER_ID})


@pytest.fixture
def preview_root(tmp_path: Path) -> Path:
    root = tmp_path / "previews"
    root.mkdir()
    return root


@pytest.fixture
def registry(preview_root: Path, fake_launcher: FakeLauncher) -> InstanceRegistry:
    reg = InstanceRegistry(str(preview_root), terminate_fn=fake_launcher.terminate)
    reg.init()
    return reg


@pytest.fixture
def tracker() -> NavigationTracker:
    nav = NavigationTracker()
    nav.init()
    return nav


@pytest.fixture
def test_settings(preview_root: Path) -> Settings:
    return Settings(
        preview_root=str(preview_root),
        public_base_url=PUBLIC_BASE_URL,
        inspection_timeout=2.0,
        upstream_timeout=2.0,
    )


async def wait_until_settled(instance: PreviewInstance, attempts: int = 100) -> PreviewInstance:
    """Let the background launch task run until the instance leaves ``starting``."""
    for _ in range(attempts):
        if instance.status != PreviewStatus.STARTING:
            break
        await asyncio.sleep(0)
    return instance


async def start_running_instance(
    registry: InstanceRegistry,
    launcher: FakeLauncher,
    project_id: str = PROJECT_ID,
    owner_id: str = OWNER_ID,
) -> PreviewInstance:
    instance = registry.create(project_id, owner_id, launcher.launch)
    await wait_until_settled(instance)
    assert instance.status == PreviewStatus.RUNNING
    return instance


# ============================================
# FastAPI TestClient fixtures
# ============================================


@pytest.fixture
def services(
    test_settings: Settings,
    fake_launcher: FakeLauncher,
    file_store: InMemoryFileStore,
    auth_verifier: StaticTokenVerifier,
) -> Generator[ServiceContainer, None, None]:
    container = build_services(
        test_settings,
        http_client=httpx.AsyncClient(),
        launcher=fake_launcher,
        file_store=file_store,
        auth_verifier=auth_verifier,
    )
    ServicesSingleton.set(container)
    yield container
    ServicesSingleton.clear_instance()


@pytest.fixture
def client(services: ServiceContainer) -> Generator[TestClient, None, None]:
    """TestClient with the test service container swapped in."""
    from preview_gateway.main import app

    with TestClient(app) as test_client:
        yield test_client


def auth_headers(token: str = OWNER_TOKEN) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def start_preview(client: TestClient, project_id: str = PROJECT_ID, **body: Any) -> dict[str, Any]:
    """Start a preview through the API and wait until it is running."""
    response = client.post(
        f"/projects/{project_id}/preview/start",
        json=body or None,
        headers=auth_headers(),
    )
    assert response.status_code == 201, response.text
    preview = response.json()["preview"]

    for _ in range(200):
        status_response = client.get(
            f"/projects/{project_id}/preview/{preview['id']}/status",
            headers=auth_headers(),
        )
        preview = status_response.json()["preview"]
        if preview["status"] != "starting":
            break
        time.sleep(0.01)
    return preview
