"""Dependency injection for the preview gateway."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Annotated

import httpx
import structlog
from fastapi import Depends, Header

from preview_gateway.auth import build_auth_verifier
from preview_gateway.collaborators import (
    AuthVerifier,
    InstanceLauncher,
    Principal,
    ProjectFileStore,
)
from preview_gateway.config import Settings, settings
from preview_gateway.exceptions import UnauthorizedError
from preview_gateway.file_store import build_file_store
from preview_gateway.gateway import (
    DirectoryListingStrategy,
    LiveEditOverrideStrategy,
    ProxyGateway,
    StaticFileStrategy,
    UpstreamStrategy,
)
from preview_gateway.inspection import InspectionOverlayGenerator
from preview_gateway.launcher import LocalProcessLauncher
from preview_gateway.navigation import NavigationTracker
from preview_gateway.registry import InstanceRegistry

logger = structlog.get_logger()


@dataclass
class ServiceContainer:
    """Every long-lived object the routes need, created together."""

    http_client: httpx.AsyncClient
    registry: InstanceRegistry
    tracker: NavigationTracker
    launcher: InstanceLauncher
    file_store: ProjectFileStore
    auth_verifier: AuthVerifier
    gateway: ProxyGateway
    inspector: InspectionOverlayGenerator


def build_services(
    config: Settings,
    *,
    http_client: httpx.AsyncClient | None = None,
    launcher: InstanceLauncher | None = None,
    file_store: ProjectFileStore | None = None,
    auth_verifier: AuthVerifier | None = None,
) -> ServiceContainer:
    """Wire the gateway together. Collaborators default to the adapters chosen by settings."""
    client = http_client or httpx.AsyncClient(
        timeout=httpx.Timeout(config.upstream_timeout, connect=config.upstream_connect_timeout),
    )

    if launcher is None:
        launcher = LocalProcessLauncher(config)
    if file_store is None:
        file_store = build_file_store(config, client)
    if auth_verifier is None:
        auth_verifier = build_auth_verifier(config, client)

    registry = InstanceRegistry(
        preview_root=config.preview_root,
        terminate_fn=launcher.terminate,
        launch_timeout=config.launch_timeout,
    )
    if isinstance(launcher, LocalProcessLauncher):
        launcher.on_exit = registry.mark_exited

    tracker = NavigationTracker()

    gateway = ProxyGateway(
        registry,
        tracker,
        auth_verifier,
        strategies=[
            LiveEditOverrideStrategy(file_store),
            UpstreamStrategy(
                client,
                httpx.Timeout(config.upstream_timeout, connect=config.upstream_connect_timeout),
            ),
            StaticFileStrategy(),
            DirectoryListingStrategy(
                file_store,
                max_entries=config.listing_max_entries,
                max_depth=config.listing_max_depth,
            ),
        ],
        extra_asset_prefixes=config.extra_asset_prefixes,
        public_base_url=config.public_base_url,
    )

    inspector = InspectionOverlayGenerator(
        registry,
        tracker,
        client,
        timeout=config.inspection_timeout,
        max_elements=config.inspection_max_elements,
        selector_depth=config.selector_depth,
    )

    return ServiceContainer(
        http_client=client,
        registry=registry,
        tracker=tracker,
        launcher=launcher,
        file_store=file_store,
        auth_verifier=auth_verifier,
        gateway=gateway,
        inspector=inspector,
    )


class ServicesSingleton:
    """Singleton holder for the service container."""

    _container: ServiceContainer | None = None

    @classmethod
    def get(cls) -> ServiceContainer:
        """Get or create the service container."""
        if cls._container is None:
            cls._container = build_services(settings)
        return cls._container

    @classmethod
    def set(cls, container: ServiceContainer) -> None:
        cls._container = container

    @classmethod
    def clear_instance(cls) -> None:
        cls._container = None


async def init_services() -> ServiceContainer:
    """Create (unless already provided) and initialize the service container."""
    container = ServicesSingleton.get()
    container.registry.init()
    container.tracker.init()
    logger.info("Preview services initialized")
    return container


async def shutdown_services() -> None:
    """Stop every live instance, then release shared resources."""
    container = ServicesSingleton._container
    if container is None:
        return

    live = [i for i in container.registry.all() if not i.status.is_terminal]
    if live:
        logger.info("Stopping preview instances", count=len(live))
        await asyncio.gather(
            *(container.registry.stop(i.id) for i in live),
            return_exceptions=True,
        )

    await container.registry.shutdown()
    container.tracker.shutdown()
    await container.http_client.aclose()
    ServicesSingleton.clear_instance()
    logger.info("Preview services shut down")


def get_services() -> ServiceContainer:
    return ServicesSingleton.get()


def get_registry() -> InstanceRegistry:
    return ServicesSingleton.get().registry


def get_tracker() -> NavigationTracker:
    return ServicesSingleton.get().tracker


def get_gateway() -> ProxyGateway:
    return ServicesSingleton.get().gateway


def get_inspector() -> InspectionOverlayGenerator:
    return ServicesSingleton.get().inspector


def get_launcher() -> InstanceLauncher:
    return ServicesSingleton.get().launcher


async def get_current_principal(
    authorization: Annotated[str | None, Header()] = None,
) -> Principal:
    """Resolve the management caller from ``Authorization: Bearer <token>``."""
    if not authorization or not authorization.startswith("Bearer "):
        raise UnauthorizedError("Authentication required")
    token = authorization[7:].strip()
    principal = await ServicesSingleton.get().auth_verifier.verify(token)
    if principal is None:
        raise UnauthorizedError("Invalid token")
    return principal


CurrentPrincipal = Annotated[Principal, Depends(get_current_principal)]
Registry = Annotated[InstanceRegistry, Depends(get_registry)]
Tracker = Annotated[NavigationTracker, Depends(get_tracker)]
Gateway = Annotated[ProxyGateway, Depends(get_gateway)]
Inspector = Annotated[InspectionOverlayGenerator, Depends(get_inspector)]
Launcher = Annotated[InstanceLauncher, Depends(get_launcher)]
