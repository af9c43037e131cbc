"""Instance registry: preview instance metadata and lifecycle transitions."""

from __future__ import annotations

import asyncio
import secrets
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from pathlib import PurePosixPath

import structlog

from preview_gateway.collaborators import LaunchResult
from preview_gateway.exceptions import InvalidTransitionError
from preview_gateway.models.instance import (
    PreviewInstance,
    PreviewStatus,
    build_public_base_path,
)

logger = structlog.get_logger()

LaunchFn = Callable[[PreviewInstance], Awaitable[LaunchResult]]
TerminateFn = Callable[[str], Awaitable[None]]

ALLOWED_TRANSITIONS: dict[PreviewStatus, frozenset[PreviewStatus]] = {
    PreviewStatus.STARTING: frozenset(
        {PreviewStatus.RUNNING, PreviewStatus.ERROR, PreviewStatus.STOPPED}
    ),
    PreviewStatus.RUNNING: frozenset({PreviewStatus.STOPPED}),
    PreviewStatus.ERROR: frozenset(),
    PreviewStatus.STOPPED: frozenset(),
}


def generate_instance_id() -> str:
    return f"pv_{secrets.token_hex(6)}"


class InstanceRegistry:
    """Owns every preview instance known to this gateway process.

    Launches run as background tasks so ``create`` returns while the instance is
    still ``starting``. All mutations happen on the event loop thread, one step at
    a time, so no locking is needed.
    """

    def __init__(
        self,
        preview_root: str,
        terminate_fn: TerminateFn | None = None,
        launch_timeout: float | None = None,
    ) -> None:
        self._preview_root = preview_root
        self._terminate_fn = terminate_fn
        self._launch_timeout = launch_timeout
        self._instances: dict[str, PreviewInstance] = {}
        self._launch_tasks: dict[str, asyncio.Task[None]] = {}

    def init(self) -> None:
        self._instances.clear()
        self._launch_tasks.clear()
        logger.info("Instance registry initialized", preview_root=self._preview_root)

    async def shutdown(self) -> None:
        """Cancel pending launches. Does not terminate running processes."""
        tasks = list(self._launch_tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._launch_tasks.clear()
        logger.info("Instance registry shut down", cancelled_launches=len(tasks))

    # --- Queries ---

    def get(self, instance_id: str) -> PreviewInstance | None:
        return self._instances.get(instance_id)

    def list_by_project(self, project_id: str) -> list[PreviewInstance]:
        return [i for i in self._instances.values() if i.project_id == project_id]

    def all(self) -> list[PreviewInstance]:
        return list(self._instances.values())

    # --- Lifecycle ---

    def create(
        self,
        project_id: str,
        owner_id: str,
        launch_fn: LaunchFn,
        *,
        name: str | None = None,
        app_type: str = "nextjs",
    ) -> PreviewInstance:
        """Register a new instance and start launching it in the background.

        Must be called from a running event loop. Returns immediately with the
        instance in ``starting``.
        """
        instance_id = generate_instance_id()
        while instance_id in self._instances:
            instance_id = generate_instance_id()

        instance = PreviewInstance(
            id=instance_id,
            project_id=project_id,
            owner_id=owner_id,
            status=PreviewStatus.STARTING,
            public_base_path=build_public_base_path(project_id, instance_id),
            workspace_path=str(PurePosixPath(self._preview_root) / f"{owner_id}-{project_id}"),
            name=name or "Project Preview",
            app_type=app_type,
        )
        self._instances[instance_id] = instance

        task = asyncio.create_task(self._run_launch(instance, launch_fn))
        self._launch_tasks[instance_id] = task

        logger.info(
            "Preview instance created",
            instance_id=instance_id,
            project_id=project_id,
            owner_id=owner_id,
        )
        return instance

    async def _run_launch(self, instance: PreviewInstance, launch_fn: LaunchFn) -> None:
        try:
            if self._launch_timeout:
                result = await asyncio.wait_for(launch_fn(instance), timeout=self._launch_timeout)
            else:
                result = await launch_fn(instance)
        except asyncio.CancelledError:
            logger.info("Preview launch cancelled", instance_id=instance.id)
            raise
        except TimeoutError:
            self._fail(instance, f"Preview did not start within {self._launch_timeout:g}s")
        except Exception as e:
            logger.exception("Preview launch failed", instance_id=instance.id)
            self._fail(instance, str(e) or type(e).__name__)
        else:
            await self._bind(instance, result.address)
        finally:
            self._launch_tasks.pop(instance.id, None)

    async def _bind(self, instance: PreviewInstance, address: str) -> None:
        if instance.status != PreviewStatus.STARTING:
            # Stopped while the launcher was finishing; release what it started.
            logger.warning(
                "Launch completed for an instance that is no longer starting",
                instance_id=instance.id,
                status=instance.status.value,
            )
            await self._terminate(instance.id)
            return
        instance.backing_address = address
        self._transition(instance, PreviewStatus.RUNNING)
        logger.info("Preview instance running", instance_id=instance.id, address=address)

    def _fail(self, instance: PreviewInstance, message: str) -> None:
        if instance.status != PreviewStatus.STARTING:
            return
        instance.error_message = message
        self._transition(instance, PreviewStatus.ERROR)
        logger.warning("Preview instance failed", instance_id=instance.id, error=message)

    def _transition(self, instance: PreviewInstance, target: PreviewStatus) -> None:
        if target not in ALLOWED_TRANSITIONS[instance.status]:
            raise InvalidTransitionError(instance.id, instance.status.value, target.value)
        instance.status = target
        if target != PreviewStatus.RUNNING:
            instance.backing_address = None

    async def stop(self, instance_id: str) -> PreviewInstance | None:
        """Stop an instance. Unknown ids return None; terminal instances are left as they are."""
        instance = self._instances.get(instance_id)
        if instance is None:
            return None
        if instance.status.is_terminal:
            return instance

        self._transition(instance, PreviewStatus.STOPPED)

        task = self._launch_tasks.pop(instance_id, None)
        if task is not None and not task.done():
            task.cancel()

        await self._terminate(instance_id)
        logger.info("Preview instance stopped", instance_id=instance_id)
        return instance

    async def _terminate(self, instance_id: str) -> None:
        if self._terminate_fn is None:
            return
        try:
            await self._terminate_fn(instance_id)
        except Exception:
            logger.exception("Failed to terminate preview process", instance_id=instance_id)

    def touch(self, instance_id: str) -> None:
        instance = self._instances.get(instance_id)
        if instance is not None:
            instance.last_accessed_at = max(datetime.now(UTC), instance.started_at)

    def mark_exited(self, instance_id: str, message: str | None = None) -> None:
        """Record that the process behind a running instance went away."""
        instance = self._instances.get(instance_id)
        if instance is None or instance.status != PreviewStatus.RUNNING:
            return
        self._transition(instance, PreviewStatus.STOPPED)
        logger.info("Preview process exited", instance_id=instance_id, reason=message)
