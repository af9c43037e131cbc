"""Local process launcher: runs a project's dev server on this host."""

from __future__ import annotations

import asyncio
import contextlib
import os
import shlex
import socket
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from preview_gateway.collaborators import LaunchResult
from preview_gateway.exceptions import LaunchError

if TYPE_CHECKING:
    from preview_gateway.config import Settings
    from preview_gateway.models.instance import PreviewInstance

logger = structlog.get_logger()

READY_POLL_INTERVAL = 0.5
TERMINATE_GRACE_SECONDS = 5.0
STDERR_TAIL_CHARS = 500


class PortAllocator:
    """Hands out ports from a fixed range, skipping ports something else already holds."""

    def __init__(self, start: int, end: int, host: str = "127.0.0.1") -> None:
        self._start = start
        self._end = end
        self._host = host
        self._used_ports: set[int] = set()

    def is_available(self, port: int) -> bool:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            try:
                sock.bind((self._host, port))
            except OSError:
                return False
        return True

    def allocate(self) -> int:
        for port in range(self._start, self._end + 1):
            if port in self._used_ports:
                continue
            if self.is_available(port):
                self._used_ports.add(port)
                return port
        raise LaunchError(f"No available ports in range {self._start}-{self._end}")

    def release(self, port: int) -> None:
        self._used_ports.discard(port)

    @property
    def in_use(self) -> frozenset[int]:
        return frozenset(self._used_ports)


@dataclass
class _RunningProcess:
    process: asyncio.subprocess.Process
    port: int
    watcher: asyncio.Task[None] | None = None
    output: asyncio.Task[None] | None = None


class LocalProcessLauncher:
    """Installs dependencies and starts ``launch_command`` in the instance workspace.

    The process gets ``PORT`` in its environment and is considered ready once the
    port accepts TCP connections. If it exits on its own later, ``on_exit`` is
    called with the instance id.
    """

    def __init__(
        self,
        settings: Settings,
        ports: PortAllocator | None = None,
        on_exit: Callable[[str, str], None] | None = None,
    ) -> None:
        self._settings = settings
        self._ports = ports or PortAllocator(
            settings.port_range_start, settings.port_range_end, settings.launch_host
        )
        self.on_exit = on_exit
        self._processes: dict[str, _RunningProcess] = {}

    async def launch(self, instance: PreviewInstance) -> LaunchResult:
        workspace = Path(instance.workspace_path)
        if not workspace.is_dir():
            raise LaunchError(f"Workspace {workspace} does not exist")

        host = self._settings.launch_host
        port = self._ports.allocate()
        env = os.environ.copy()
        env["PORT"] = str(port)
        env["HOSTNAME"] = host
        env["BROWSER"] = "none"

        entry: _RunningProcess | None = None
        try:
            if self._settings.install_command and (workspace / "package.json").exists():
                await self._run_install(instance.id, workspace, env)

            process = await asyncio.create_subprocess_exec(
                *shlex.split(self._settings.launch_command),
                cwd=str(workspace),
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
            entry = _RunningProcess(process=process, port=port)
            entry.output = asyncio.create_task(self._drain_output(instance.id, process))
            self._processes[instance.id] = entry

            logger.info(
                "Preview process started",
                instance_id=instance.id,
                pid=process.pid,
                port=port,
            )
            await self._wait_until_ready(process, host, port)
        except BaseException:
            self._processes.pop(instance.id, None)
            if entry is not None:
                await self._stop_process(entry)
            self._ports.release(port)
            raise

        entry.watcher = asyncio.create_task(self._watch(instance.id, entry))
        return LaunchResult(address=f"{host}:{port}")

    async def _run_install(self, instance_id: str, workspace: Path, env: dict[str, str]) -> None:
        logger.info("Installing preview dependencies", instance_id=instance_id)
        process = await asyncio.create_subprocess_exec(
            *shlex.split(self._settings.install_command),
            cwd=str(workspace),
            env=env,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            _, stderr = await process.communicate()
        except asyncio.CancelledError:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            raise
        if process.returncode != 0:
            tail = stderr.decode(errors="replace")[-STDERR_TAIL_CHARS:]
            raise LaunchError(f"Install failed with code {process.returncode}: {tail}")

    async def _wait_until_ready(
        self, process: asyncio.subprocess.Process, host: str, port: int
    ) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._settings.launch_timeout
        while True:
            if process.returncode is not None:
                raise LaunchError(f"Preview process exited with code {process.returncode}")
            try:
                _, writer = await asyncio.open_connection(host, port)
            except OSError:
                if loop.time() >= deadline:
                    raise LaunchError(f"Preview server did not open port {port}") from None
                await asyncio.sleep(READY_POLL_INTERVAL)
                continue
            writer.close()
            with contextlib.suppress(OSError):
                await writer.wait_closed()
            return

    async def _drain_output(self, instance_id: str, process: asyncio.subprocess.Process) -> None:
        if process.stdout is None:
            return
        while True:
            line = await process.stdout.readline()
            if not line:
                return
            logger.debug(
                "Preview output",
                instance_id=instance_id,
                line=line.decode(errors="replace").rstrip(),
            )

    async def _watch(self, instance_id: str, entry: _RunningProcess) -> None:
        code = await entry.process.wait()
        if self._processes.get(instance_id) is not entry:
            return
        self._processes.pop(instance_id, None)
        self._ports.release(entry.port)
        logger.info("Preview process exited", instance_id=instance_id, returncode=code)
        if self.on_exit is not None:
            self.on_exit(instance_id, f"Process exited with code {code}")

    async def terminate(self, instance_id: str) -> None:
        entry = self._processes.pop(instance_id, None)
        if entry is None:
            return
        if entry.watcher is not None:
            entry.watcher.cancel()
        await self._stop_process(entry)
        self._ports.release(entry.port)
        logger.info("Preview process terminated", instance_id=instance_id, port=entry.port)

    async def _stop_process(self, entry: _RunningProcess) -> None:
        process = entry.process
        if process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=TERMINATE_GRACE_SECONDS)
            except TimeoutError:
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                await process.wait()
        if entry.output is not None:
            entry.output.cancel()
