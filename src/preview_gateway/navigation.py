"""Navigation tracker: the last content path visited per preview instance."""

from __future__ import annotations

from urllib.parse import urlsplit

import structlog

logger = structlog.get_logger()

DEFAULT_PATH = "/"


def normalize_path(path: str | None) -> str:
    """Leading slash, no query string or fragment; empty becomes ``/``."""
    if not path:
        return DEFAULT_PATH
    clean = urlsplit(path).path if ("?" in path or "#" in path) else path
    if not clean:
        return DEFAULT_PATH
    if not clean.startswith("/"):
        clean = f"/{clean}"
    return clean


class NavigationTracker:
    """Last-write-wins map of instance id to path.

    Entries outlive their instances; callers look the instance up in the
    registry before trusting a tracked path.
    """

    def __init__(self) -> None:
        self._paths: dict[str, str] = {}

    def init(self) -> None:
        self._paths.clear()

    def shutdown(self) -> None:
        self._paths.clear()

    def record(self, instance_id: str, path: str) -> str:
        clean = normalize_path(path)
        self._paths[instance_id] = clean
        logger.debug("Navigation recorded", instance_id=instance_id, path=clean)
        return clean

    def get(self, instance_id: str) -> str:
        return self._paths.get(instance_id, DEFAULT_PATH)

    def has(self, instance_id: str) -> bool:
        return instance_id in self._paths

    def clear(self, instance_id: str) -> None:
        self._paths.pop(instance_id, None)
