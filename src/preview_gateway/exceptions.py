"""Custom exception classes for the preview gateway."""

from __future__ import annotations

from http import HTTPStatus
from typing import Any


class PreviewGatewayError(Exception):
    """Base exception for errors surfaced to gateway callers."""

    status_code: int = HTTPStatus.INTERNAL_SERVER_ERROR

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """JSON body for API-style responses."""
        return {"error": self.message}


class NotFoundError(PreviewGatewayError):
    """Raised when an instance or project is unknown to the gateway."""

    status_code = HTTPStatus.NOT_FOUND


class UnauthorizedError(PreviewGatewayError):
    """Raised when a content request carries no usable credential."""

    status_code = HTTPStatus.UNAUTHORIZED


class ForbiddenError(PreviewGatewayError):
    """Raised when the caller does not own the instance."""

    status_code = HTTPStatus.FORBIDDEN


class InstanceNotReadyError(PreviewGatewayError):
    """Raised when an instance exists but is not running."""

    status_code = HTTPStatus.SERVICE_UNAVAILABLE

    def __init__(self, instance_id: str, status: str) -> None:
        self.instance_id = instance_id
        self.status = status
        super().__init__(f"Preview is {status}")

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message, "status": self.status, "instance_id": self.instance_id}


class UpstreamUnavailableError(PreviewGatewayError):
    """Raised when the backing preview process cannot be reached in time."""

    status_code = HTTPStatus.BAD_GATEWAY

    def __init__(self, target_url: str, reason: str) -> None:
        self.target_url = target_url
        self.reason = reason
        super().__init__(f"Preview server unavailable: {reason}")


class RenderDegradedError(PreviewGatewayError):
    """Raised inside inspection when the overlay cannot be produced.

    Never leaves the inspection generator; it is turned into a degraded document.
    """

    def __init__(self, message: str, original_html: str | None = None) -> None:
        self.original_html = original_html
        super().__init__(message)


class InvalidTransitionError(RuntimeError):
    """Raised when an instance is moved to a state its lifecycle does not allow."""

    def __init__(self, instance_id: str, current: str, target: str) -> None:
        self.instance_id = instance_id
        self.current = current
        self.target = target
        super().__init__(f"Instance {instance_id}: cannot move from {current} to {target}")


class LaunchError(RuntimeError):
    """Raised by launchers when a preview process cannot be started."""
