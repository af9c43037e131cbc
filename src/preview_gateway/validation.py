"""Input validation utilities for the preview gateway."""

from __future__ import annotations

import re

# Pattern for valid IDs: alphanumeric, underscores, hyphens only
# This prevents path traversal (../) in workspace paths built from IDs
SAFE_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")

MAX_ID_LENGTH = 128


class ValidationError(ValueError):
    """Raised when input validation fails."""


def validate_id(value: str, id_type: str = "ID") -> str:
    """Validate that an ID contains only safe characters.

    Args:
        value: The ID value to validate
        id_type: Description of the ID type for error messages

    Returns:
        The validated ID (unchanged if valid)

    Raises:
        ValidationError: If the ID is empty, too long or contains unsafe characters
    """
    if not value:
        raise ValidationError(f"Invalid {id_type}: cannot be empty")

    if len(value) > MAX_ID_LENGTH:
        raise ValidationError(f"Invalid {id_type}: too long")

    if not SAFE_ID_PATTERN.match(value):
        raise ValidationError(f"Invalid {id_type}: contains unsafe characters")

    return value


def validate_project_id(project_id: str) -> str:
    """Validate a project ID."""
    return validate_id(project_id, "project_id")


def validate_instance_id(instance_id: str) -> str:
    """Validate a preview instance ID."""
    return validate_id(instance_id, "instance_id")
