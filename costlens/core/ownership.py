import uuid
from typing import Any, Optional

from costlens.core.exceptions import UserRequiredError


def require_user_id(user_id: Any) -> uuid.UUID:
    """
    Resolve the owning user of an operation.

    Every read and write is partitioned by user, so a missing or malformed
    id is rejected before any query runs.
    """
    if user_id is None or user_id == "":
        raise UserRequiredError()
    if isinstance(user_id, uuid.UUID):
        return user_id
    try:
        return uuid.UUID(str(user_id))
    except ValueError as exc:
        raise UserRequiredError("User ID is not a valid UUID", details={"user_id": str(user_id)}) from exc


def coerce_uuid(value: Any) -> Optional[uuid.UUID]:
    """Parse a record id, returning None when it is not a UUID."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None
