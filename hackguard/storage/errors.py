from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class PartitionUnavailable(Exception):
    """Raised when one role partition cannot be reached.

    Fan-out reads and deletes skip the partition instead of failing the
    whole operation.
    """

    def __init__(self, partition: str, message: str = "partition unavailable"):
        super().__init__(f"{partition}: {message}")
        self.partition = partition
        self.message = message


__all__ = ["ConstraintViolation", "PartitionUnavailable"]
