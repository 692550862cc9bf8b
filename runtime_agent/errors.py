"""Reconciliation error taxonomy.

Every failure a reconciliation can surface is a ``ReconcileError``
subclass. Each carries the operation it happened in and an
``ErrorCategory`` so the HTTP layer and the control plane can tell a bad
specification from an engine failure without parsing messages. The
underlying cause is always chained (``raise ... from err``).
"""
from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Categories of reconciliation failures."""
    TRANSLATION = "translation"  # Malformed specification
    VOLUME_ACTIVATION = "volume_activation"  # Volume backend refused
    IMAGE_PULL = "image_pull"  # Registry pull failed
    CONTAINER_CREATE = "container_create"  # Engine create failed
    CONTAINER_START = "container_start"  # Engine start failed
    LOOKUP = "lookup"  # Engine lookup/inspect failed


class ReconcileError(Exception):
    """Base class for reconciliation failures."""

    category: ErrorCategory

    def __init__(self, operation: str, message: str):
        self.operation = operation
        self.message = message
        super().__init__(f"{operation}: {message}")

    @property
    def cause(self) -> BaseException | None:
        """The wrapped lower-level error, if any."""
        return self.__cause__

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "category": self.category.value,
            "operation": self.operation,
            "message": str(self),
            "cause": str(self.__cause__) if self.__cause__ else None,
        }


class TranslationError(ReconcileError):
    """The specification cannot be translated (malformed identity)."""
    category = ErrorCategory.TRANSLATION


class VolumeActivationError(ReconcileError):
    """A volume could not be activated or mounted."""
    category = ErrorCategory.VOLUME_ACTIVATION


class ImagePullError(ReconcileError):
    """The image could not be pulled."""
    category = ErrorCategory.IMAGE_PULL


class ContainerCreateError(ReconcileError):
    """The container could not be created."""
    category = ErrorCategory.CONTAINER_CREATE


class ContainerStartError(ReconcileError):
    """The container could not be started (or cleaned up after that)."""
    category = ErrorCategory.CONTAINER_START


class ContainerLookupError(ReconcileError):
    """Looking up or inspecting a container failed for a reason other than not-found."""
    category = ErrorCategory.LOOKUP
