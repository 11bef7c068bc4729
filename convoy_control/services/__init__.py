"""Service layer for exceptions and external process integration."""

from .git_service import GitService
from .exceptions import (
    ServiceError,
    OrchestrationError,
    InvalidArgumentError,
    EntityNotFoundError,
    TaskNotFoundError,
    ConvoyNotFoundError,
    PersistenceError,
    GitServiceError,
)

__all__ = [
    "GitService",
    "ServiceError",
    "OrchestrationError",
    "InvalidArgumentError",
    "EntityNotFoundError",
    "TaskNotFoundError",
    "ConvoyNotFoundError",
    "PersistenceError",
    "GitServiceError",
]
