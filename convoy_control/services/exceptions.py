"""Custom exceptions for service layer."""


class ServiceError(Exception):
    """Base exception for all service-related errors."""

    pass


class OrchestrationError(ServiceError):
    """Exception raised for misuse of the task, convoy, or safety engines."""

    pass


class InvalidArgumentError(OrchestrationError, ValueError):
    """Exception raised when a required argument is missing or malformed."""

    pass


class EntityNotFoundError(OrchestrationError, LookupError):
    """Exception raised when an id-based lookup resolves to nothing."""

    pass


class TaskNotFoundError(EntityNotFoundError):
    """Exception raised when a task id is not found."""

    pass


class ConvoyNotFoundError(EntityNotFoundError):
    """Exception raised when a convoy id is not found."""

    pass


class PersistenceError(ServiceError):
    """Exception raised when a record cannot be read or written."""

    pass


class GitServiceError(ServiceError):
    """Exception raised for Git service operations."""

    pass
