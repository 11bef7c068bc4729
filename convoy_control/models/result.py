"""Result type returned by engine operations."""

from dataclasses import dataclass
from typing import Optional


@dataclass
class OperationResult:
    """Outcome of a state-changing engine operation.

    A rejected transition is not an exception: the entity is left untouched
    and ``invalid_transition`` is set so callers can tell it apart from a
    persistence failure.
    """

    success: bool
    message: str
    entity_id: Optional[str] = None
    status: Optional[str] = None
    invalid_transition: bool = False

    def __bool__(self) -> bool:
        return self.success

    @classmethod
    def ok(cls, entity_id: str, status, message: str) -> 'OperationResult':
        return cls(success=True, message=message, entity_id=entity_id, status=_status_value(status))

    @classmethod
    def rejected(cls, entity_id: str, status, message: str) -> 'OperationResult':
        return cls(
            success=False,
            message=message,
            entity_id=entity_id,
            status=_status_value(status),
            invalid_transition=True
        )

    @classmethod
    def failed(cls, entity_id: str, message: str, status=None) -> 'OperationResult':
        return cls(success=False, message=message, entity_id=entity_id, status=_status_value(status))

    def to_dict(self) -> dict:
        """Convert result to dictionary."""
        return {
            'success': self.success,
            'message': self.message,
            'entity_id': self.entity_id,
            'status': self.status,
            'invalid_transition': self.invalid_transition
        }


def _status_value(status) -> Optional[str]:
    return getattr(status, 'value', status)
