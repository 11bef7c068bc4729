"""Core functionality for Convoy Control."""

from .config import OrchestrationSettings
from .context import OrchestrationContext
from .convoy_engine import ConvoyEngine
from .record_store import JsonRecordStore
from .safety_control import SafetyControlEngine
from .task_engine import TaskEngine

__all__ = [
    'ConvoyEngine',
    'JsonRecordStore',
    'OrchestrationContext',
    'OrchestrationSettings',
    'SafetyControlEngine',
    'TaskEngine'
]
