"""
Queue engine module.
Contains the engine abstraction, the in-process binding and the adapter.
"""

from jobrelay.engine.adapter import QueueEngineAdapter
from jobrelay.engine.base import (
    EngineEvent,
    EngineJob,
    JobOptions,
    QueueDefinition,
    QueueEngine,
    RepeatOptions,
    RetentionPolicy,
)
from jobrelay.engine.memory import MemoryQueueEngine

__all__ = [
    "QueueEngine",
    "QueueEngineAdapter",
    "MemoryQueueEngine",
    "QueueDefinition",
    "RetentionPolicy",
    "JobOptions",
    "RepeatOptions",
    "EngineJob",
    "EngineEvent",
]
