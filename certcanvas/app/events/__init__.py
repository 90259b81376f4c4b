from .models import PipelineEvent, PipelineEventType
from .emitter import LoggingEventEmitter, NullEventEmitter, PipelineEventEmitter

__all__ = [
    "PipelineEvent",
    "PipelineEventType",
    "PipelineEventEmitter",
    "NullEventEmitter",
    "LoggingEventEmitter",
]
