"""ctxloop event bus."""

from ctxloop.events.bus import EventBus, Handler, LoopEvent
from ctxloop.events.payloads import (
    CompactionCompletedPayload,
    CompactionFailedPayload,
    CompactionTriggeredPayload,
    LoopIterationPayload,
    LoopResultPayload,
    MessageAppendedPayload,
    OutputTruncatedPayload,
    PruneCompletedPayload,
    SessionDeletedPayload,
    SessionHydratedPayload,
    ToolsDispatchedPayload,
)

__all__ = [
    "CompactionCompletedPayload",
    "CompactionFailedPayload",
    "CompactionTriggeredPayload",
    "EventBus",
    "Handler",
    "LoopEvent",
    "LoopIterationPayload",
    "LoopResultPayload",
    "MessageAppendedPayload",
    "OutputTruncatedPayload",
    "PruneCompletedPayload",
    "SessionDeletedPayload",
    "SessionHydratedPayload",
    "ToolsDispatchedPayload",
]
