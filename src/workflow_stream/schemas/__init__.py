from .events import ErrorPayload, EventKind, OutwardEvent, StreamRequest

__all__ = ["ErrorPayload", "EventKind", "OutwardEvent", "StreamRequest"]
