from __future__ import annotations

from workflow_stream.schemas.events import ErrorPayload

UNKNOWN_ERROR_MESSAGE = "unknown error"


try:
    BaseExceptionGroup
except NameError:  # pragma: no cover - Python < 3.11
    BaseExceptionGroup = Exception


class ChannelClosedError(Exception):
    """The client side of an event stream is gone; nothing more can be written."""


def describe_failure(exc: object) -> ErrorPayload:
    """
    Best-effort `{message, name}` for an arbitrary raised value.

    Exception groups holding a single error are described by that error, so task-group
    wrapping does not hide the real message.
    """
    if isinstance(exc, BaseExceptionGroup):
        inner = getattr(exc, "exceptions", None) or ()
        if len(inner) == 1:
            return describe_failure(inner[0])

    message = ""
    try:
        message = str(exc or "").strip()
    except Exception:
        message = ""
    if not message:
        message = str(getattr(exc, "message", "") or "").strip()

    name = type(exc).__name__ if isinstance(exc, BaseException) else getattr(exc, "name", None)
    return ErrorPayload(message=message or UNKNOWN_ERROR_MESSAGE, name=str(name) if name else None)
