"""
Event relay: turns one pipeline run into the outward SSE event sequence.

    ready -> progress* -> (final | error) -> done

`EventRelay.relay()` is the only place where pipeline failures are contained. Whatever happens
upstream (generation errors, a broken notification source, a missing result) the client sees at
most one `error` event followed by exactly one `done`, and the channel is closed exactly once.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, AsyncIterator, Protocol, Union

import anyio
from anyio.streams.memory import MemoryObjectSendStream

from workflow_stream.errors import ChannelClosedError, describe_failure
from workflow_stream.schemas.events import EventKind, OutwardEvent

logger = logging.getLogger("workflow_stream.relay")


class RunLike(Protocol):
    run_id: str

    async def __aenter__(self) -> Any:
        ...

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> Any:
        ...

    async def stream(self, prompt: str) -> Any:
        ...

    async def result(self) -> Any:
        ...

    def cancel(self) -> None:
        ...


class PipelineLike(Protocol):
    def create_run(self) -> RunLike:
        ...


@dataclass(frozen=True)
class WrappedNotifications:
    """The run handed back a wrapper whose `.events` is the notification sequence."""

    events: Any


@dataclass(frozen=True)
class BareNotifications:
    """The run handed back the notification sequence itself."""

    events: Any


NotificationSource = Union[WrappedNotifications, BareNotifications]


def _is_sequence_like(value: Any) -> bool:
    if isinstance(value, (str, bytes, bytearray, Mapping)):
        return False
    return hasattr(value, "__aiter__") or hasattr(value, "__iter__")


def resolve_notification_source(raw: Any) -> NotificationSource:
    """
    Normalize the return value of `run.stream()`.

    Depending on the pipeline version it is either `{events: <async iterable>}` or the async
    iterable itself. A non-null `events` (attribute or mapping key) wins; otherwise the value is
    used as-is. Resolved once per run.
    """
    if isinstance(raw, Mapping):
        events = raw.get("events")
    else:
        events = getattr(raw, "events", None)

    if events is not None:
        if not _is_sequence_like(events):
            raise TypeError(f"Notification source `.events` is not iterable: {type(events).__name__}")
        return WrappedNotifications(events=events)

    if not _is_sequence_like(raw):
        raise TypeError(f"Notification source is not iterable: {type(raw).__name__}")
    return BareNotifications(events=raw)


async def iter_notifications(source: NotificationSource) -> AsyncIterator[Any]:
    events = source.events
    if hasattr(events, "__aiter__"):
        async for item in events:
            yield item
    else:
        for item in events:
            yield item


class EventChannel:
    """
    Output side of one SSE response.

    Each `emit` frames a single event and hands it straight to the transport. A receiver that went
    away surfaces as `ChannelClosedError`.
    """

    def __init__(self, send: MemoryObjectSendStream[str]) -> None:
        self._send = send
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def emit(self, kind: EventKind, data: Any = None) -> None:
        if self._closed:
            raise ChannelClosedError(f"cannot emit {kind!r}: channel closed")
        frame = OutwardEvent(event=kind, data=data).encode()
        try:
            await self._send.send(frame)
        except (anyio.BrokenResourceError, anyio.ClosedResourceError) as e:
            raise ChannelClosedError(f"cannot emit {kind!r}: client disconnected") from e

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._send.close()


class EventRelay:
    def __init__(self, pipeline: PipelineLike, *, close_timeout_sec: float = 5.0) -> None:
        self._pipeline = pipeline
        self._close_timeout_sec = close_timeout_sec

    async def relay(self, prompt: str, channel: EventChannel) -> None:
        t0 = time.time()
        outcome = "final"
        try:
            await channel.emit("ready", {"ok": True})
            outcome = await self._relay_run(prompt, channel)
        except ChannelClosedError:
            outcome = "disconnected"
            logger.info("client disconnected; stopping relay")
        except Exception as e:
            outcome = "error"
            logger.exception("relay failed before the run could report: %s", e)
            await self._emit_error(channel, e)
        finally:
            await self._finish(channel)
            logger.info("relay finished outcome=%s dur_ms=%s", outcome, int((time.time() - t0) * 1000))

    async def _relay_run(self, prompt: str, channel: EventChannel) -> str:
        run = self._pipeline.create_run()
        # Nothing may escape the body: the run's task group would wrap it in an exception group.
        async with run:
            try:
                raw = await run.stream(prompt)
                source = resolve_notification_source(raw)
                async for note in iter_notifications(source):
                    await channel.emit("progress", note)
                result = await run.result()
            except ChannelClosedError:
                run.cancel()
                logger.info("run=%s client disconnected mid-stream; cancelling", run.run_id)
                return "disconnected"
            except Exception as e:
                run.cancel()
                logger.warning("run=%s failed: %s: %s", run.run_id, type(e).__name__, e)
                await self._emit_error(channel, e)
                return "error"
        await channel.emit("final", result)
        return "final"

    async def _emit_error(self, channel: EventChannel, exc: BaseException) -> None:
        payload = describe_failure(exc).model_dump(exclude_none=True)
        try:
            await channel.emit("error", payload)
        except ChannelClosedError:
            logger.info("client disconnected before the error event could be sent")
        except Exception:
            logger.exception("failed to write error event")

    async def _finish(self, channel: EventChannel) -> None:
        try:
            with anyio.move_on_after(self._close_timeout_sec, shield=True):
                await channel.emit("done", {"ok": True})
        except ChannelClosedError:
            logger.debug("client disconnected before the done event could be sent")
        except Exception:
            logger.exception("failed to write done event")
        finally:
            channel.close()
