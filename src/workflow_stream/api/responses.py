from __future__ import annotations

import logging
import time
from typing import Mapping, Optional

import anyio
from anyio.streams.memory import MemoryObjectSendStream
from starlette.responses import Response
from starlette.types import Receive, Scope, Send

from workflow_stream.api.utils import sse_comment
from workflow_stream.relay import EventChannel, EventRelay
from workflow_stream.settings import Settings

logger = logging.getLogger("workflow_stream.api")


class EventStreamResponse(Response):
    """
    SSE response that runs the relay for one prompt.

    The relay, the heartbeat and the disconnect listener all live in one task group owned by
    `__call__`, and frames are written to the ASGI `send` from that same task. A client disconnect
    (`http.disconnect` or an `OSError` from `send`) cancels the group, which cancels the run.
    """

    media_type = "text/event-stream"

    def __init__(
        self,
        relay: EventRelay,
        prompt: str,
        settings: Settings,
        status_code: int = 200,
        headers: Optional[Mapping[str, str]] = None,
        media_type: Optional[str] = None,
    ) -> None:
        self.relay = relay
        self.prompt = prompt
        self.settings = settings
        self.status_code = status_code
        if media_type is not None:
            self.media_type = media_type
        self.background = None
        self.init_headers(headers)

    async def _run_relay(self, send: MemoryObjectSendStream[str], heartbeat_scope: anyio.CancelScope) -> None:
        try:
            await self.relay.relay(self.prompt, EventChannel(send))
        finally:
            heartbeat_scope.cancel()

    async def _heartbeat(self, stream: MemoryObjectSendStream[str], heartbeat_scope: anyio.CancelScope) -> None:
        try:
            with heartbeat_scope:
                while True:
                    await anyio.sleep(self.settings.heartbeat_sec)
                    try:
                        await stream.send(sse_comment(f"hb {int(time.time() * 1000)}"))
                    except (anyio.BrokenResourceError, anyio.ClosedResourceError):
                        return
        finally:
            stream.close()

    async def _listen_for_disconnect(self, receive: Receive, scope: anyio.CancelScope) -> None:
        while True:
            message = await receive()
            if message["type"] == "http.disconnect":
                logger.info("client disconnected; cancelling stream")
                scope.cancel()
                return

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        frames, recv = anyio.create_memory_object_stream[str](max_buffer_size=self.settings.stream_buffer)
        heartbeat_scope = anyio.CancelScope()

        async with anyio.create_task_group() as tg:
            tg.start_soon(self._listen_for_disconnect, receive, tg.cancel_scope)
            if self.settings.heartbeat_sec > 0:
                tg.start_soon(self._heartbeat, frames.clone(), heartbeat_scope)
            tg.start_soon(self._run_relay, frames, heartbeat_scope)

            try:
                await send({"type": "http.response.start", "status": self.status_code, "headers": self.raw_headers})
                async with recv:
                    async for chunk in recv:
                        await send({"type": "http.response.body", "body": chunk.encode("utf-8"), "more_body": True})
                await send({"type": "http.response.body", "body": b"", "more_body": False})
            except OSError:
                logger.info("client went away mid-write; cancelling stream")
            # Stops the disconnect listener; the relay has already closed its channel on success.
            tg.cancel_scope.cancel()
