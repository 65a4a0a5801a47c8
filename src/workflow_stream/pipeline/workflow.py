"""
Plan -> act -> reflect workflow.

A `Pipeline` is built once per process and shared by every request. Each request opens its own
`Run`, which executes the stages in a background task and publishes progress notifications on an
anyio memory stream while it goes:

    async with pipeline.create_run() as run:
        stream = await run.stream(prompt)
        async for note in stream.events:
            ...
        result = await run.result()

The notification stream always closes before `result()` can return, so draining first and
fetching the result second never loses a buffered notification.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import anyio
from anyio.abc import TaskGroup
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream

from workflow_stream.errors import describe_failure
from workflow_stream.generation import TextGenerator
from workflow_stream.pipeline.stages import DEFAULT_STAGES, STAGE_ORDER, Stage

logger = logging.getLogger("workflow_stream.pipeline")


class RunCancelledError(Exception):
    pass


@dataclass(frozen=True)
class RunStream:
    run_id: str
    events: MemoryObjectReceiveStream[Dict[str, Any]]


@dataclass(frozen=True)
class Pipeline:
    generator: TextGenerator
    stages: Tuple[Stage, ...] = DEFAULT_STAGES
    thread_outputs: bool = False
    buffer: int = 16

    def __post_init__(self) -> None:
        stages = tuple(self.stages)
        names = tuple(s.name for s in stages)
        if names != STAGE_ORDER:
            raise ValueError(f"Pipeline stages must be {list(STAGE_ORDER)}, got {list(names)}")
        object.__setattr__(self, "stages", stages)

    def create_run(self) -> "Run":
        return Run(self, run_id=uuid.uuid4().hex[:12])


class Run:
    """One execution of the pipeline. Must be used as an async context manager."""

    def __init__(self, pipeline: Pipeline, *, run_id: str) -> None:
        self.run_id = run_id
        self._pipeline = pipeline
        self._tg: Optional[TaskGroup] = None
        self._scope = anyio.CancelScope()
        self._started = False
        self._finished = anyio.Event()
        self._error: Optional[BaseException] = None
        self._steps: Dict[str, Dict[str, Any]] = {}
        self._output: Optional[str] = None

    async def __aenter__(self) -> "Run":
        self._tg = anyio.create_task_group()
        await self._tg.__aenter__()
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> Optional[bool]:
        # Anything still running belongs to an abandoned run.
        self._scope.cancel()
        if self._tg is None:
            raise RuntimeError(f"Run {self.run_id} was exited without being entered")
        return await self._tg.__aexit__(exc_type, exc, tb)

    async def stream(self, prompt: str) -> RunStream:
        if self._tg is None:
            raise RuntimeError("Run.stream() requires `async with pipeline.create_run() as run`")
        if self._started:
            raise RuntimeError(f"Run {self.run_id} already started")
        self._started = True
        send, recv = anyio.create_memory_object_stream[Dict[str, Any]](max_buffer_size=self._pipeline.buffer)
        self._tg.start_soon(self._execute, prompt, send)
        return RunStream(run_id=self.run_id, events=recv)

    def cancel(self) -> None:
        self._scope.cancel()

    async def result(self) -> Dict[str, Any]:
        if not self._started:
            raise RuntimeError(f"Run {self.run_id} was never started")
        await self._finished.wait()
        if self._error is not None:
            raise self._error
        return {
            "runId": self.run_id,
            "status": "success",
            "result": self._output,
            "steps": dict(self._steps),
        }

    def _note(self, kind: str, **payload: Any) -> Dict[str, Any]:
        return {"type": kind, "runId": self.run_id, "payload": payload}

    async def _execute(self, prompt: str, send: MemoryObjectSendStream[Dict[str, Any]]) -> None:
        pipeline = self._pipeline
        try:
            with self._scope:
                async with send:
                    await send.send(self._note("workflow-start", prompt=prompt))
                    previous: Optional[str] = None
                    for stage in pipeline.stages:
                        await send.send(self._note("step-start", stepId=stage.name))
                        t0 = time.time()
                        try:
                            output = await stage.run(
                                pipeline.generator,
                                prompt,
                                previous if pipeline.thread_outputs else None,
                            )
                        except Exception as e:
                            failure = describe_failure(e).model_dump(exclude_none=True)
                            self._steps[stage.name] = {"status": "failed", "error": failure}
                            logger.warning("run=%s stage=%s failed: %s", self.run_id, stage.name, failure["message"])
                            await send.send(
                                self._note("step-result", stepId=stage.name, status="failed", error=failure)
                            )
                            raise
                        logger.info(
                            "run=%s stage=%s ok latency_ms=%s",
                            self.run_id,
                            stage.name,
                            int((time.time() - t0) * 1000),
                        )
                        self._steps[stage.name] = {"status": "success", "output": output}
                        await send.send(self._note("step-result", stepId=stage.name, status="success", output=output))
                        previous = output
                    await send.send(self._note("workflow-finish", status="success"))
                    self._output = previous
            if self._scope.cancelled_caught:
                self._error = RunCancelledError(f"Run {self.run_id} was cancelled")
        except Exception as e:
            self._error = e
        finally:
            self._finished.set()
