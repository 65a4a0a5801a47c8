"""
Text generation capability backed by DSPy.

The pipeline only depends on the `TextGenerator` protocol (instruction in, text out). `DspyGenerator`
is the production implementation; tests substitute scripted generators.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from typing import Any, Optional, Protocol

import anyio
import dspy  # type: ignore

from workflow_stream.dspy.assistant_module import AssistantModule
from workflow_stream.settings import Settings

logger = logging.getLogger("workflow_stream.generation")


class GenerationError(Exception):
    pass


class GenerationNotConfiguredError(GenerationError):
    pass


class EmptyGenerationError(GenerationError):
    pass


class TextGenerator(Protocol):
    async def generate(self, instruction: str) -> str:
        ...


def resolve_lm_model(settings: Settings) -> Optional[str]:
    """
    Return a LiteLLM model string for DSPy (provider-prefixed), or None if not configured.
    """
    provider = (settings.provider or "openai").lower()
    model = settings.model

    if provider == "groq":
        if not os.getenv("GROQ_API_KEY"):
            return None
        return f"groq/{model}"

    if provider == "openai":
        if not os.getenv("OPENAI_API_KEY"):
            return None
        return f"openai/{model}"

    return None


class DspyGenerator:
    """
    Runs `AssistantModule` against a lazily-built `dspy.LM`.

    The LM is bound per call with `dspy.context` inside the worker thread instead of
    `dspy.settings.configure`, so concurrent requests never mutate shared DSPy settings.
    No retries: `num_retries=0` and failures propagate to the caller.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._module = AssistantModule()
        self._lm: Any = None
        self._lock = threading.Lock()

    def _get_lm(self) -> Any:
        with self._lock:
            if self._lm is not None:
                return self._lm
            model = resolve_lm_model(self._settings)
            if not model:
                raise GenerationNotConfiguredError(
                    f"DSPy LM not configured (provider={self._settings.provider!r}; set OPENAI_API_KEY or GROQ_API_KEY)"
                )
            self._lm = dspy.LM(
                model=model,
                temperature=self._settings.temperature,
                max_tokens=self._settings.max_tokens,
                timeout=self._settings.llm_timeout_sec,
                num_retries=0,
            )
            logger.info("DSPy LM ready model=%s", model)
            return self._lm

    async def generate(self, instruction: str) -> str:
        lm = self._get_lm()

        def _call() -> Any:
            with dspy.context(lm=lm):
                return self._module(instruction=instruction)

        t0 = time.time()
        # A cancelled run stops waiting here; the worker thread still finishes its call.
        pred = await anyio.to_thread.run_sync(_call, abandon_on_cancel=True)
        text = str(getattr(pred, "text", "") or "").strip()
        logger.debug("generation finished chars=%s latency_ms=%s", len(text), int((time.time() - t0) * 1000))
        if not text:
            raise EmptyGenerationError("Model returned an empty completion")
        return text
