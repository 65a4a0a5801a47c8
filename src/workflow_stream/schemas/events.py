from __future__ import annotations

import json
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

EventKind = Literal["ready", "progress", "final", "error", "done"]


class StreamRequest(BaseModel):
    """Body of `POST /api/stream`. Unknown keys are ignored."""

    model_config = ConfigDict(extra="ignore")

    prompt: str = Field(default="", description="Free-text request run through plan -> act -> reflect.")

    @field_validator("prompt", mode="before")
    @classmethod
    def _prompt_or_empty(cls, v: Any) -> str:
        # Anything that is not a string counts as "no prompt".
        return v if isinstance(v, str) else ""


class ErrorPayload(BaseModel):
    message: str
    name: Optional[str] = None


class OutwardEvent(BaseModel):
    """One SSE frame: `event: <kind>` plus a JSON `data:` line."""

    event: EventKind
    data: Any = None

    def encode(self) -> str:
        # SSE format reminder:
        #   event: <name>\n
        #   data: <json>\n\n
        return f"event: {self.event}\ndata: {json.dumps(self.data, ensure_ascii=False, default=str)}\n\n"
