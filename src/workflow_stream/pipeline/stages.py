from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

from workflow_stream.generation import TextGenerator


@dataclass(frozen=True)
class Stage:
    """A named unit of pipeline work: one instruction template, one generation call."""

    name: str
    template: str

    def instruction(self, prompt: str, previous: Optional[str] = None) -> str:
        text = self.template.format(prompt=prompt)
        if previous:
            text = f"{text}\n\nPrevious step output:\n{previous}"
        return text

    async def run(self, generator: TextGenerator, prompt: str, previous: Optional[str] = None) -> str:
        return await generator.generate(self.instruction(prompt, previous))


PLAN = Stage(
    name="plan",
    template=(
        "User request: {prompt}\n"
        "Break this request into three steps and explain the purpose of each step in one line."
    ),
)

ACT = Stage(
    name="act",
    template='Based on the plan above, write a short draft for the request "{prompt}".',
)

REFLECT = Stage(
    name="reflect",
    template=(
        "Read the draft, improve its clarity and concision, and return the final result. "
        "Request: {prompt}"
    ),
)

STAGE_ORDER: Tuple[str, ...] = ("plan", "act", "reflect")
DEFAULT_STAGES: Tuple[Stage, ...] = (PLAN, ACT, REFLECT)
