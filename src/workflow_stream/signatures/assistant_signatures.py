from __future__ import annotations

import dspy


class AssistantReply(dspy.Signature):
    """
    You are a well-organized assistant.

    Work through the instruction step by step, briefly explaining the intent of each step as you go.
    Answer in plain text (no JSON, no code fences). Reply in the language the user's request is written in.
    """

    instruction: str = dspy.InputField(desc="Stage instruction with the user's request embedded.")
    text: str = dspy.OutputField(desc="The stage output as plain text.")
