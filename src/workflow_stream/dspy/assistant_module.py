"""
DSPy Module wrapper for the pipeline assistant.

Every stage goes through the same predictor; stages differ only in the instruction they send.
"""

from __future__ import annotations

from typing import Any

import dspy  # type: ignore

from workflow_stream.signatures.assistant_signatures import AssistantReply


class AssistantModule(dspy.Module):
    def __init__(self) -> None:
        super().__init__()
        self.prog = dspy.Predict(AssistantReply)

    def forward(self, **kwargs: Any) -> dspy.Prediction:
        return self.prog(**kwargs)
