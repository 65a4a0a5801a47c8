"""
Runtime pipeline: stage definitions and the sequential plan -> act -> reflect run.
"""

from .stages import ACT, DEFAULT_STAGES, PLAN, REFLECT, STAGE_ORDER, Stage
from .workflow import Pipeline, Run, RunCancelledError, RunStream

__all__ = [
    "ACT",
    "DEFAULT_STAGES",
    "PLAN",
    "REFLECT",
    "STAGE_ORDER",
    "Pipeline",
    "Run",
    "RunCancelledError",
    "RunStream",
    "Stage",
]
