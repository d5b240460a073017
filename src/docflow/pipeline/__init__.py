"""Stage contract and the sequential pipeline executor."""

from docflow.pipeline.executor import (
    PipelineExecutor,
    PipelineResult,
    PipelineStatus,
    StageExhausted,
    TransientStageError,
)
from docflow.pipeline.stages import (
    DocumentLoadError,
    DocumentState,
    StageReferenceError,
    StageRegistry,
    StageResult,
    passthrough_stage,
)

__all__ = [
    "DocumentLoadError",
    "DocumentState",
    "PipelineExecutor",
    "PipelineResult",
    "PipelineStatus",
    "StageExhausted",
    "StageReferenceError",
    "StageRegistry",
    "StageResult",
    "TransientStageError",
    "passthrough_stage",
]
