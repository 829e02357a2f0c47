"""Streaming transform pipeline built from connected external processes."""

from .progress import ProgressPoller, format_eta, format_progress_line, human_size
from .runner import PipelineResult, PipelineRun, TransformPipeline
from .stages import StageRole, StreamStage, backup_stages, restore_stages

__all__ = [
    "PipelineResult",
    "PipelineRun",
    "ProgressPoller",
    "StageRole",
    "StreamStage",
    "TransformPipeline",
    "backup_stages",
    "format_eta",
    "format_progress_line",
    "human_size",
    "restore_stages",
]
