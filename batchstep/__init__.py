"""batchstep: Gated, poll-driven batch job execution over durable work chunks."""

from .contracts import ChunkReadyMessage, chunk_topic
from .dispatch import WorkChunkDispatcher
from .execute import WorkChunkExecutor
from .maintenance import MaintenancePassResult, MaintenanceRunner
from .models import (
    JobDefinition,
    JobInstance,
    JobStatus,
    JobStepDefinition,
    WorkChunk,
    WorkChunkStatus,
)
from .persistence import get_repository
from .registry import REGISTRY, StepExecutionDetails, StepOutcome, register_job_definition
from .service import WorkChunkService
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "ChunkReadyMessage",
    "JobDefinition",
    "JobInstance",
    "JobStatus",
    "JobStepDefinition",
    "MaintenancePassResult",
    "MaintenanceRunner",
    "REGISTRY",
    "StepExecutionDetails",
    "StepOutcome",
    "WorkChunk",
    "WorkChunkDispatcher",
    "WorkChunkExecutor",
    "WorkChunkService",
    "WorkChunkStatus",
    "chunk_topic",
    "get_repository",
    "get_transport",
    "register_job_definition",
]
