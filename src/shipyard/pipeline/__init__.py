"""
Pipeline module for stage-based execution workflows.

Provides abstractions for defining and executing multi-stage pipelines with
dependency ordering, per-stage failure policies and artifact propagation.
"""

from .artifacts import Artifact, ArtifactHandle, ArtifactStore
from .engine import (
    PipelineCompletedEvent,
    PipelineDefinition,
    PipelineEngine,
    PipelineEvent,
    PipelineRun,
    RunStartedEvent,
    RunStatus,
    StageCompletedEvent,
    StageStartedEvent,
    StepCompletedEvent,
)
from .environment import EnvironmentContext
from .loader import create_default_pipeline, load_pipeline, load_pipeline_from_dict
from .outputs import CompositeParser, ExitCodeParser, OutputParser, PatternParser
from .planner import ExecutionPlan, plan_stages
from .stage import ArtifactSpec, FailurePolicy, StageDefinition, StageResult, StageRunner, StageStatus
from .step import StepDefinition, StepExecutor, StepResult, StepStatus
from .tools import ToolAdapter, ToolRegistry, default_registry

__all__ = [
    "Artifact",
    "ArtifactHandle",
    "ArtifactSpec",
    "ArtifactStore",
    "CompositeParser",
    "EnvironmentContext",
    "ExecutionPlan",
    "ExitCodeParser",
    "FailurePolicy",
    "OutputParser",
    "PatternParser",
    "PipelineCompletedEvent",
    "PipelineDefinition",
    "PipelineEngine",
    "PipelineEvent",
    "PipelineRun",
    "RunStartedEvent",
    "RunStatus",
    "StageCompletedEvent",
    "StageDefinition",
    "StageResult",
    "StageRunner",
    "StageStartedEvent",
    "StageStatus",
    "StepCompletedEvent",
    "StepDefinition",
    "StepExecutor",
    "StepResult",
    "StepStatus",
    "ToolAdapter",
    "ToolRegistry",
    "create_default_pipeline",
    "default_registry",
    "load_pipeline",
    "load_pipeline_from_dict",
    "plan_stages",
]
