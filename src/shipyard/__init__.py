"""
Shipyard - CI/CD pipeline orchestration engine.

Runs declarative build/scan/deploy pipelines: stages ordered as a DAG, steps
executed as external commands, artifacts handed from producers to
consumers, and failures contained by per-stage policies.
"""

from .config import Settings, get_settings
from .errors import (
    ArtifactError,
    ArtifactNotFoundError,
    ConfigurationError,
    DependencyUnmetError,
    DuplicateArtifactError,
    RunNotFoundError,
    ShipyardError,
    StepExecutionError,
)
from .pipeline import PipelineDefinition, PipelineEngine, PipelineRun, RunStatus, load_pipeline
from .report import build_report, render_summary
from .runs import RunStore

__version__ = "0.1.0"

__all__ = [
    "main",
    "ArtifactError",
    "ArtifactNotFoundError",
    "ConfigurationError",
    "DependencyUnmetError",
    "DuplicateArtifactError",
    "PipelineDefinition",
    "PipelineEngine",
    "PipelineRun",
    "RunNotFoundError",
    "RunStatus",
    "RunStore",
    "Settings",
    "ShipyardError",
    "StepExecutionError",
    "build_report",
    "get_settings",
    "load_pipeline",
    "render_summary",
]


def main() -> None:
    """Main entry point for the shipyard CLI."""
    from .cli import main as cli_main
    try:
        cli_main()
    except KeyboardInterrupt:
        print()
        raise SystemExit(130)
