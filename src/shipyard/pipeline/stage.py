"""
Stage definition and execution for pipeline workflows.

A stage is an ordered group of steps sharing one failure policy. Steps run
strictly in declared order; the first blocking failure skips the rest.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable

from ..errors import ArtifactError, ConfigurationError, StepExecutionError
from .artifacts import Artifact, ArtifactStore
from .environment import EnvironmentContext
from .outputs import extract_artifact_markers
from .step import AttemptRecord, StepDefinition, StepExecutor, StepResult, StepStatus

logger = logging.getLogger(__name__)


class FailurePolicy(str, Enum):
    """What a failed stage does to the rest of the pipeline."""
    ABORT_PIPELINE = "abort_pipeline"
    CONTINUE_DEGRADED = "continue_degraded"


class StageStatus(str, Enum):
    """Stage execution status."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (StageStatus.SUCCEEDED, StageStatus.FAILED, StageStatus.ABORTED)


@dataclass
class ArtifactSpec:
    """Declared artifact output of a stage.

    With neither value nor path, a step of the stage must emit the artifact
    through an [[ARTIFACT:name=value]] marker.
    """
    name: str
    value: str | None = None
    path: str | None = None
    retain: bool = True

    def __post_init__(self):
        if not self.name or not self.name.strip():
            raise ConfigurationError("Artifact output name cannot be empty")
        if self.value is not None and self.path is not None:
            raise ConfigurationError(f"Artifact output '{self.name}' sets both value and path")


@dataclass
class StageDefinition:
    """Configuration for a pipeline stage.

    Attributes:
        name: Unique identifier for this stage (e.g., "build", "deploy")
        steps: Steps, executed in order
        failure_policy: Effect of a failure on the rest of the pipeline
        depends_on: Stages that must finish first (None = previous declared stage)
        needs: Artifact names consumed from predecessor stages
        outputs: Declared artifact outputs
    """
    name: str
    steps: list[StepDefinition]
    failure_policy: FailurePolicy = FailurePolicy.ABORT_PIPELINE
    depends_on: list[str] | None = None
    needs: list[str] = field(default_factory=list)
    outputs: list[ArtifactSpec] = field(default_factory=list)

    def __post_init__(self):
        if not self.name or not self.name.strip():
            raise ConfigurationError("Stage name cannot be empty")
        if not self.steps:
            raise ConfigurationError(f"Stage '{self.name}' has no steps")
        seen: set[str] = set()
        for step in self.steps:
            if step.name in seen:
                raise ConfigurationError(f"Stage '{self.name}' has duplicate step '{step.name}'")
            seen.add(step.name)
        names = [o.name for o in self.outputs]
        if len(names) != len(set(names)):
            raise ConfigurationError(f"Stage '{self.name}' declares an output twice")

    @property
    def output_names(self) -> list[str]:
        return [o.name for o in self.outputs]


@dataclass
class StageResult:
    """Result of running (or not running) a stage.

    Attributes:
        stage_name: Name of the stage
        status: Final status
        step_results: One result per declared step, in order
        failure_policy: Policy the stage ran under
        started_at: ISO timestamp, None if never started
        finished_at: ISO timestamp, None if never started
        duration: Seconds spent running
        error: Why the stage failed or was aborted
        artifacts: Names of artifacts the stage published
    """
    stage_name: str
    status: StageStatus
    step_results: list[StepResult] = field(default_factory=list)
    failure_policy: FailurePolicy = FailurePolicy.ABORT_PIPELINE
    started_at: str | None = None
    finished_at: str | None = None
    duration: float = 0.0
    error: str | None = None
    artifacts: list[str] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return self.status == StageStatus.FAILED

    @property
    def executed(self) -> bool:
        return self.started_at is not None

    @property
    def failed_step(self) -> StepResult | None:
        """First failing step that was not tolerated."""
        for result in self.step_results:
            if result.failed and not result.tolerated:
                return result
        return None

    @classmethod
    def not_run(
        cls,
        stage: StageDefinition,
        status: StageStatus = StageStatus.ABORTED,
        reason: str | None = None,
    ) -> "StageResult":
        return cls(
            stage_name=stage.name,
            status=status,
            step_results=[StepResult.skipped(s.name, reason) for s in stage.steps],
            failure_policy=stage.failure_policy,
            error=reason,
        )

    def to_dict(self) -> dict:
        return {
            "stage_name": self.stage_name,
            "status": self.status.value,
            "failure_policy": self.failure_policy.value,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration": self.duration,
            "error": self.error,
            "artifacts": list(self.artifacts),
            "steps": [r.to_dict() for r in self.step_results],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "StageResult":
        return cls(
            stage_name=data["stage_name"],
            status=StageStatus(data["status"]),
            step_results=[StepResult.from_dict(s) for s in data.get("steps", [])],
            failure_policy=FailurePolicy(data.get("failure_policy", FailurePolicy.ABORT_PIPELINE.value)),
            started_at=data.get("started_at"),
            finished_at=data.get("finished_at"),
            duration=data.get("duration", 0.0),
            error=data.get("error"),
            artifacts=list(data.get("artifacts", [])),
        )


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class StageRunner:
    """Executes a single pipeline stage.

    Args:
        executor: StepExecutor used for every step
        store: ArtifactStore receiving the stage's outputs
        on_step: Optional callback(stage_name, StepResult) after each step
    """

    def __init__(
        self,
        executor: StepExecutor,
        store: ArtifactStore,
        on_step: Callable[[str, StepResult], None] | None = None,
    ):
        self.executor = executor
        self.store = store
        self.on_step = on_step

    def run(
        self,
        stage: StageDefinition,
        env: EnvironmentContext,
        cancel_event: threading.Event | None = None,
    ) -> StageResult:
        """Run the stage's steps in order.

        Step, artifact and launch errors are recorded on the result; this
        method does not raise for them.
        """
        result = StageResult(
            stage_name=stage.name,
            status=StageStatus.RUNNING,
            failure_policy=stage.failure_policy,
            started_at=_now(),
        )
        start = time.monotonic()
        logger.info("Stage '%s' starting (%d steps)", stage.name, len(stage.steps))

        for index, step in enumerate(stage.steps):
            if cancel_event is not None and cancel_event.is_set():
                self._finish_early(result, stage, index, StageStatus.ABORTED, "cancelled")
                break

            step_result = self._execute_step(step, env, cancel_event)

            if step_result.status == StepStatus.ABORTED:
                self._record(stage, result, step_result)
                self._finish_early(result, stage, index + 1, StageStatus.ABORTED, "cancelled")
                break

            if step_result.failed:
                if step.continue_on_error:
                    step_result.tolerated = True
                    logger.warning(
                        "Stage '%s' step '%s' failed but continue_on_error is set",
                        stage.name, step.name,
                    )
                    self._record(stage, result, step_result)
                    continue
                self._record(stage, result, step_result)
                reason = f"step '{step.name}' {step_result.status.value}"
                if step_result.error:
                    reason += f": {step_result.error}"
                self._finish_early(result, stage, index + 1, StageStatus.FAILED, reason)
                break

            self._record(stage, result, step_result)

            markers = extract_artifact_markers(step_result.output)
            if markers:
                try:
                    handles = [
                        self.store.publish(env.run_id, stage.name, Artifact(name=name, value=value))
                        for name, value in markers.items()
                    ]
                except (ArtifactError, OSError) as e:
                    self._finish_early(result, stage, index + 1, StageStatus.FAILED, str(e))
                    break
                result.artifacts.extend(h.name for h in handles)
                env = env.bind_artifacts({h.name: h.binding for h in handles})

        if result.status == StageStatus.RUNNING:
            try:
                self._publish_outputs(stage, env, result)
                result.status = StageStatus.SUCCEEDED
            except (ArtifactError, OSError) as e:
                result.status = StageStatus.FAILED
                result.error = str(e)

        result.finished_at = _now()
        result.duration = time.monotonic() - start
        logger.info("Stage '%s' %s in %.2fs", stage.name, result.status.value, result.duration)
        return result

    def _execute_step(
        self,
        step: StepDefinition,
        env: EnvironmentContext,
        cancel_event: threading.Event | None,
    ) -> StepResult:
        """Execute a step; launch errors become a failed result.

        Launch errors (missing command or working directory) are not retried.
        """
        try:
            return self.executor.execute(step, env, cancel_event)
        except StepExecutionError as e:
            logger.error("Step '%s' could not run: %s", step.name, e)
            return StepResult(
                step_name=step.name,
                status=StepStatus.FAILURE,
                exit_code=e.exit_code,
                error=str(e),
                attempts=[AttemptRecord(attempt=1, status=StepStatus.FAILURE, exit_code=e.exit_code, duration=0.0)],
                attempt_count=1,
            )

    def _record(self, stage: StageDefinition, result: StageResult, step_result: StepResult) -> None:
        result.step_results.append(step_result)
        if self.on_step:
            try:
                self.on_step(stage.name, step_result)
            except Exception as e:
                logger.warning("Step callback error: %s", e)

    def _finish_early(
        self,
        result: StageResult,
        stage: StageDefinition,
        next_index: int,
        status: StageStatus,
        reason: str,
    ) -> None:
        """Mark the stage terminal and the steps from next_index on as skipped."""
        result.status = status
        result.error = reason
        for later in stage.steps[next_index:]:
            result.step_results.append(StepResult.skipped(later.name, reason))

    def _publish_outputs(self, stage: StageDefinition, env: EnvironmentContext, result: StageResult) -> None:
        """Publish declared outputs after every step succeeded.

        Raises:
            ArtifactError: If an output cannot be published or was never emitted
        """
        for spec in stage.outputs:
            if spec.value is not None:
                artifact = Artifact(name=spec.name, value=env.render(spec.value), retain=spec.retain)
            elif spec.path is not None:
                path = env.resolve_path(env.render(spec.path))
                artifact = Artifact(name=spec.name, path=str(path), retain=spec.retain)
            else:
                if spec.name not in result.artifacts:
                    raise ArtifactError(
                        f"Stage '{stage.name}' declared output '{spec.name}' but never published it"
                    )
                continue
            self.store.publish(env.run_id, stage.name, artifact)
            result.artifacts.append(spec.name)
