"""
Pipeline engine for stage-based workflows.

Walks the validated stage graph, dispatches ready stages to a worker pool,
propagates artifacts between stages, applies failure policies and produces
a complete PipelineRun record, even when stages fail or the run is
cancelled.
"""

import logging
import threading
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Sequence

from ..errors import ArtifactNotFoundError, DependencyUnmetError
from .artifacts import ArtifactHandle, ArtifactStore
from .environment import EnvironmentContext
from .planner import ExecutionPlan, plan_stages
from .stage import FailurePolicy, StageDefinition, StageResult, StageRunner, StageStatus
from .step import StepExecutor, StepResult
from .tools import ToolRegistry

if TYPE_CHECKING:
    from ..config import Settings
    from ..runs import RunStore

logger = logging.getLogger(__name__)


class RunStatus(str, Enum):
    """Pipeline run status."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.ABORTED)


@dataclass
class PipelineDefinition:
    """A complete pipeline.

    Attributes:
        name: Pipeline identifier
        stages: Stages in declared order
        description: Human-readable description
        env: Pipeline-level environment variables
    """
    name: str
    stages: list[StageDefinition]
    description: str = ""
    env: dict[str, str] = field(default_factory=dict)


@dataclass
class PipelineRun:
    """Record of one pipeline execution.

    Mutated only by the engine while running; never written again once
    terminal.

    Attributes:
        run_id: Unique run identifier
        pipeline_name: Name of the executed pipeline
        status: Overall status
        started_at: ISO timestamp
        finished_at: ISO timestamp
        duration: Seconds from start to finish
        stages: Stage results in completion order, then stages never started
        degraded: A continue_degraded stage failed
        artifacts: Artifacts published during the run
        error: Why the run failed or was aborted
    """
    run_id: str
    pipeline_name: str
    status: RunStatus = RunStatus.PENDING
    started_at: str | None = None
    finished_at: str | None = None
    duration: float = 0.0
    stages: list[StageResult] = field(default_factory=list)
    degraded: bool = False
    artifacts: list[ArtifactHandle] = field(default_factory=list)
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def stage(self, name: str) -> StageResult | None:
        for result in self.stages:
            if result.stage_name == name:
                return result
        return None

    @property
    def failed_stages(self) -> list[StageResult]:
        return [s for s in self.stages if s.status == StageStatus.FAILED]

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "pipeline_name": self.pipeline_name,
            "status": self.status.value,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration": self.duration,
            "degraded": self.degraded,
            "error": self.error,
            "stages": [s.to_dict() for s in self.stages],
            "artifacts": [a.to_dict() for a in self.artifacts],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PipelineRun":
        return cls(
            run_id=data["run_id"],
            pipeline_name=data.get("pipeline_name", ""),
            status=RunStatus(data.get("status", RunStatus.PENDING.value)),
            started_at=data.get("started_at"),
            finished_at=data.get("finished_at"),
            duration=data.get("duration", 0.0),
            stages=[StageResult.from_dict(s) for s in data.get("stages", [])],
            degraded=data.get("degraded", False),
            artifacts=[ArtifactHandle.from_dict(a) for a in data.get("artifacts", [])],
            error=data.get("error"),
        )


# Event types for callbacks
@dataclass
class PipelineEvent:
    """Base class for pipeline events."""
    pass


@dataclass
class RunStartedEvent(PipelineEvent):
    """Emitted once the definition is validated and the run begins."""
    run_id: str
    pipeline: str
    stages: list[str]


@dataclass
class StageStartedEvent(PipelineEvent):
    """Emitted when a stage is dispatched."""
    stage: str


@dataclass
class StepCompletedEvent(PipelineEvent):
    """Emitted after every step (emitted from worker threads)."""
    stage: str
    result: StepResult


@dataclass
class StageCompletedEvent(PipelineEvent):
    """Emitted when a stage reaches a terminal status."""
    stage: str
    result: StageResult


@dataclass
class PipelineCompletedEvent(PipelineEvent):
    """Emitted when the run finishes."""
    run_id: str
    status: RunStatus
    degraded: bool = False


def new_run_id() -> str:
    """Sortable run id: UTC timestamp plus a random suffix."""
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    return f"{stamp}-{uuid.uuid4().hex[:6]}"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class PipelineEngine:
    """Executes pipelines.

    Args:
        tools: Tool registry for `tool` steps (defaults to the built-ins)
        store: Artifact store shared by runs of this engine
        run_store: Optional RunStore the run is persisted to as it progresses
        on_event: Optional callback for pipeline events
        workdir: Working directory for steps (defaults to the cwd)
        env: Base environment variables for every run
        max_workers: Maximum number of stages running at once
        max_output_chars: Output bound per step attempt
        default_timeout: Timeout for steps that declare none
        executor: Pre-built StepExecutor (overrides tools/output/timeout args)
    """

    def __init__(
        self,
        tools: ToolRegistry | None = None,
        store: ArtifactStore | None = None,
        run_store: "RunStore | None" = None,
        on_event: Callable[[PipelineEvent], None] | None = None,
        workdir: str | Path | None = None,
        env: dict[str, str] | None = None,
        max_workers: int = 4,
        max_output_chars: int = 1_000_000,
        default_timeout: float | None = None,
        executor: StepExecutor | None = None,
    ):
        self.store = store or ArtifactStore()
        self.run_store = run_store
        self.on_event = on_event
        self.workdir = Path(workdir) if workdir is not None else Path.cwd()
        self.env = dict(env or {})
        self.max_workers = max_workers
        self.executor = executor or StepExecutor(
            tools=tools,
            max_output_chars=max_output_chars,
            default_timeout=default_timeout,
        )
        self.stage_runner = StageRunner(
            executor=self.executor,
            store=self.store,
            on_step=lambda stage, result: self._emit(StepCompletedEvent(stage=stage, result=result)),
        )
        self._lock = threading.Lock()
        self._active: dict[str, threading.Event] = {}
        self._current: PipelineRun | None = None

    @classmethod
    def from_settings(cls, settings: "Settings", **kwargs) -> "PipelineEngine":
        """Build an engine from Settings; keyword arguments take precedence."""
        from ..runs import RunStore

        kwargs.setdefault("store", ArtifactStore(settings.artifacts_dir))
        kwargs.setdefault("run_store", RunStore(settings.state_dir))
        kwargs.setdefault("max_workers", settings.max_workers)
        kwargs.setdefault("max_output_chars", settings.max_output_chars)
        kwargs.setdefault("default_timeout", settings.default_timeout)
        return cls(**kwargs)

    @property
    def current_run(self) -> PipelineRun | None:
        """The most recently started run (in progress or finished)."""
        return self._current

    def _emit(self, event: PipelineEvent) -> None:
        """Emit an event to the callback if registered."""
        if self.on_event:
            try:
                self.on_event(event)
            except Exception as e:
                logger.warning("Event callback error: %s", e)

    def cancel(self) -> None:
        """Cancel every run in progress: running steps are killed, pending stages aborted."""
        logger.warning("Cancellation requested")
        with self._lock:
            events = list(self._active.values())
        for event in events:
            event.set()

    def run_pipeline(self, dag: Sequence[StageDefinition], name: str = "pipeline") -> PipelineRun:
        """Run a bare sequence of stages."""
        return self.run(PipelineDefinition(name=name, stages=list(dag)))

    def run(self, pipeline: PipelineDefinition, run_id: str | None = None) -> PipelineRun:
        """Execute the pipeline to completion.

        Returns:
            The terminal PipelineRun

        Raises:
            ConfigurationError: If the definition is invalid (nothing runs)
        """
        plan = plan_stages(pipeline.stages)

        run = PipelineRun(run_id=run_id or new_run_id(), pipeline_name=pipeline.name)
        cancel_event = threading.Event()
        with self._lock:
            self._active[run.run_id] = cancel_event
            self._current = run
        try:
            return self._run(plan, pipeline, run, cancel_event)
        finally:
            with self._lock:
                self._active.pop(run.run_id, None)

    def _run(
        self,
        plan: ExecutionPlan,
        pipeline: PipelineDefinition,
        run: PipelineRun,
        cancel_event: threading.Event,
    ) -> PipelineRun:
        run.status = RunStatus.RUNNING
        run.started_at = _now()
        start = time.monotonic()
        self._persist(run)

        variables = dict(self.env)
        variables.update(pipeline.env)
        base_env = EnvironmentContext(run_id=run.run_id, workdir=self.workdir, variables=variables)

        logger.info("Run %s of '%s' starting: %s", run.run_id, pipeline.name, " -> ".join(plan.stage_names))
        self._emit(RunStartedEvent(run_id=run.run_id, pipeline=pipeline.name, stages=plan.stage_names))

        results, halted_by = self._execute_plan(plan, run, base_env, cancel_event)

        cancelled = cancel_event.is_set()
        if cancelled:
            reason = "run cancelled"
        elif halted_by is not None:
            reason = f"pipeline halted: stage '{halted_by}' failed"
        else:
            reason = None
        for stage in plan.order:
            if stage.name not in results:
                result = StageResult.not_run(stage, StageStatus.ABORTED, reason)
                results[stage.name] = result
                run.stages.append(result)
                self._emit(StageCompletedEvent(stage=stage.name, result=result))

        if cancelled:
            run.status = RunStatus.ABORTED
            run.error = "run cancelled"
        elif halted_by is not None:
            run.status = RunStatus.FAILED
            run.error = f"stage '{halted_by}' failed"
        else:
            run.status = RunStatus.SUCCEEDED

        run.artifacts = self.store.artifacts_for(run.run_id)
        run.finished_at = _now()
        run.duration = time.monotonic() - start
        logger.info("Run %s finished: %s (%.2fs)", run.run_id, run.status.value, run.duration)
        self._persist(run)

        self._emit(PipelineCompletedEvent(run_id=run.run_id, status=run.status, degraded=run.degraded))
        return run

    def _persist(self, run: PipelineRun) -> None:
        """Save the run's current state so `status` can show it mid-run."""
        if self.run_store is None:
            return
        run.artifacts = self.store.artifacts_for(run.run_id)
        try:
            self.run_store.save(run)
        except OSError as e:
            logger.error("Could not persist run %s: %s", run.run_id, e)

    def _execute_plan(
        self,
        plan: ExecutionPlan,
        run: PipelineRun,
        base_env: EnvironmentContext,
        cancel_event: threading.Event,
    ) -> tuple[dict[str, StageResult], str | None]:
        """Dispatch stages as their predecessors finish.

        Returns:
            (results by stage name, name of the abort_pipeline stage that failed)
        """
        results: dict[str, StageResult] = {}
        pending = [s.name for s in plan.order]
        running: dict[Future, str] = {}
        halted_by: str | None = None

        def complete(name: str, result: StageResult) -> None:
            nonlocal halted_by
            results[name] = result
            run.stages.append(result)
            if result.status == StageStatus.FAILED:
                if result.failure_policy == FailurePolicy.ABORT_PIPELINE:
                    if halted_by is None:
                        halted_by = name
                        logger.error("Stage '%s' failed; halting pipeline", name)
                else:
                    run.degraded = True
                    logger.warning("Stage '%s' failed; continuing degraded", name)
            self._persist(run)
            self._emit(StageCompletedEvent(stage=name, result=result))

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="stage") as pool:
            while True:
                for name in list(pending):
                    if halted_by is not None or cancel_event.is_set():
                        break
                    if not all(p in results for p in plan.predecessors[name]):
                        continue
                    pending.remove(name)
                    stage = plan.stage(name)
                    try:
                        env = self._stage_env(base_env, stage, results)
                    except DependencyUnmetError as e:
                        logger.error("%s", e)
                        complete(name, StageResult.not_run(stage, StageStatus.FAILED, str(e)))
                        continue
                    self._emit(StageStartedEvent(stage=name))
                    future = pool.submit(self.stage_runner.run, stage, env, cancel_event)
                    running[future] = name

                if not running:
                    break

                done, _ = wait(running, return_when=FIRST_COMPLETED)
                for future in done:
                    name = running.pop(future)
                    try:
                        result = future.result()
                    except Exception as e:
                        logger.exception("Stage '%s' crashed", name)
                        result = StageResult.not_run(plan.stage(name), StageStatus.FAILED, f"internal error: {e}")
                    complete(name, result)

        return results, halted_by

    def _stage_env(
        self,
        base_env: EnvironmentContext,
        stage: StageDefinition,
        results: dict[str, StageResult],
    ) -> EnvironmentContext:
        """Bind the stage's required artifacts into its environment.

        Raises:
            DependencyUnmetError: If a needed artifact is missing or its
                producer did not succeed
        """
        bindings: dict[str, str] = {}
        missing: list[str] = []
        for needed in stage.needs:
            try:
                handle = self.store.fetch(base_env.run_id, needed)
            except ArtifactNotFoundError:
                missing.append(needed)
                continue
            producer = results.get(handle.stage)
            if producer is None or producer.status != StageStatus.SUCCEEDED:
                missing.append(needed)
                continue
            bindings[needed] = handle.binding

        if missing:
            raise DependencyUnmetError(stage.name, missing)
        return base_env.bind_artifacts(bindings)
