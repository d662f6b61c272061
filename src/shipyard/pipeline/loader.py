"""
YAML pipeline definition loader.

Parses pipeline definitions from YAML (or JSON) files, validates them with
Pydantic and the DAG planner, and converts them to engine definitions.
"""

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from ..errors import ConfigurationError
from .engine import PipelineDefinition
from .planner import plan_stages
from .stage import ArtifactSpec, FailurePolicy, StageDefinition
from .step import StepDefinition
from .tools import ToolRegistry, default_registry

logger = logging.getLogger(__name__)

EnvValue = str | int | float | bool


# ---------------------------------------------------------------------------
# Pydantic Schema Models
# ---------------------------------------------------------------------------


class StepSchema(BaseModel):
    """Schema for a single step."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: str
    command: str | list[str] | None = None
    tool: str | None = None
    with_: dict[str, EnvValue] = Field(default_factory=dict, alias="with")
    shell: bool = False
    env: dict[str, EnvValue] = Field(default_factory=dict)
    workdir: str | None = None
    timeout: float | None = Field(default=None, gt=0)
    retries: int = Field(default=0, ge=0)
    retry_delay: float = Field(default=0.0, ge=0)
    continue_on_error: bool = False
    fail_on: list[str] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Step name cannot be empty")
        return v

    @model_validator(mode="after")
    def validate_command(self) -> "StepSchema":
        """Exactly one of command or tool, and commands must be non-empty."""
        if self.tool is None and self.command is None:
            raise ValueError(f"Step '{self.name}' needs either 'command' or 'tool'")
        if self.tool is not None and self.command is not None:
            raise ValueError(f"Step '{self.name}' cannot set both 'command' and 'tool'")
        if self.command is not None:
            parts = [self.command] if isinstance(self.command, str) else self.command
            if not any(p.strip() for p in parts):
                raise ValueError(f"Step '{self.name}' has an empty command")
        return self

    def to_definition(self) -> StepDefinition:
        command: str | list[str] = self.command if self.command is not None else []
        return StepDefinition(
            name=self.name,
            command=command,
            tool=self.tool,
            args={k: str(v) for k, v in self.with_.items()},
            shell=self.shell,
            env={k: str(v) for k, v in self.env.items()},
            workdir=self.workdir,
            timeout=self.timeout,
            retries=self.retries,
            retry_delay=self.retry_delay,
            continue_on_error=self.continue_on_error,
            fail_on=list(self.fail_on),
        )


class OutputSchema(BaseModel):
    """Schema for a declared artifact output."""

    model_config = ConfigDict(extra="forbid")

    name: str
    value: str | None = None
    path: str | None = None
    retain: bool = True

    @model_validator(mode="after")
    def validate_content(self) -> "OutputSchema":
        if self.value is not None and self.path is not None:
            raise ValueError(f"Output '{self.name}' cannot set both 'value' and 'path'")
        return self


class StageSchema(BaseModel):
    """Schema for a single pipeline stage."""

    model_config = ConfigDict(extra="forbid")

    name: str
    failure_policy: FailurePolicy = FailurePolicy.ABORT_PIPELINE
    depends_on: list[str] | None = None
    needs: list[str] = Field(default_factory=list)
    outputs: list[OutputSchema] = Field(default_factory=list)
    steps: list[StepSchema]

    @field_validator("outputs", mode="before")
    @classmethod
    def expand_output_names(cls, v: Any) -> Any:
        """Allow `outputs: [image-tag]` as shorthand for marker-emitted outputs."""
        if isinstance(v, list):
            return [{"name": item} if isinstance(item, str) else item for item in v]
        return v

    @field_validator("steps")
    @classmethod
    def validate_steps(cls, v: list[StepSchema]) -> list[StepSchema]:
        if not v:
            raise ValueError("Stage must have at least one step")
        return v

    def to_definition(self) -> StageDefinition:
        return StageDefinition(
            name=self.name,
            steps=[s.to_definition() for s in self.steps],
            failure_policy=self.failure_policy,
            depends_on=list(self.depends_on) if self.depends_on is not None else None,
            needs=list(self.needs),
            outputs=[
                ArtifactSpec(name=o.name, value=o.value, path=o.path, retain=o.retain)
                for o in self.outputs
            ],
        )


class PipelineSchema(BaseModel):
    """Schema for a complete pipeline definition."""

    model_config = ConfigDict(extra="forbid")

    name: str
    description: str = ""
    env: dict[str, EnvValue] = Field(default_factory=dict)
    stages: list[StageSchema]

    @model_validator(mode="after")
    def validate_stage_names(self) -> "PipelineSchema":
        names = [s.name for s in self.stages]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate stage name(s): {', '.join(duplicates)}")
        return self

    def to_definition(self) -> PipelineDefinition:
        return PipelineDefinition(
            name=self.name,
            description=self.description,
            env={k: str(v) for k, v in self.env.items()},
            stages=[s.to_definition() for s in self.stages],
        )


# ---------------------------------------------------------------------------
# Loader Functions
# ---------------------------------------------------------------------------


def validate_tools(definition: PipelineDefinition, tools: ToolRegistry) -> None:
    """Check every tool step names a registered tool with all its arguments.

    Raises:
        ConfigurationError: On unknown tools or unresolvable template arguments
    """
    known = set(definition.env) | {"run_id", "workdir"}
    for stage in definition.stages:
        available = known | set(stage.needs)
        for step in stage.steps:
            if step.tool is None:
                continue
            adapter = tools.get(step.tool)
            missing = adapter.missing_args(step.args, {k: "" for k in available})
            if missing:
                raise ConfigurationError(
                    f"Stage '{stage.name}' step '{step.name}': tool '{step.tool}' "
                    f"is missing argument(s): {', '.join(missing)}"
                )


def load_pipeline_from_dict(
    data: dict[str, Any],
    tools: ToolRegistry | None = None,
) -> PipelineDefinition:
    """Load a pipeline definition from a dictionary.

    Useful for programmatic pipeline creation or testing.

    Raises:
        ConfigurationError: If validation fails
    """
    try:
        schema = PipelineSchema(**data)
    except ValidationError as e:
        raise ConfigurationError(f"Pipeline validation failed: {e}") from e

    try:
        definition = schema.to_definition()
    except ConfigurationError:
        raise
    except ValueError as e:
        raise ConfigurationError(f"Pipeline validation failed: {e}") from e

    plan_stages(definition.stages)
    validate_tools(definition, tools or default_registry())
    return definition


def load_pipeline(path: str | Path, tools: ToolRegistry | None = None) -> PipelineDefinition:
    """Load a pipeline definition from a YAML or JSON file.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ConfigurationError: If the file is invalid or fails validation
    """
    path = Path(path)

    if not path.is_file():
        raise FileNotFoundError(f"Pipeline file not found: {path}")

    try:
        content = path.read_text(encoding="utf-8")
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Pipeline file must contain a mapping: {path}")

    logger.debug("Loaded pipeline document %s", path)
    return load_pipeline_from_dict(data, tools=tools)


def pipeline_to_dict(definition: PipelineDefinition) -> dict[str, Any]:
    """Convert a definition back to its document form (inverse of the loader)."""
    stages = []
    for stage in definition.stages:
        steps = []
        for step in stage.steps:
            doc: dict[str, Any] = {"name": step.name}
            if step.tool is not None:
                doc["tool"] = step.tool
                if step.args:
                    doc["with"] = dict(step.args)
            else:
                doc["command"] = " ".join(step.command) if step.shell else list(step.command)
            if step.shell:
                doc["shell"] = True
            if step.env:
                doc["env"] = dict(step.env)
            if step.workdir:
                doc["workdir"] = step.workdir
            if step.timeout is not None:
                doc["timeout"] = step.timeout
            if step.retries:
                doc["retries"] = step.retries
            if step.retry_delay:
                doc["retry_delay"] = step.retry_delay
            if step.continue_on_error:
                doc["continue_on_error"] = True
            if step.fail_on:
                doc["fail_on"] = list(step.fail_on)
            steps.append(doc)

        stage_doc: dict[str, Any] = {
            "name": stage.name,
            "failure_policy": stage.failure_policy.value,
        }
        if stage.depends_on is not None:
            stage_doc["depends_on"] = list(stage.depends_on)
        if stage.needs:
            stage_doc["needs"] = list(stage.needs)
        if stage.outputs:
            stage_doc["outputs"] = [
                {k: v for k, v in (("name", o.name), ("value", o.value), ("path", o.path)) if v is not None}
                | ({} if o.retain else {"retain": False})
                for o in stage.outputs
            ]
        stage_doc["steps"] = steps
        stages.append(stage_doc)

    return {
        "name": definition.name,
        "description": definition.description,
        "env": dict(definition.env),
        "stages": stages,
    }


def create_default_pipeline(
    repo_url: str = "https://github.com/example/2048-react.git",
    branch: str = "main",
    image: str = "registry.example.com/2048:latest",
    project_key: str = "2048",
    manifest: str = "k8s/deployment.yaml",
    container: str = "2048",
    ports: str = "3000:3000",
    timeout: float = 1800,
) -> PipelineDefinition:
    """Create the default DevSecOps build/scan/deploy pipeline.

    checkout -> code-quality -> dependency-check -> filesystem-scan
    -> image -> image-scan -> {deploy-container, deploy-kubernetes}

    Quality and dependency findings degrade the run instead of stopping it.
    The two deploy targets are independent stages; neither is treated as
    authoritative.
    """
    source = "app"

    def step(name: str, **kwargs: Any) -> StepDefinition:
        kwargs.setdefault("timeout", timeout)
        return StepDefinition(name=name, **kwargs)

    stages = [
        StageDefinition(
            name="checkout",
            steps=[
                step("clean-workspace", command=["rm", "-rf", source]),
                step(
                    "clone",
                    command=["git", "clone", "--depth", "1", "--branch", "{BRANCH}", "{REPO_URL}", source],
                    retries=2,
                    retry_delay=5,
                ),
            ],
        ),
        StageDefinition(
            name="code-quality",
            failure_policy=FailurePolicy.CONTINUE_DEGRADED,
            steps=[
                step("sonar-scan", tool="sonar-scanner", args={"project_key": "{PROJECT_KEY}"}, workdir=source),
            ],
        ),
        StageDefinition(
            name="dependency-check",
            failure_policy=FailurePolicy.CONTINUE_DEGRADED,
            steps=[
                step("npm-install", command=["npm", "install"], workdir=source, retries=1),
                step("owasp-check", tool="dependency-check", args={"out": "reports"}, workdir=source),
            ],
            outputs=[ArtifactSpec(name="dependency-report", path=f"{source}/reports/dependency-check-report.xml")],
        ),
        StageDefinition(
            name="filesystem-scan",
            steps=[step("trivy-fs", tool="trivy-fs", workdir=source)],
        ),
        StageDefinition(
            name="image",
            steps=[
                step("docker-build", tool="docker-build", args={"image": "{IMAGE}"}, workdir=source),
                step("docker-push", tool="docker-push", args={"image": "{IMAGE}"}, retries=2, retry_delay=10),
            ],
            outputs=[ArtifactSpec(name="image-tag", value="{IMAGE}")],
        ),
        StageDefinition(
            name="image-scan",
            needs=["image-tag"],
            steps=[step("trivy-image", tool="trivy-image", args={"image": "{image-tag}"})],
        ),
        StageDefinition(
            name="deploy-container",
            depends_on=["image-scan"],
            needs=["image-tag"],
            steps=[
                step("remove-old", command=["docker", "rm", "-f", "{CONTAINER}"], continue_on_error=True),
                step(
                    "docker-run",
                    tool="docker-run",
                    args={"container": "{CONTAINER}", "ports": "{PORTS}", "image": "{image-tag}"},
                ),
            ],
        ),
        StageDefinition(
            name="deploy-kubernetes",
            depends_on=["image-scan"],
            needs=["image-tag"],
            steps=[step("kubectl-apply", tool="kubectl-apply", args={"manifest": "{MANIFEST}"}, workdir=source)],
        ),
    ]

    return PipelineDefinition(
        name="devsecops",
        description="Checkout, scan, build, push and deploy a containerized web app",
        env={
            "REPO_URL": repo_url,
            "BRANCH": branch,
            "IMAGE": image,
            "PROJECT_KEY": project_key,
            "MANIFEST": manifest,
            "CONTAINER": container,
            "PORTS": ports,
        },
        stages=stages,
    )
