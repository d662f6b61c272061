"""
Explicit execution environment passed into every step invocation.

Replaces a shared, mutable agent environment: the engine assembles one
EnvironmentContext per run from base configuration, then derives a new
context per stage with that stage's artifact bindings.
"""

import os
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping

# {name} placeholders; ${NAME} is left for the shell
PLACEHOLDER_PATTERN = re.compile(r"(?<!\$)\{([A-Za-z0-9_.\-]+)\}")


def artifact_env_name(name: str) -> str:
    """Environment variable an artifact is exposed as (image-tag -> ARTIFACT_IMAGE_TAG)."""
    return "ARTIFACT_" + re.sub(r"[^A-Za-z0-9]", "_", name).upper()


def render_template(template: str, values: Mapping[str, Any]) -> str:
    """Substitute {key} placeholders with values; unknown keys are left as-is."""

    def _sub(match: re.Match) -> str:
        key = match.group(1)
        if key in values:
            return str(values[key])
        return match.group(0)

    return PLACEHOLDER_PATTERN.sub(_sub, template)


def find_placeholders(template: str) -> set[str]:
    """Return the placeholder names referenced by a template."""
    return set(PLACEHOLDER_PATTERN.findall(template))


@dataclass(frozen=True)
class EnvironmentContext:
    """Environment for step execution.

    Attributes:
        run_id: Identifier of the pipeline run
        workdir: Base working directory for steps
        variables: Pipeline-level environment variables
        artifacts: Artifact bindings, name -> value or path
        inherit_os: Whether the process environment is inherited
    """
    run_id: str = ""
    workdir: Path = field(default_factory=Path.cwd)
    variables: Mapping[str, str] = field(default_factory=dict)
    artifacts: Mapping[str, str] = field(default_factory=dict)
    inherit_os: bool = True

    def with_variables(self, extra: Mapping[str, str]) -> "EnvironmentContext":
        merged = dict(self.variables)
        merged.update({k: str(v) for k, v in extra.items()})
        return replace(self, variables=merged)

    def bind_artifacts(self, bindings: Mapping[str, str]) -> "EnvironmentContext":
        merged = dict(self.artifacts)
        merged.update({k: str(v) for k, v in bindings.items()})
        return replace(self, artifacts=merged)

    def template_values(self, extra: Mapping[str, Any] | None = None) -> dict[str, Any]:
        """Values available to {placeholder} substitution."""
        values: dict[str, Any] = {"run_id": self.run_id, "workdir": str(self.workdir)}
        values.update(self.variables)
        values.update(self.artifacts)
        if extra:
            values.update(extra)
        return values

    def render(self, template: str, extra: Mapping[str, Any] | None = None) -> str:
        return render_template(template, self.template_values(extra))

    def process_env(self, overrides: Mapping[str, str] | None = None) -> dict[str, str]:
        """Build the subprocess environment: OS, run variables, artifacts, step overrides."""
        env = dict(os.environ) if self.inherit_os else {}
        env.update({k: str(v) for k, v in self.variables.items()})
        for name, value in self.artifacts.items():
            env[artifact_env_name(name)] = str(value)
        if self.run_id:
            env["SHIPYARD_RUN_ID"] = self.run_id
        if overrides:
            env.update({k: self.render(str(v)) for k, v in overrides.items()})
        return env

    def resolve_path(self, path: str | os.PathLike) -> Path:
        candidate = Path(path)
        if candidate.is_absolute():
            return candidate
        return Path(self.workdir) / candidate
