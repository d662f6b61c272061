"""
Tool adapter registry.

Maps tool names used in pipeline definitions (e.g. "trivy-image") to an
invocation adapter: an argv template plus the parser that judges the result.
The registry is injected into the engine, so lookups never depend on what
happens to be installed on the host.
"""

import logging
import shutil
from dataclasses import dataclass, field
from typing import Any, Mapping

from ..errors import ConfigurationError, StepExecutionError
from .environment import EnvironmentContext, find_placeholders, render_template
from .outputs import ExitCodeParser, OutputParser

logger = logging.getLogger(__name__)


@dataclass
class ToolAdapter:
    """Invocation adapter for an external tool.

    Attributes:
        name: Registry key (e.g. "docker-build")
        argv: Argument template; {placeholders} come from step arguments
        defaults: Default values for placeholders
        parser: Parser that judges the command result
        description: One-line description for listings
    """
    name: str
    argv: list[str]
    defaults: dict[str, str] = field(default_factory=dict)
    parser: OutputParser = field(default_factory=ExitCodeParser)
    description: str = ""

    @property
    def executable(self) -> str:
        return self.argv[0]

    def check_available(self) -> bool:
        """Return True if the tool's binary is on PATH."""
        return shutil.which(self.executable) is not None

    def placeholders(self) -> set[str]:
        names: set[str] = set()
        for part in self.argv:
            names |= find_placeholders(part)
        return names

    def missing_args(self, args: Mapping[str, Any], known: Mapping[str, Any] | None = None) -> list[str]:
        """Placeholders not provided by args, defaults or known variables."""
        provided = set(self.defaults) | set(args) | set(known or {})
        return sorted(self.placeholders() - provided)

    def build_argv(self, args: Mapping[str, Any], env: EnvironmentContext) -> list[str]:
        """Render the argv template for one invocation.

        Raises:
            StepExecutionError: If a placeholder cannot be resolved
        """
        values = env.template_values(self.defaults)
        values.update({k: env.render(str(v)) for k, v in args.items()})
        unresolved = sorted(self.placeholders() - set(values))
        if unresolved:
            raise StepExecutionError(
                f"Tool '{self.name}' is missing argument(s): {', '.join(unresolved)}",
                exit_code=2,
            )
        return [render_template(part, values) for part in self.argv]


class ToolRegistry:
    """Name -> ToolAdapter mapping."""

    def __init__(self, adapters: list[ToolAdapter] | None = None):
        self._adapters: dict[str, ToolAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: ToolAdapter, replace: bool = False) -> None:
        if adapter.name in self._adapters and not replace:
            raise ConfigurationError(f"Tool '{adapter.name}' is already registered")
        if not adapter.argv:
            raise ConfigurationError(f"Tool '{adapter.name}' has an empty argv template")
        self._adapters[adapter.name] = adapter

    def get(self, name: str) -> ToolAdapter:
        """Look up a tool adapter by name.

        Raises:
            ConfigurationError: If the tool is unknown
        """
        adapter = self._adapters.get(name)
        if adapter is None:
            raise ConfigurationError(
                f"Unknown tool '{name}'. Available: {', '.join(sorted(self._adapters))}"
            )
        return adapter

    def names(self) -> list[str]:
        return sorted(self._adapters)

    def __contains__(self, name: object) -> bool:
        return name in self._adapters


# ---------------------------------------------------------------------------
# Built-in adapters
# ---------------------------------------------------------------------------

def _builtin_adapters() -> list[ToolAdapter]:
    return [
        ToolAdapter(
            name="sonar-scanner",
            argv=[
                "sonar-scanner",
                "-Dsonar.projectKey={project_key}",
                "-Dsonar.projectName={project_key}",
                "-Dsonar.sources={sources}",
            ],
            defaults={"sources": "."},
            description="Code quality analysis",
        ),
        ToolAdapter(
            name="dependency-check",
            argv=[
                "dependency-check.sh",
                "--scan", "{path}",
                "--format", "{format}",
                "--out", "{out}",
            ],
            defaults={"path": ".", "format": "XML", "out": "."},
            description="OWASP dependency vulnerability check",
        ),
        ToolAdapter(
            name="trivy-fs",
            argv=["trivy", "fs", "--severity", "{severity}", "--exit-code", "{exit_code}", "{path}"],
            defaults={"path": ".", "severity": "HIGH,CRITICAL", "exit_code": "0"},
            description="Filesystem vulnerability scan",
        ),
        ToolAdapter(
            name="trivy-image",
            argv=["trivy", "image", "--severity", "{severity}", "--exit-code", "{exit_code}", "{image}"],
            defaults={"severity": "HIGH,CRITICAL", "exit_code": "0"},
            description="Container image vulnerability scan",
        ),
        ToolAdapter(
            name="docker-build",
            argv=["docker", "build", "-t", "{image}", "{context}"],
            defaults={"context": "."},
            description="Build a container image",
        ),
        ToolAdapter(
            name="docker-push",
            argv=["docker", "push", "{image}"],
            description="Push a container image to its registry",
        ),
        ToolAdapter(
            name="docker-run",
            argv=["docker", "run", "-d", "--name", "{container}", "-p", "{ports}", "{image}"],
            description="Run a container (not idempotent: remove the old container first)",
        ),
        ToolAdapter(
            name="kubectl-apply",
            argv=["kubectl", "apply", "-f", "{manifest}"],
            description="Apply Kubernetes manifests",
        ),
    ]


def default_registry() -> ToolRegistry:
    """Create a registry holding the built-in adapters."""
    return ToolRegistry(_builtin_adapters())
