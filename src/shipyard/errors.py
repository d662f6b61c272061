"""
Exception taxonomy for pipeline execution.

Configuration errors are fatal and raised before any stage runs. Step,
artifact and dependency errors are caught by the stage runner or engine and
recorded on the run instead of propagating.
"""


class ShipyardError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(ShipyardError, ValueError):
    """Malformed pipeline definition (cycle, duplicate name, empty stage...)."""


class StepExecutionError(ShipyardError):
    """A step could not be executed or finished unsuccessfully.

    Attributes:
        step_name: Name of the step that failed
        exit_code: Exit code to report for the failure (127 = not found)
    """

    def __init__(self, message: str, step_name: str = "", exit_code: int | None = None):
        super().__init__(message)
        self.step_name = step_name
        self.exit_code = exit_code


class ArtifactError(ShipyardError):
    """Base class for artifact store failures."""


class DuplicateArtifactError(ArtifactError):
    """An artifact with the same name was already published in this run."""

    def __init__(self, run_id: str, name: str, stage: str):
        super().__init__(
            f"Artifact '{name}' already published in run {run_id} (by stage '{stage}')"
        )
        self.run_id = run_id
        self.name = name
        self.stage = stage


class ArtifactNotFoundError(ArtifactError, KeyError):
    """No artifact with the requested name exists in the run."""

    def __init__(self, run_id: str, name: str):
        super().__init__(f"Artifact '{name}' not found in run {run_id}")
        self.run_id = run_id
        self.name = name

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message
        return self.args[0]


class DependencyUnmetError(ArtifactError):
    """A stage requires an artifact that no predecessor published."""

    def __init__(self, stage: str, missing: list[str]):
        names = ", ".join(missing)
        super().__init__(f"Stage '{stage}' requires unpublished artifact(s): {names}")
        self.stage = stage
        self.missing = list(missing)


class RunNotFoundError(ShipyardError, LookupError):
    """No persisted run record matches the requested id."""
