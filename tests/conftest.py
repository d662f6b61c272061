import pytest

from shipyard.pipeline.artifacts import ArtifactStore
from shipyard.pipeline.environment import EnvironmentContext
from shipyard.pipeline.step import StepExecutor


@pytest.fixture
def env(tmp_path):
    return EnvironmentContext(run_id="run-1", workdir=tmp_path)


@pytest.fixture
def executor():
    return StepExecutor(poll_interval=0.01)


@pytest.fixture
def store(tmp_path):
    return ArtifactStore(tmp_path / "artifacts")
