import pytest

from poflow.collaborators import LocalFileStorage
from poflow.config import LockConfig, PipelineConfig, PoflowConfig, RetryConfig
from poflow.contracts import InlineStageJob, Stage
from poflow.orchestrator import WorkflowOrchestrator
from poflow.runtime import build_runtime
from poflow.worker import StageWorker
from tests.fixtures.purchase_orders import PO_TEXT, FakeImageSearcher, FakeParser


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """Keep developer environment variables out of backend selection."""
    for name in (
        "POFLOW_DATABASE_URL",
        "DATABASE_URL",
        "POFLOW_TRANSPORT",
        "POFLOW_REDIS_URL",
        "POFLOW_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("POFLOW_CONFIG", str(tmp_path / "missing-config.yaml"))


@pytest.fixture
def test_config():
    return PoflowConfig(
        retry=RetryConfig(max_retries=3, initial_delay_ms=1, max_delay_ms=5),
        lock=LockConfig(poll_interval_seconds=0.01, max_poll_interval_seconds=0.02),
        pipeline=PipelineConfig(image_mode="sync", image_search_timeout_seconds=0.2),
    )


@pytest.fixture
def fake_parser():
    return FakeParser()


@pytest.fixture
def fake_images():
    return FakeImageSearcher()


@pytest.fixture
def make_runtime(test_config, fake_parser, fake_images, tmp_path):
    def factory(config=None, **overrides):
        overrides.setdefault("parser", fake_parser)
        overrides.setdefault("images", fake_images)
        overrides.setdefault("storage", LocalFileStorage(tmp_path))
        return build_runtime(config or test_config, **overrides)

    return factory


@pytest.fixture
def runtime(make_runtime):
    return make_runtime()


@pytest.fixture
def orchestrator(runtime):
    return WorkflowOrchestrator(runtime)


@pytest.fixture
def worker(orchestrator):
    return StageWorker(orchestrator)


@pytest.fixture
def run_stage(orchestrator):
    """Run a single processor directly against the orchestrator's context."""

    async def runner(stage, data, workflow_id="wf_test"):
        job = InlineStageJob(workflow_id, Stage(stage).value, data)
        processor = orchestrator.processors[Stage(stage)]
        return await processor.process(job, data, orchestrator.context)

    return runner


@pytest.fixture
def start_data():
    return {"merchantId": "shop-1", "fileName": "po-1042.txt", "content": PO_TEXT}
