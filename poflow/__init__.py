"""poflow: durable purchase-order ingestion pipeline."""

from .config import PoflowConfig, load_config
from .contracts import JobEnvelope, Stage, StageOutput
from .orchestrator import WorkflowOrchestrator
from .persistence import get_repository
from .runtime import Runtime, build_runtime
from .transports import get_transport
from .worker import StageWorker

__version__ = "0.1.0"
__all__ = [
    "JobEnvelope",
    "PoflowConfig",
    "Runtime",
    "Stage",
    "StageOutput",
    "StageWorker",
    "WorkflowOrchestrator",
    "build_runtime",
    "get_repository",
    "get_transport",
    "load_config",
]
