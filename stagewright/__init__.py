"""stagewright: deterministic stage-transition engine for multi-agent work orders."""

from .agents import REGISTRY, register_agent
from .bootstrap import build_engine
from .catalog import YamlWorkflowCatalog
from .contracts import ResultStatus, StageResult, TaskPayload
from .dispatch import TransportDispatcher
from .engine import LeaseManager, LeaseReaper, StageEngine, TransitionOutcome
from .ingestion import CompletionIngestor, CompletionListener
from .persistence import get_repository
from .transports import get_transport
from .worker import StageWorker

__version__ = "0.1.0"
__all__ = [
    "CompletionIngestor",
    "CompletionListener",
    "LeaseManager",
    "LeaseReaper",
    "REGISTRY",
    "ResultStatus",
    "StageEngine",
    "StageResult",
    "StageWorker",
    "TaskPayload",
    "TransitionOutcome",
    "TransportDispatcher",
    "YamlWorkflowCatalog",
    "build_engine",
    "get_repository",
    "get_transport",
    "register_agent",
]
