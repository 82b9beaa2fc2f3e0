from .execution_log import ExecutionLog
from .models import StageExecution, WorkflowExecution

__all__ = [
    "ExecutionLog",
    "StageExecution",
    "WorkflowExecution",
]
