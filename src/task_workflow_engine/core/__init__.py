"""Core workflow engine components"""

from .engine import WorkflowEngine
from .executors import Executor, FunctionExecutor, ExecutorRegistry, register_builtin_executors
from .parser import WorkflowParser
from .lock_service import ExecutionLockService, workflow_lock_key
from .definition_service import WorkflowDefinitionService
from .instance_service import WorkflowInstanceService
from .node_service import NodeExecutionService
from .execution_service import WorkflowExecutionService
from .recovery import RecoveryWorker
from .concurrency import ConcurrencyLimiter
from .error_handler import RetryHandler, RetryPolicy, RetryStrategy

__all__ = [
    "WorkflowEngine",
    "Executor",
    "FunctionExecutor",
    "ExecutorRegistry",
    "register_builtin_executors",
    "WorkflowParser",
    "ExecutionLockService",
    "workflow_lock_key",
    "WorkflowDefinitionService",
    "WorkflowInstanceService",
    "NodeExecutionService",
    "WorkflowExecutionService",
    "RecoveryWorker",
    "ConcurrencyLimiter",
    "RetryHandler",
    "RetryPolicy",
    "RetryStrategy"
]
