"""Storage and repository interfaces"""

from .repository import (
    WorkflowDefinitionRepository,
    WorkflowInstanceRepository,
    NodeInstanceRepository,
    ExecutionLockRepository,
    ExecutionLogRepository
)
from .memory import (
    InMemoryWorkflowDefinitionRepository,
    InMemoryWorkflowInstanceRepository,
    InMemoryNodeInstanceRepository,
    InMemoryExecutionLockRepository,
    InMemoryExecutionLogRepository
)

__all__ = [
    "WorkflowDefinitionRepository",
    "WorkflowInstanceRepository",
    "NodeInstanceRepository",
    "ExecutionLockRepository",
    "ExecutionLogRepository",
    "InMemoryWorkflowDefinitionRepository",
    "InMemoryWorkflowInstanceRepository",
    "InMemoryNodeInstanceRepository",
    "InMemoryExecutionLockRepository",
    "InMemoryExecutionLogRepository"
]
