"""Workflow definition, instance and execution models"""

from .instance import (
    WorkflowInstance, NodeInstance, ExecutionLock, ExecutionLog,
    WorkflowStatus, NodeStatus, NodeType, LockType,
    LoopProgress, ParallelProgress, Checkpoint, utcnow
)
from .definition import (
    WorkflowDefinition, DefinitionStatus, WorkflowGraph, NodeDefinition,
    BaseNodeDefinition, SimpleNodeDefinition, LoopNodeDefinition,
    ParallelNodeDefinition, SubProcessNodeDefinition, Connection, GraphConfig
)
from .execution import (
    ExecutionContext, ExecutionResult, ServiceResult, FailureReason,
    WorkflowOptions
)

__all__ = [
    "WorkflowInstance",
    "NodeInstance",
    "ExecutionLock",
    "ExecutionLog",
    "WorkflowStatus",
    "NodeStatus",
    "NodeType",
    "LockType",
    "LoopProgress",
    "ParallelProgress",
    "Checkpoint",
    "utcnow",
    "WorkflowDefinition",
    "DefinitionStatus",
    "WorkflowGraph",
    "NodeDefinition",
    "BaseNodeDefinition",
    "SimpleNodeDefinition",
    "LoopNodeDefinition",
    "ParallelNodeDefinition",
    "SubProcessNodeDefinition",
    "Connection",
    "GraphConfig",
    "ExecutionContext",
    "ExecutionResult",
    "ServiceResult",
    "FailureReason",
    "WorkflowOptions"
]
