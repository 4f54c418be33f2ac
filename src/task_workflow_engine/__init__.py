"""
Task Workflow Engine - 分层工作流执行引擎
"""

__version__ = "0.1.0"

from .config import EngineSettings
from .core.engine import WorkflowEngine
from .core.executors import ExecutorRegistry
from .core.parser import WorkflowParser
from .models.definition import WorkflowDefinition, WorkflowGraph
from .models.execution import ExecutionContext, ExecutionResult, ServiceResult, WorkflowOptions
from .models.instance import WorkflowInstance, NodeInstance, WorkflowStatus, NodeStatus

__all__ = [
    "EngineSettings",
    "WorkflowEngine",
    "ExecutorRegistry",
    "WorkflowParser",
    "WorkflowDefinition",
    "WorkflowGraph",
    "ExecutionContext",
    "ExecutionResult",
    "ServiceResult",
    "WorkflowOptions",
    "WorkflowInstance",
    "NodeInstance",
    "WorkflowStatus",
    "NodeStatus"
]
