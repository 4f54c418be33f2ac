"""
执行期模型

这些对象只在一次执行过程中存在，不会被持久化。
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from ..exceptions import WorkflowCancelledError, WorkflowTimeoutError
from .definition import BaseNodeDefinition, WorkflowDefinition, WorkflowGraph
from .instance import NodeInstance, WorkflowInstance, WorkflowStatus


class FailureReason(Enum):
    """服务调用失败原因"""
    CONFLICT = "conflict"
    LOCK_CONTENTION = "lock_contention"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    NOT_RESUMABLE = "not_resumable"
    CHECKPOINT_REJECTED = "checkpoint_rejected"
    EXECUTOR_FAILURE = "executor_failure"
    TIMEOUT = "timeout"
    DEADLINE_EXCEEDED = "deadline_exceeded"
    CANCELLED = "cancelled"
    PAUSED = "paused"


CheckpointValidator = Callable[[Dict[str, Any]], Union[bool, Awaitable[bool]]]


@dataclass
class WorkflowOptions:
    """创建或恢复工作流实例的选项"""
    workflow_name: Optional[str] = None
    instance_type: Optional[str] = None
    external_id: Optional[str] = None
    business_key: Optional[str] = None
    mutex_key: Optional[str] = None
    input_data: Dict[str, Any] = field(default_factory=dict)
    context_data: Dict[str, Any] = field(default_factory=dict)
    resume: bool = False
    # None 表示使用定义中的 config.exclusive
    exclusive: Optional[bool] = None
    exclude_statuses: List[WorkflowStatus] = field(default_factory=list)
    checkpoint_validators: Dict[str, CheckpointValidator] = field(default_factory=dict)
    max_retries: Optional[int] = None


@dataclass
class ServiceResult:
    """服务调用结果

    冲突与锁竞争属于预期情况，以 success=False 加 reason 的形式返回，不抛异常。
    """
    success: bool
    data: Any = None
    error: Optional[str] = None
    reason: Optional[FailureReason] = None
    error_details: Optional[Dict[str, Any]] = None
    conflicting_instance: Optional[WorkflowInstance] = None

    @classmethod
    def ok(cls, data: Any = None) -> "ServiceResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(
        cls,
        reason: FailureReason,
        error: str,
        data: Any = None,
        error_details: Dict[str, Any] = None,
        conflicting_instance: WorkflowInstance = None
    ) -> "ServiceResult":
        return cls(
            success=False,
            data=data,
            error=error,
            reason=reason,
            error_details=error_details,
            conflicting_instance=conflicting_instance
        )


@dataclass
class ExecutionResult:
    """节点执行结果"""
    success: bool
    data: Any = None
    error: Optional[str] = None
    error_details: Optional[Dict[str, Any]] = None
    reason: Optional[FailureReason] = None
    checkpoint: Optional[Dict[str, Any]] = None
    duration_ms: Optional[int] = None

    @classmethod
    def ok(cls, data: Any = None, checkpoint: Dict[str, Any] = None) -> "ExecutionResult":
        return cls(success=True, data=data, checkpoint=checkpoint)

    @classmethod
    def fail(
        cls,
        error: str,
        error_details: Dict[str, Any] = None,
        reason: FailureReason = FailureReason.EXECUTOR_FAILURE
    ) -> "ExecutionResult":
        return cls(success=False, error=error, error_details=error_details, reason=reason)


@dataclass
class ExecutionContext:
    """节点执行上下文

    logger 由引擎注入，执行器应通过它记录日志，而不是使用全局 logger。
    """
    workflow_instance: WorkflowInstance
    node_instance: NodeInstance
    node_definition: BaseNodeDefinition
    graph: WorkflowGraph
    logger: Union[logging.Logger, logging.LoggerAdapter]
    workflow_definition: Optional[WorkflowDefinition] = None
    inputs: Dict[str, Any] = field(default_factory=dict)
    config: Dict[str, Any] = field(default_factory=dict)
    # 已完成节点的输出，key 为 node_id
    node_outputs: Dict[str, Any] = field(default_factory=dict)
    # 工作流整体截止时间（UTC）
    deadline: Optional[datetime] = None
    cancellation_check: Optional[Callable[[], Awaitable[Optional[FailureReason]]]] = None

    @property
    def input_data(self) -> Dict[str, Any]:
        return self.node_instance.input_data

    @property
    def item(self) -> Any:
        """循环子节点的当前元素"""
        return self.node_instance.input_data.get("iteration_data")

    @property
    def index(self) -> Optional[int]:
        return self.node_instance.input_data.get("iteration_index")

    def for_child(
        self,
        node_instance: NodeInstance,
        node_definition: BaseNodeDefinition,
        logger: Union[logging.Logger, logging.LoggerAdapter] = None
    ) -> "ExecutionContext":
        """派生子节点上下文"""
        return ExecutionContext(
            workflow_instance=self.workflow_instance,
            node_instance=node_instance,
            node_definition=node_definition,
            graph=self.graph,
            logger=logger or self.logger,
            workflow_definition=self.workflow_definition,
            inputs=self.inputs,
            config=dict(getattr(node_definition, "config", {}) or {}),
            node_outputs=self.node_outputs,
            deadline=self.deadline,
            cancellation_check=self.cancellation_check
        )

    async def check_cancelled(self) -> Optional[FailureReason]:
        """协作式取消检查，返回 None 表示可以继续"""
        if self.cancellation_check is None:
            return None
        return await self.cancellation_check()

    async def raise_if_cancelled(self):
        """供长时间运行的执行器在安全点调用，需要中断时抛出异常"""
        reason = await self.check_cancelled()
        if reason is None:
            return
        node_id = self.node_instance.node_id
        if reason == FailureReason.DEADLINE_EXCEEDED:
            raise WorkflowTimeoutError(f"Workflow deadline exceeded during node {node_id}")
        raise WorkflowCancelledError(f"Node {node_id} interrupted: {reason.value}", reason)
