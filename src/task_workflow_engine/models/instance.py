"""
工作流实例、节点实例与执行锁模型
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    """当前 UTC 时间（不带时区，与存储层保持一致）"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class WorkflowStatus(Enum):
    """工作流实例状态"""
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @classmethod
    def terminal(cls) -> List["WorkflowStatus"]:
        return [cls.COMPLETED, cls.FAILED, cls.CANCELLED]

    @classmethod
    def non_terminal(cls) -> List["WorkflowStatus"]:
        return [cls.PENDING, cls.RUNNING, cls.PAUSED]

    @property
    def is_terminal(self) -> bool:
        return self in WorkflowStatus.terminal()


class NodeStatus(Enum):
    """节点实例状态"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (NodeStatus.COMPLETED, NodeStatus.FAILED)


class NodeType(Enum):
    """节点类型"""
    SIMPLE = "simple"
    LOOP = "loop"
    PARALLEL = "parallel"
    SUB_PROCESS = "sub_process"


class LockType(Enum):
    """锁类型"""
    WORKFLOW = "workflow"
    INSTANCE = "instance"
    NODE = "node"
    RESOURCE = "resource"


PROGRESS_VERSION = 1


class LoopProgress(BaseModel):
    """循环节点进度"""
    version: int = PROGRESS_VERSION
    status: Literal["creating", "executing", "completed"] = "creating"
    total_count: int = 0
    completed_count: int = 0
    failed_count: int = 0
    child_status: Dict[str, str] = Field(default_factory=dict)

    @property
    def terminal_count(self) -> int:
        return self.completed_count + self.failed_count


class ParallelProgress(BaseModel):
    """并行节点进度"""
    version: int = PROGRESS_VERSION
    total_count: int = 0
    completed_count: int = 0
    failed_count: int = 0
    child_status: Dict[str, str] = Field(default_factory=dict)

    @property
    def terminal_count(self) -> int:
        return self.completed_count + self.failed_count


class Checkpoint(BaseModel):
    """工作流检查点"""
    version: int = PROGRESS_VERSION
    last_completed_node: Optional[str] = None
    next_node: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    data: Dict[str, Any] = Field(default_factory=dict)


@dataclass
class WorkflowInstance:
    """工作流实例"""
    workflow_definition_id: int
    name: str
    instance_type: str
    id: Optional[int] = None
    external_id: Optional[str] = None
    business_key: Optional[str] = None
    mutex_key: Optional[str] = None
    status: WorkflowStatus = WorkflowStatus.PENDING
    input_data: Dict[str, Any] = field(default_factory=dict)
    output_data: Dict[str, Any] = field(default_factory=dict)
    context_data: Dict[str, Any] = field(default_factory=dict)
    current_node_id: Optional[str] = None
    checkpoint_data: Optional[Dict[str, Any]] = None
    assigned_engine_id: Optional[str] = None
    last_heartbeat: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    interrupted_at: Optional[datetime] = None
    error_message: Optional[str] = None
    error_details: Optional[Dict[str, Any]] = None
    error_node_id: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def checkpoint(self) -> Optional[Checkpoint]:
        """解码检查点数据"""
        if not self.checkpoint_data:
            return None
        return Checkpoint.model_validate(self.checkpoint_data)


@dataclass
class NodeInstance:
    """节点实例"""
    workflow_instance_id: int
    node_id: str
    node_type: NodeType
    id: Optional[int] = None
    node_name: Optional[str] = None
    executor: Optional[str] = None
    status: NodeStatus = NodeStatus.PENDING
    input_data: Dict[str, Any] = field(default_factory=dict)
    output_data: Dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None
    error_details: Optional[Dict[str, Any]] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    retry_count: int = 0
    max_retries: int = 0
    timeout_seconds: Optional[float] = None
    parent_node_id: Optional[int] = None
    child_index: Optional[int] = None
    progress_data: Optional[Dict[str, Any]] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def loop_progress(self) -> Optional[LoopProgress]:
        """读取后立即解码为循环进度"""
        if self.progress_data is None:
            return None
        return LoopProgress.model_validate(self.progress_data)

    def parallel_progress(self) -> Optional[ParallelProgress]:
        if self.progress_data is None:
            return None
        return ParallelProgress.model_validate(self.progress_data)


@dataclass
class ExecutionLock:
    """执行锁（租约）"""
    lock_key: str
    owner: str
    expires_at: datetime
    lock_type: LockType = LockType.WORKFLOW
    lock_data: Optional[Dict[str, Any]] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: datetime = None) -> bool:
        return self.expires_at <= (now or utcnow())


@dataclass
class ExecutionLog:
    """执行日志（只追加）"""
    workflow_instance_id: int
    message: str
    event_type: str
    level: str = "info"
    node_instance_id: Optional[int] = None
    details: Optional[Dict[str, Any]] = None
    id: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)

