"""
存储仓库接口定义

所有方法在存储层是原子的；多行写入（循环子节点 + 进度、实例状态 + 检查点）
由单个方法在一个事务内完成。
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..models.definition import DefinitionStatus, WorkflowDefinition
from ..models.instance import (
    ExecutionLock, ExecutionLog, LockType, NodeInstance, NodeStatus,
    WorkflowInstance, WorkflowStatus
)


class WorkflowDefinitionRepository(ABC):
    """工作流定义仓库接口"""

    @abstractmethod
    async def find_by_id(self, definition_id: int) -> Optional[WorkflowDefinition]:
        """根据ID获取定义"""
        pass

    @abstractmethod
    async def find_active_by_name(self, name: str) -> Optional[WorkflowDefinition]:
        """获取指定名称的激活版本"""
        pass

    @abstractmethod
    async def find_by_name_and_version(self, name: str, version: str) -> Optional[WorkflowDefinition]:
        """根据名称和版本获取定义"""
        pass

    @abstractmethod
    async def find_by_name(self, name: str) -> List[WorkflowDefinition]:
        """列出同名的所有版本"""
        pass

    @abstractmethod
    async def create(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """创建定义"""
        pass

    @abstractmethod
    async def update(self, definition: WorkflowDefinition) -> bool:
        """更新定义"""
        pass

    @abstractmethod
    async def update_status(self, definition_id: int, status: DefinitionStatus) -> bool:
        """更新定义状态"""
        pass

    @abstractmethod
    async def delete(self, definition_id: int) -> bool:
        """删除定义"""
        pass


class WorkflowInstanceRepository(ABC):
    """工作流实例仓库接口"""

    @abstractmethod
    async def find_by_id_nullable(self, instance_id: int) -> Optional[WorkflowInstance]:
        """根据ID获取实例，不存在时返回 None"""
        pass

    @abstractmethod
    async def find_by_external_id(self, external_id: str) -> Optional[WorkflowInstance]:
        """根据外部ID获取实例"""
        pass

    @abstractmethod
    async def find_by_business_key(self, business_key: str) -> List[WorkflowInstance]:
        """根据业务键获取实例"""
        pass

    @abstractmethod
    async def find_by_mutex_key(
        self,
        mutex_key: str,
        statuses: List[WorkflowStatus] = None
    ) -> List[WorkflowInstance]:
        """根据互斥键获取实例"""
        pass

    @abstractmethod
    async def find_by_status(
        self,
        statuses: List[WorkflowStatus],
        limit: int = 100
    ) -> List[WorkflowInstance]:
        """按状态列出实例"""
        pass

    @abstractmethod
    async def find_interrupted_instances(
        self,
        heartbeat_timeout: datetime,
        definition_id: int = None,
        business_key: str = None,
        limit: int = None
    ) -> List[WorkflowInstance]:
        """查找中断的实例：心跳早于 heartbeat_timeout 的运行中实例，或已暂停实例"""
        pass

    @abstractmethod
    async def check_instance_lock(
        self,
        instance_type: str,
        exclude_statuses: List[WorkflowStatus] = None
    ) -> List[WorkflowInstance]:
        """检查实例锁：同类型的非终态实例"""
        pass

    @abstractmethod
    async def check_business_instance_lock(self, business_key: str) -> List[WorkflowInstance]:
        """检查业务实例锁：同业务键的任意状态实例"""
        pass

    @abstractmethod
    async def create(self, instance: WorkflowInstance) -> WorkflowInstance:
        """创建实例"""
        pass

    @abstractmethod
    async def update_status(
        self,
        instance_id: int,
        status: WorkflowStatus,
        error_message: str = None,
        error_details: Dict[str, Any] = None,
        error_node_id: str = None,
        output_data: Dict[str, Any] = None,
        expected_statuses: List[WorkflowStatus] = None
    ) -> bool:
        """更新实例状态

        指定 expected_statuses 时为条件更新，当前状态不在其中则不写入并返回 False。
        """
        pass

    @abstractmethod
    async def update_current_node(
        self,
        instance_id: int,
        node_id: Optional[str],
        checkpoint_data: Dict[str, Any] = None,
        status: WorkflowStatus = None
    ) -> bool:
        """原子更新当前节点、检查点（以及可选的状态）"""
        pass

    @abstractmethod
    async def update_heartbeat(self, instance_id: int, engine_id: str) -> bool:
        """更新心跳与归属引擎"""
        pass

    @abstractmethod
    async def batch_update_status(
        self,
        instance_ids: List[int],
        status: WorkflowStatus,
        expected_statuses: List[WorkflowStatus] = None,
        heartbeat_before: datetime = None
    ) -> int:
        """
        批量更新状态，返回更新行数

        expected_statuses / heartbeat_before 给出时只更新仍满足条件的实例
        （心跳取 last_heartbeat，为空时取 updated_at）。
        """
        pass


class NodeInstanceRepository(ABC):
    """节点实例仓库接口"""

    @abstractmethod
    async def find_by_id(self, node_instance_id: int) -> Optional[NodeInstance]:
        """根据ID获取节点实例"""
        pass

    @abstractmethod
    async def find_by_workflow_and_node_id(
        self,
        workflow_instance_id: int,
        node_id: str
    ) -> Optional[NodeInstance]:
        """获取节点实例，尚未创建时返回 None"""
        pass

    @abstractmethod
    async def find_by_workflow_instance(self, workflow_instance_id: int) -> List[NodeInstance]:
        """列出实例下的全部节点"""
        pass

    @abstractmethod
    async def find_child_nodes(self, parent_node_id: int) -> List[NodeInstance]:
        """按 child_index 顺序列出子节点"""
        pass

    @abstractmethod
    async def find_pending_child_nodes(self, parent_node_id: int) -> List[NodeInstance]:
        """列出未到达终态的子节点"""
        pass

    @abstractmethod
    async def create(self, node: NodeInstance) -> NodeInstance:
        """创建节点实例"""
        pass

    @abstractmethod
    async def create_if_absent(self, node: NodeInstance) -> NodeInstance:
        """按 (workflow_instance_id, node_id) 查找或创建，重复调用返回同一条记录"""
        pass

    @abstractmethod
    async def create_many(self, nodes: List[NodeInstance]) -> List[NodeInstance]:
        """批量创建节点实例"""
        pass

    @abstractmethod
    async def create_loop_children(
        self,
        parent_node_id: int,
        children: List[NodeInstance],
        progress_data: Dict[str, Any]
    ) -> List[NodeInstance]:
        """在同一事务内创建循环子节点并写入父节点进度"""
        pass

    @abstractmethod
    async def update_status(
        self,
        node_instance_id: int,
        status: NodeStatus,
        output_data: Dict[str, Any] = None,
        error_message: str = None,
        error_details: Dict[str, Any] = None,
        retry_count: int = None
    ) -> bool:
        """更新节点状态"""
        pass

    @abstractmethod
    async def update_loop_progress(self, node_instance_id: int, progress_data: Dict[str, Any]) -> bool:
        """更新循环/并行进度"""
        pass


class ExecutionLockRepository(ABC):
    """执行锁仓库接口"""

    @abstractmethod
    async def acquire_lock(
        self,
        lock_key: str,
        owner: str,
        expires_at: datetime,
        lock_type: LockType = LockType.WORKFLOW,
        lock_data: Dict[str, Any] = None
    ) -> bool:
        """获取锁：不存在未过期的他人锁时写入租约"""
        pass

    @abstractmethod
    async def renew_lock(self, lock_key: str, owner: str, expires_at: datetime) -> bool:
        """续期：仅当 owner 仍持有未过期的锁"""
        pass

    @abstractmethod
    async def release_lock(self, lock_key: str, owner: str) -> bool:
        """释放锁：仅当 owner 持有"""
        pass

    @abstractmethod
    async def check_lock(self, lock_key: str) -> Optional[ExecutionLock]:
        """获取未过期的锁"""
        pass

    @abstractmethod
    async def cleanup_expired_locks(self) -> int:
        """清理过期锁，返回清理数量"""
        pass

    @abstractmethod
    async def force_release_lock(self, lock_key: str) -> bool:
        """强制释放锁（运维操作）"""
        pass

    @abstractmethod
    async def get_locks_by_owner(self, owner: str) -> List[ExecutionLock]:
        """
        获取 owner 持有的未过期锁

        owner 同时匹配以 "{owner}:" 开头的持有者，引擎 ID 可以查到它所有驱动的锁。
        """
        pass

    @abstractmethod
    async def release_all_locks_by_owner(self, owner: str) -> int:
        """释放 owner 持有的全部锁（匹配规则同 get_locks_by_owner），返回释放数量"""
        pass

    @abstractmethod
    async def is_lock_owned_by(self, lock_key: str, owner: str) -> bool:
        """锁是否由 owner 持有且未过期"""
        pass

    @abstractmethod
    async def get_active_locks(self) -> List[ExecutionLock]:
        """获取所有未过期的锁"""
        pass


class ExecutionLogRepository(ABC):
    """执行日志仓库接口（只追加）"""

    @abstractmethod
    async def append(self, log: ExecutionLog) -> None:
        """追加日志"""
        pass

    @abstractmethod
    async def find_by_instance(self, workflow_instance_id: int, limit: int = 100) -> List[ExecutionLog]:
        """读取实例日志"""
        pass
