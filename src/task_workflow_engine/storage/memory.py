"""
内存仓库实现（用于测试和命令行试运行）

每个方法内部没有 await，在单个事件循环中天然原子。读写时复制记录，
调用方修改返回对象不会影响已存储的数据。
"""
import copy
import itertools
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..models.definition import DefinitionStatus, WorkflowDefinition
from ..models.instance import (
    ExecutionLock, ExecutionLog, LockType, NodeInstance, NodeStatus,
    WorkflowInstance, WorkflowStatus, utcnow
)
from .repository import (
    ExecutionLockRepository, ExecutionLogRepository, NodeInstanceRepository,
    WorkflowDefinitionRepository, WorkflowInstanceRepository
)


class InMemoryWorkflowDefinitionRepository(WorkflowDefinitionRepository):
    """内存工作流定义仓库"""

    def __init__(self):
        self._definitions: Dict[int, WorkflowDefinition] = {}
        self._ids = itertools.count(1)

    async def find_by_id(self, definition_id: int) -> Optional[WorkflowDefinition]:
        return copy.deepcopy(self._definitions.get(definition_id))

    async def find_active_by_name(self, name: str) -> Optional[WorkflowDefinition]:
        for definition in self._definitions.values():
            if definition.name == name and definition.status == DefinitionStatus.ACTIVE:
                return copy.deepcopy(definition)
        return None

    async def find_by_name_and_version(self, name: str, version: str) -> Optional[WorkflowDefinition]:
        for definition in self._definitions.values():
            if definition.name == name and definition.version == version:
                return copy.deepcopy(definition)
        return None

    async def find_by_name(self, name: str) -> List[WorkflowDefinition]:
        return [
            copy.deepcopy(d) for d in self._definitions.values() if d.name == name
        ]

    async def create(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        for existing in self._definitions.values():
            if existing.name == definition.name and existing.version == definition.version:
                raise ValueError(
                    f"Workflow definition {definition.name}@{definition.version} already exists"
                )
        stored = copy.deepcopy(definition)
        stored.id = next(self._ids)
        self._definitions[stored.id] = stored
        return copy.deepcopy(stored)

    async def update(self, definition: WorkflowDefinition) -> bool:
        if definition.id not in self._definitions:
            return False
        stored = copy.deepcopy(definition)
        stored.updated_at = utcnow()
        self._definitions[definition.id] = stored
        return True

    async def update_status(self, definition_id: int, status: DefinitionStatus) -> bool:
        definition = self._definitions.get(definition_id)
        if definition is None:
            return False
        definition.status = status
        definition.updated_at = utcnow()
        return True

    async def delete(self, definition_id: int) -> bool:
        return self._definitions.pop(definition_id, None) is not None


class InMemoryWorkflowInstanceRepository(WorkflowInstanceRepository):
    """内存工作流实例仓库"""

    def __init__(self):
        self._instances: Dict[int, WorkflowInstance] = {}
        self._ids = itertools.count(1)

    def _select(self, predicate) -> List[WorkflowInstance]:
        return [
            copy.deepcopy(i) for i in sorted(self._instances.values(), key=lambda i: i.id)
            if predicate(i)
        ]

    async def find_by_id_nullable(self, instance_id: int) -> Optional[WorkflowInstance]:
        return copy.deepcopy(self._instances.get(instance_id))

    async def find_by_external_id(self, external_id: str) -> Optional[WorkflowInstance]:
        matches = self._select(lambda i: i.external_id == external_id)
        return matches[0] if matches else None

    async def find_by_business_key(self, business_key: str) -> List[WorkflowInstance]:
        return self._select(lambda i: i.business_key == business_key)

    async def find_by_mutex_key(
        self,
        mutex_key: str,
        statuses: List[WorkflowStatus] = None
    ) -> List[WorkflowInstance]:
        return self._select(
            lambda i: i.mutex_key == mutex_key and (statuses is None or i.status in statuses)
        )

    async def find_by_status(
        self,
        statuses: List[WorkflowStatus],
        limit: int = 100
    ) -> List[WorkflowInstance]:
        return self._select(lambda i: i.status in statuses)[:limit]

    async def find_interrupted_instances(
        self,
        heartbeat_timeout: datetime,
        definition_id: int = None,
        business_key: str = None,
        limit: int = None
    ) -> List[WorkflowInstance]:
        def interrupted(instance: WorkflowInstance) -> bool:
            if definition_id is not None and instance.workflow_definition_id != definition_id:
                return False
            if business_key is not None and instance.business_key != business_key:
                return False
            if instance.status == WorkflowStatus.PAUSED:
                return True
            if instance.status == WorkflowStatus.RUNNING:
                last_seen = instance.last_heartbeat or instance.updated_at
                return last_seen < heartbeat_timeout
            return False

        matches = sorted(self._select(interrupted), key=lambda i: i.updated_at)
        return matches[:limit] if limit else matches

    async def check_instance_lock(
        self,
        instance_type: str,
        exclude_statuses: List[WorkflowStatus] = None
    ) -> List[WorkflowInstance]:
        excluded = exclude_statuses or []
        return self._select(
            lambda i: i.instance_type == instance_type
            and not i.status.is_terminal
            and i.status not in excluded
        )

    async def check_business_instance_lock(self, business_key: str) -> List[WorkflowInstance]:
        return self._select(lambda i: i.business_key == business_key)

    async def create(self, instance: WorkflowInstance) -> WorkflowInstance:
        if instance.external_id is not None:
            for existing in self._instances.values():
                if existing.external_id == instance.external_id:
                    raise ValueError(f"Duplicate external id: {instance.external_id}")
        stored = copy.deepcopy(instance)
        stored.id = next(self._ids)
        stored.created_at = stored.updated_at = utcnow()
        self._instances[stored.id] = stored
        return copy.deepcopy(stored)

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
        instance = self._instances.get(instance_id)
        if instance is None:
            return False
        if expected_statuses is not None and instance.status not in expected_statuses:
            return False

        now = utcnow()
        instance.status = status
        instance.updated_at = now
        if status == WorkflowStatus.RUNNING and instance.started_at is None:
            instance.started_at = now
        if status == WorkflowStatus.PAUSED:
            instance.interrupted_at = now
        if status.is_terminal:
            instance.completed_at = now
        if error_message is not None:
            instance.error_message = error_message
        if error_details is not None:
            instance.error_details = error_details
        if error_node_id is not None:
            instance.error_node_id = error_node_id
        if output_data is not None:
            instance.output_data = copy.deepcopy(output_data)
        return True

    async def update_current_node(
        self,
        instance_id: int,
        node_id: Optional[str],
        checkpoint_data: Dict[str, Any] = None,
        status: WorkflowStatus = None
    ) -> bool:
        instance = self._instances.get(instance_id)
        if instance is None:
            return False
        instance.current_node_id = node_id
        if checkpoint_data is not None:
            instance.checkpoint_data = copy.deepcopy(checkpoint_data)
        if status is not None:
            instance.status = status
        instance.updated_at = utcnow()
        return True

    async def update_heartbeat(self, instance_id: int, engine_id: str) -> bool:
        instance = self._instances.get(instance_id)
        if instance is None:
            return False
        instance.last_heartbeat = instance.updated_at = utcnow()
        instance.assigned_engine_id = engine_id
        return True

    async def batch_update_status(
        self,
        instance_ids: List[int],
        status: WorkflowStatus,
        expected_statuses: List[WorkflowStatus] = None,
        heartbeat_before: datetime = None
    ) -> int:
        count = 0
        for instance_id in instance_ids:
            current = self._instances.get(instance_id)
            if current is None:
                continue
            if heartbeat_before is not None:
                last_seen = current.last_heartbeat or current.updated_at
                if last_seen >= heartbeat_before:
                    continue
            if await self.update_status(instance_id, status, expected_statuses=expected_statuses):
                count += 1
        return count


class InMemoryNodeInstanceRepository(NodeInstanceRepository):
    """内存节点实例仓库"""

    def __init__(self):
        self._nodes: Dict[int, NodeInstance] = {}
        self._ids = itertools.count(1)

    def _find(self, workflow_instance_id: int, node_id: str) -> Optional[NodeInstance]:
        for node in self._nodes.values():
            if node.workflow_instance_id == workflow_instance_id and node.node_id == node_id:
                return node
        return None

    def _insert(self, node: NodeInstance) -> NodeInstance:
        if self._find(node.workflow_instance_id, node.node_id) is not None:
            raise ValueError(
                f"Node instance {node.node_id} already exists in workflow {node.workflow_instance_id}"
            )
        stored = copy.deepcopy(node)
        stored.id = next(self._ids)
        stored.created_at = stored.updated_at = utcnow()
        self._nodes[stored.id] = stored
        return stored

    def _children(self, parent_node_id: int) -> List[NodeInstance]:
        children = [n for n in self._nodes.values() if n.parent_node_id == parent_node_id]
        return sorted(children, key=lambda n: (n.child_index is None, n.child_index, n.id))

    async def find_by_id(self, node_instance_id: int) -> Optional[NodeInstance]:
        return copy.deepcopy(self._nodes.get(node_instance_id))

    async def find_by_workflow_and_node_id(
        self,
        workflow_instance_id: int,
        node_id: str
    ) -> Optional[NodeInstance]:
        return copy.deepcopy(self._find(workflow_instance_id, node_id))

    async def find_by_workflow_instance(self, workflow_instance_id: int) -> List[NodeInstance]:
        nodes = [n for n in self._nodes.values() if n.workflow_instance_id == workflow_instance_id]
        return [copy.deepcopy(n) for n in sorted(nodes, key=lambda n: n.id)]

    async def find_child_nodes(self, parent_node_id: int) -> List[NodeInstance]:
        return [copy.deepcopy(n) for n in self._children(parent_node_id)]

    async def find_pending_child_nodes(self, parent_node_id: int) -> List[NodeInstance]:
        return [
            copy.deepcopy(n) for n in self._children(parent_node_id)
            if not n.status.is_terminal
        ]

    async def create(self, node: NodeInstance) -> NodeInstance:
        return copy.deepcopy(self._insert(node))

    async def create_if_absent(self, node: NodeInstance) -> NodeInstance:
        existing = self._find(node.workflow_instance_id, node.node_id)
        if existing is not None:
            return copy.deepcopy(existing)
        return copy.deepcopy(self._insert(node))

    async def create_many(self, nodes: List[NodeInstance]) -> List[NodeInstance]:
        for node in nodes:
            if self._find(node.workflow_instance_id, node.node_id) is not None:
                raise ValueError(f"Node instance {node.node_id} already exists")
        return [copy.deepcopy(self._insert(node)) for node in nodes]

    async def create_loop_children(
        self,
        parent_node_id: int,
        children: List[NodeInstance],
        progress_data: Dict[str, Any]
    ) -> List[NodeInstance]:
        parent = self._nodes.get(parent_node_id)
        if parent is None:
            raise ValueError(f"Parent node instance {parent_node_id} not found")
        created = await self.create_many(children)
        parent.progress_data = copy.deepcopy(progress_data)
        parent.updated_at = utcnow()
        return created

    async def update_status(
        self,
        node_instance_id: int,
        status: NodeStatus,
        output_data: Dict[str, Any] = None,
        error_message: str = None,
        error_details: Dict[str, Any] = None,
        retry_count: int = None
    ) -> bool:
        node = self._nodes.get(node_instance_id)
        if node is None:
            return False

        now = utcnow()
        node.status = status
        node.updated_at = now
        if status == NodeStatus.RUNNING:
            node.started_at = now
            node.completed_at = None
            node.error_message = None
            node.error_details = None
        if status.is_terminal:
            node.completed_at = now
            if node.started_at is not None:
                node.duration_ms = int((now - node.started_at).total_seconds() * 1000)
        if output_data is not None:
            node.output_data = copy.deepcopy(output_data)
        if error_message is not None:
            node.error_message = error_message
        if error_details is not None:
            node.error_details = copy.deepcopy(error_details)
        if retry_count is not None:
            node.retry_count = retry_count
        return True

    async def update_loop_progress(self, node_instance_id: int, progress_data: Dict[str, Any]) -> bool:
        node = self._nodes.get(node_instance_id)
        if node is None:
            return False
        node.progress_data = copy.deepcopy(progress_data)
        node.updated_at = utcnow()
        return True


class InMemoryExecutionLockRepository(ExecutionLockRepository):
    """内存执行锁仓库"""

    def __init__(self):
        self._locks: Dict[str, ExecutionLock] = {}

    async def acquire_lock(
        self,
        lock_key: str,
        owner: str,
        expires_at: datetime,
        lock_type: LockType = LockType.WORKFLOW,
        lock_data: Dict[str, Any] = None
    ) -> bool:
        now = utcnow()
        current = self._locks.get(lock_key)
        if current is not None and not current.is_expired(now) and current.owner != owner:
            return False
        self._locks[lock_key] = ExecutionLock(
            lock_key=lock_key,
            owner=owner,
            expires_at=expires_at,
            lock_type=lock_type,
            lock_data=copy.deepcopy(lock_data),
            created_at=current.created_at if current else now,
            updated_at=now
        )
        return True

    async def renew_lock(self, lock_key: str, owner: str, expires_at: datetime) -> bool:
        now = utcnow()
        current = self._locks.get(lock_key)
        if current is None or current.owner != owner or current.is_expired(now):
            return False
        current.expires_at = expires_at
        current.updated_at = now
        return True

    async def release_lock(self, lock_key: str, owner: str) -> bool:
        current = self._locks.get(lock_key)
        if current is None or current.owner != owner:
            return False
        del self._locks[lock_key]
        return True

    async def check_lock(self, lock_key: str) -> Optional[ExecutionLock]:
        current = self._locks.get(lock_key)
        if current is None or current.is_expired():
            return None
        return copy.deepcopy(current)

    async def cleanup_expired_locks(self) -> int:
        now = utcnow()
        expired = [key for key, lock in self._locks.items() if lock.is_expired(now)]
        for key in expired:
            del self._locks[key]
        return len(expired)

    async def force_release_lock(self, lock_key: str) -> bool:
        return self._locks.pop(lock_key, None) is not None

    @staticmethod
    def _owned_by(lock: ExecutionLock, owner: str) -> bool:
        return lock.owner == owner or lock.owner.startswith(f"{owner}:")

    async def get_locks_by_owner(self, owner: str) -> List[ExecutionLock]:
        now = utcnow()
        return [
            copy.deepcopy(lock) for lock in self._locks.values()
            if self._owned_by(lock, owner) and not lock.is_expired(now)
        ]

    async def release_all_locks_by_owner(self, owner: str) -> int:
        keys = [key for key, lock in self._locks.items() if self._owned_by(lock, owner)]
        for key in keys:
            del self._locks[key]
        return len(keys)

    async def is_lock_owned_by(self, lock_key: str, owner: str) -> bool:
        current = self._locks.get(lock_key)
        return current is not None and current.owner == owner and not current.is_expired()

    async def get_active_locks(self) -> List[ExecutionLock]:
        now = utcnow()
        return [copy.deepcopy(lock) for lock in self._locks.values() if not lock.is_expired(now)]


class InMemoryExecutionLogRepository(ExecutionLogRepository):
    """内存执行日志仓库"""

    def __init__(self):
        self._logs: List[ExecutionLog] = []
        self._ids = itertools.count(1)

    async def append(self, log: ExecutionLog) -> None:
        stored = copy.deepcopy(log)
        stored.id = next(self._ids)
        self._logs.append(stored)

    async def find_by_instance(self, workflow_instance_id: int, limit: int = 100) -> List[ExecutionLog]:
        logs = [l for l in self._logs if l.workflow_instance_id == workflow_instance_id]
        return [copy.deepcopy(l) for l in logs[:limit]]
