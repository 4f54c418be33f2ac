"""
SQLAlchemy 仓库实现
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from ..models.definition import DefinitionStatus, WorkflowDefinition
from ..models.instance import (
    ExecutionLock, ExecutionLog, LockType, NodeInstance, NodeStatus, NodeType,
    WorkflowInstance, WorkflowStatus, utcnow
)
from .repository import (
    ExecutionLockRepository, ExecutionLogRepository, NodeInstanceRepository,
    WorkflowDefinitionRepository, WorkflowInstanceRepository
)
from .sqlalchemy_models import (
    Base,
    ExecutionLockRow,
    ExecutionLogRow,
    NodeInstanceRow,
    WorkflowDefinitionRow,
    WorkflowInstanceRow
)

logger = logging.getLogger(__name__)


class DatabaseManager:
    """数据库管理器"""

    def __init__(self, database_url: str, echo: bool = False, create_tables: bool = True):
        self.database_url = database_url
        self.echo = echo
        self.create_tables = create_tables
        self.engine: Optional[AsyncEngine] = None
        self.async_session_maker = None

    def _engine_options(self) -> Dict[str, Any]:
        if self.database_url.startswith("sqlite"):
            if ":memory:" in self.database_url:
                # 内存库必须共享同一个连接
                return {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
            return {}
        return {"pool_size": 20, "max_overflow": 10, "pool_pre_ping": True}

    async def initialize(self):
        """初始化数据库连接"""
        self.engine = create_async_engine(
            self.database_url,
            echo=self.echo,
            **self._engine_options()
        )

        self.async_session_maker = sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

        if self.create_tables:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        logger.info("Database initialized")

    async def close(self):
        """关闭数据库连接"""
        if self.engine:
            await self.engine.dispose()

    @asynccontextmanager
    async def get_session(self):
        """获取数据库会话，正常退出时提交，异常时回滚"""
        async with self.async_session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()


class SQLAlchemyWorkflowDefinitionRepository(WorkflowDefinitionRepository):
    """SQLAlchemy 工作流定义仓库"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def find_by_id(self, definition_id: int) -> Optional[WorkflowDefinition]:
        async with self.db.get_session() as session:
            row = await session.get(WorkflowDefinitionRow, definition_id)
            return self._row_to_definition(row) if row else None

    async def find_active_by_name(self, name: str) -> Optional[WorkflowDefinition]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(WorkflowDefinitionRow).where(
                    and_(
                        WorkflowDefinitionRow.name == name,
                        WorkflowDefinitionRow.status == DefinitionStatus.ACTIVE.value
                    )
                ).order_by(WorkflowDefinitionRow.updated_at.desc())
            )
            row = result.scalars().first()
            return self._row_to_definition(row) if row else None

    async def find_by_name_and_version(self, name: str, version: str) -> Optional[WorkflowDefinition]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(WorkflowDefinitionRow).where(
                    and_(
                        WorkflowDefinitionRow.name == name,
                        WorkflowDefinitionRow.version == version
                    )
                )
            )
            row = result.scalar_one_or_none()
            return self._row_to_definition(row) if row else None

    async def find_by_name(self, name: str) -> List[WorkflowDefinition]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(WorkflowDefinitionRow)
                .where(WorkflowDefinitionRow.name == name)
                .order_by(WorkflowDefinitionRow.id)
            )
            return [self._row_to_definition(row) for row in result.scalars()]

    async def create(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        async with self.db.get_session() as session:
            row = WorkflowDefinitionRow(
                name=definition.name,
                version=definition.version,
                definition=definition.definition,
                description=definition.description,
                category=definition.category,
                tags=list(definition.tags),
                status=definition.status.value,
                timeout_seconds=definition.timeout_seconds,
                max_retries=definition.max_retries,
                retry_delay_seconds=definition.retry_delay_seconds,
                created_by=definition.created_by
            )
            session.add(row)
            await session.flush()
            return self._row_to_definition(row)

    async def update(self, definition: WorkflowDefinition) -> bool:
        async with self.db.get_session() as session:
            result = await session.execute(
                update(WorkflowDefinitionRow)
                .where(WorkflowDefinitionRow.id == definition.id)
                .values(
                    definition=definition.definition,
                    description=definition.description,
                    category=definition.category,
                    tags=list(definition.tags),
                    status=definition.status.value,
                    timeout_seconds=definition.timeout_seconds,
                    max_retries=definition.max_retries,
                    retry_delay_seconds=definition.retry_delay_seconds,
                    updated_at=utcnow()
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    async def update_status(self, definition_id: int, status: DefinitionStatus) -> bool:
        async with self.db.get_session() as session:
            result = await session.execute(
                update(WorkflowDefinitionRow)
                .where(WorkflowDefinitionRow.id == definition_id)
                .values(status=status.value, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    async def delete(self, definition_id: int) -> bool:
        async with self.db.get_session() as session:
            result = await session.execute(
                delete(WorkflowDefinitionRow).where(WorkflowDefinitionRow.id == definition_id)
            )
            return result.rowcount > 0

    def _row_to_definition(self, row: WorkflowDefinitionRow) -> WorkflowDefinition:
        return WorkflowDefinition(
            id=row.id,
            name=row.name,
            version=row.version,
            definition=row.definition or {},
            description=row.description,
            category=row.category,
            tags=list(row.tags or []),
            status=DefinitionStatus(row.status),
            timeout_seconds=row.timeout_seconds,
            max_retries=row.max_retries or 0,
            retry_delay_seconds=row.retry_delay_seconds or 0.0,
            created_by=row.created_by,
            created_at=row.created_at,
            updated_at=row.updated_at
        )


class SQLAlchemyWorkflowInstanceRepository(WorkflowInstanceRepository):
    """SQLAlchemy 工作流实例仓库"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def _select_many(self, *conditions, limit: int = None) -> List[WorkflowInstance]:
        async with self.db.get_session() as session:
            query = select(WorkflowInstanceRow).where(and_(*conditions)).order_by(WorkflowInstanceRow.id)
            if limit:
                query = query.limit(limit)
            result = await session.execute(query)
            return [self._row_to_instance(row) for row in result.scalars()]

    async def find_by_id_nullable(self, instance_id: int) -> Optional[WorkflowInstance]:
        async with self.db.get_session() as session:
            row = await session.get(WorkflowInstanceRow, instance_id)
            return self._row_to_instance(row) if row else None

    async def find_by_external_id(self, external_id: str) -> Optional[WorkflowInstance]:
        matches = await self._select_many(WorkflowInstanceRow.external_id == external_id)
        return matches[0] if matches else None

    async def find_by_business_key(self, business_key: str) -> List[WorkflowInstance]:
        return await self._select_many(WorkflowInstanceRow.business_key == business_key)

    async def find_by_mutex_key(
        self,
        mutex_key: str,
        statuses: List[WorkflowStatus] = None
    ) -> List[WorkflowInstance]:
        conditions = [WorkflowInstanceRow.mutex_key == mutex_key]
        if statuses is not None:
            conditions.append(WorkflowInstanceRow.status.in_([s.value for s in statuses]))
        return await self._select_many(*conditions)

    async def find_by_status(
        self,
        statuses: List[WorkflowStatus],
        limit: int = 100
    ) -> List[WorkflowInstance]:
        return await self._select_many(
            WorkflowInstanceRow.status.in_([s.value for s in statuses]),
            limit=limit
        )

    async def find_interrupted_instances(
        self,
        heartbeat_timeout: datetime,
        definition_id: int = None,
        business_key: str = None,
        limit: int = None
    ) -> List[WorkflowInstance]:
        last_seen = func.coalesce(WorkflowInstanceRow.last_heartbeat, WorkflowInstanceRow.updated_at)
        conditions = [
            or_(
                WorkflowInstanceRow.status == WorkflowStatus.PAUSED.value,
                and_(
                    WorkflowInstanceRow.status == WorkflowStatus.RUNNING.value,
                    last_seen < heartbeat_timeout
                )
            )
        ]
        if definition_id is not None:
            conditions.append(WorkflowInstanceRow.workflow_definition_id == definition_id)
        if business_key is not None:
            conditions.append(WorkflowInstanceRow.business_key == business_key)

        async with self.db.get_session() as session:
            query = (
                select(WorkflowInstanceRow)
                .where(and_(*conditions))
                .order_by(WorkflowInstanceRow.updated_at)
            )
            if limit:
                query = query.limit(limit)
            result = await session.execute(query)
            return [self._row_to_instance(row) for row in result.scalars()]

    async def check_instance_lock(
        self,
        instance_type: str,
        exclude_statuses: List[WorkflowStatus] = None
    ) -> List[WorkflowInstance]:
        excluded = set(exclude_statuses or [])
        statuses = [s.value for s in WorkflowStatus.non_terminal() if s not in excluded]
        if not statuses:
            return []
        return await self._select_many(
            WorkflowInstanceRow.instance_type == instance_type,
            WorkflowInstanceRow.status.in_(statuses)
        )

    async def check_business_instance_lock(self, business_key: str) -> List[WorkflowInstance]:
        return await self._select_many(WorkflowInstanceRow.business_key == business_key)

    async def create(self, instance: WorkflowInstance) -> WorkflowInstance:
        async with self.db.get_session() as session:
            now = utcnow()
            row = WorkflowInstanceRow(
                workflow_definition_id=instance.workflow_definition_id,
                name=instance.name,
                instance_type=instance.instance_type,
                external_id=instance.external_id,
                business_key=instance.business_key,
                mutex_key=instance.mutex_key,
                status=instance.status.value,
                input_data=instance.input_data,
                output_data=instance.output_data,
                context_data=instance.context_data,
                current_node_id=instance.current_node_id,
                checkpoint_data=instance.checkpoint_data,
                retry_count=instance.retry_count,
                max_retries=instance.max_retries,
                created_at=now,
                updated_at=now
            )
            session.add(row)
            await session.flush()
            return self._row_to_instance(row)

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
        now = utcnow()
        values: Dict[str, Any] = {"status": status.value, "updated_at": now}
        if status == WorkflowStatus.RUNNING:
            values["started_at"] = func.coalesce(WorkflowInstanceRow.started_at, now)
        if status == WorkflowStatus.PAUSED:
            values["interrupted_at"] = now
        if status.is_terminal:
            values["completed_at"] = now
        if error_message is not None:
            values["error_message"] = error_message
        if error_details is not None:
            values["error_details"] = error_details
        if error_node_id is not None:
            values["error_node_id"] = error_node_id
        if output_data is not None:
            values["output_data"] = output_data

        conditions = [WorkflowInstanceRow.id == instance_id]
        if expected_statuses is not None:
            conditions.append(WorkflowInstanceRow.status.in_([s.value for s in expected_statuses]))

        async with self.db.get_session() as session:
            result = await session.execute(
                update(WorkflowInstanceRow)
                .where(and_(*conditions))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    async def update_current_node(
        self,
        instance_id: int,
        node_id: Optional[str],
        checkpoint_data: Dict[str, Any] = None,
        status: WorkflowStatus = None
    ) -> bool:
        values: Dict[str, Any] = {"current_node_id": node_id, "updated_at": utcnow()}
        if checkpoint_data is not None:
            values["checkpoint_data"] = checkpoint_data
        if status is not None:
            values["status"] = status.value

        async with self.db.get_session() as session:
            result = await session.execute(
                update(WorkflowInstanceRow)
                .where(WorkflowInstanceRow.id == instance_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    async def update_heartbeat(self, instance_id: int, engine_id: str) -> bool:
        now = utcnow()
        async with self.db.get_session() as session:
            result = await session.execute(
                update(WorkflowInstanceRow)
                .where(WorkflowInstanceRow.id == instance_id)
                .values(last_heartbeat=now, assigned_engine_id=engine_id, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    async def batch_update_status(
        self,
        instance_ids: List[int],
        status: WorkflowStatus,
        expected_statuses: List[WorkflowStatus] = None,
        heartbeat_before: datetime = None
    ) -> int:
        if not instance_ids:
            return 0
        now = utcnow()
        values: Dict[str, Any] = {"status": status.value, "updated_at": now}
        if status == WorkflowStatus.PAUSED:
            values["interrupted_at"] = now
        if status.is_terminal:
            values["completed_at"] = now

        conditions = [WorkflowInstanceRow.id.in_(instance_ids)]
        if expected_statuses:
            conditions.append(WorkflowInstanceRow.status.in_([s.value for s in expected_statuses]))
        if heartbeat_before is not None:
            last_seen = func.coalesce(WorkflowInstanceRow.last_heartbeat, WorkflowInstanceRow.updated_at)
            conditions.append(last_seen < heartbeat_before)

        async with self.db.get_session() as session:
            result = await session.execute(
                update(WorkflowInstanceRow)
                .where(and_(*conditions))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount

    def _row_to_instance(self, row: WorkflowInstanceRow) -> WorkflowInstance:
        return WorkflowInstance(
            id=row.id,
            workflow_definition_id=row.workflow_definition_id,
            name=row.name,
            instance_type=row.instance_type,
            external_id=row.external_id,
            business_key=row.business_key,
            mutex_key=row.mutex_key,
            status=WorkflowStatus(row.status),
            input_data=row.input_data or {},
            output_data=row.output_data or {},
            context_data=row.context_data or {},
            current_node_id=row.current_node_id,
            checkpoint_data=row.checkpoint_data,
            assigned_engine_id=row.assigned_engine_id,
            last_heartbeat=row.last_heartbeat,
            started_at=row.started_at,
            completed_at=row.completed_at,
            interrupted_at=row.interrupted_at,
            error_message=row.error_message,
            error_details=row.error_details,
            error_node_id=row.error_node_id,
            retry_count=row.retry_count or 0,
            max_retries=row.max_retries or 0,
            created_at=row.created_at,
            updated_at=row.updated_at
        )


class SQLAlchemyNodeInstanceRepository(NodeInstanceRepository):
    """SQLAlchemy 节点实例仓库"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def find_by_id(self, node_instance_id: int) -> Optional[NodeInstance]:
        async with self.db.get_session() as session:
            row = await session.get(NodeInstanceRow, node_instance_id)
            return self._row_to_node(row) if row else None

    async def find_by_workflow_and_node_id(
        self,
        workflow_instance_id: int,
        node_id: str
    ) -> Optional[NodeInstance]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(NodeInstanceRow).where(
                    and_(
                        NodeInstanceRow.workflow_instance_id == workflow_instance_id,
                        NodeInstanceRow.node_id == node_id
                    )
                )
            )
            row = result.scalar_one_or_none()
            return self._row_to_node(row) if row else None

    async def find_by_workflow_instance(self, workflow_instance_id: int) -> List[NodeInstance]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(NodeInstanceRow)
                .where(NodeInstanceRow.workflow_instance_id == workflow_instance_id)
                .order_by(NodeInstanceRow.id)
            )
            return [self._row_to_node(row) for row in result.scalars()]

    async def find_child_nodes(self, parent_node_id: int) -> List[NodeInstance]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(NodeInstanceRow)
                .where(NodeInstanceRow.parent_node_id == parent_node_id)
                .order_by(NodeInstanceRow.child_index, NodeInstanceRow.id)
            )
            return [self._row_to_node(row) for row in result.scalars()]

    async def find_pending_child_nodes(self, parent_node_id: int) -> List[NodeInstance]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(NodeInstanceRow)
                .where(
                    and_(
                        NodeInstanceRow.parent_node_id == parent_node_id,
                        NodeInstanceRow.status.in_(
                            [NodeStatus.PENDING.value, NodeStatus.RUNNING.value]
                        )
                    )
                )
                .order_by(NodeInstanceRow.child_index, NodeInstanceRow.id)
            )
            return [self._row_to_node(row) for row in result.scalars()]

    async def create(self, node: NodeInstance) -> NodeInstance:
        async with self.db.get_session() as session:
            row = self._node_to_row(node)
            session.add(row)
            await session.flush()
            return self._row_to_node(row)

    async def create_if_absent(self, node: NodeInstance) -> NodeInstance:
        existing = await self.find_by_workflow_and_node_id(node.workflow_instance_id, node.node_id)
        if existing is not None:
            return existing
        try:
            return await self.create(node)
        except IntegrityError:
            # 并发创建，读取胜出的那一行
            existing = await self.find_by_workflow_and_node_id(
                node.workflow_instance_id, node.node_id
            )
            if existing is None:
                raise
            return existing

    async def create_many(self, nodes: List[NodeInstance]) -> List[NodeInstance]:
        async with self.db.get_session() as session:
            rows = [self._node_to_row(node) for node in nodes]
            session.add_all(rows)
            await session.flush()
            return [self._row_to_node(row) for row in rows]

    async def create_loop_children(
        self,
        parent_node_id: int,
        children: List[NodeInstance],
        progress_data: Dict[str, Any]
    ) -> List[NodeInstance]:
        async with self.db.get_session() as session:
            rows = [self._node_to_row(node) for node in children]
            session.add_all(rows)
            await session.flush()
            result = await session.execute(
                update(NodeInstanceRow)
                .where(NodeInstanceRow.id == parent_node_id)
                .values(progress_data=progress_data, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise ValueError(f"Parent node instance {parent_node_id} not found")
            return [self._row_to_node(row) for row in rows]

    async def update_status(
        self,
        node_instance_id: int,
        status: NodeStatus,
        output_data: Dict[str, Any] = None,
        error_message: str = None,
        error_details: Dict[str, Any] = None,
        retry_count: int = None
    ) -> bool:
        async with self.db.get_session() as session:
            row = await session.get(NodeInstanceRow, node_instance_id)
            if row is None:
                return False

            now = utcnow()
            row.status = status.value
            row.updated_at = now
            if status == NodeStatus.RUNNING:
                row.started_at = now
                row.completed_at = None
                row.error_message = None
                row.error_details = None
            if status.is_terminal:
                row.completed_at = now
                if row.started_at is not None:
                    row.duration_ms = int((now - row.started_at).total_seconds() * 1000)
            if output_data is not None:
                row.output_data = output_data
            if error_message is not None:
                row.error_message = error_message
            if error_details is not None:
                row.error_details = error_details
            if retry_count is not None:
                row.retry_count = retry_count
            return True

    async def update_loop_progress(self, node_instance_id: int, progress_data: Dict[str, Any]) -> bool:
        async with self.db.get_session() as session:
            result = await session.execute(
                update(NodeInstanceRow)
                .where(NodeInstanceRow.id == node_instance_id)
                .values(progress_data=progress_data, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    def _node_to_row(self, node: NodeInstance) -> NodeInstanceRow:
        now = utcnow()
        return NodeInstanceRow(
            workflow_instance_id=node.workflow_instance_id,
            node_id=node.node_id,
            node_name=node.node_name,
            node_type=node.node_type.value,
            executor=node.executor,
            status=node.status.value,
            input_data=node.input_data,
            output_data=node.output_data,
            retry_count=node.retry_count,
            max_retries=node.max_retries,
            timeout_seconds=node.timeout_seconds,
            parent_node_id=node.parent_node_id,
            child_index=node.child_index,
            progress_data=node.progress_data,
            created_at=now,
            updated_at=now
        )

    def _row_to_node(self, row: NodeInstanceRow) -> NodeInstance:
        return NodeInstance(
            id=row.id,
            workflow_instance_id=row.workflow_instance_id,
            node_id=row.node_id,
            node_name=row.node_name,
            node_type=NodeType(row.node_type),
            executor=row.executor,
            status=NodeStatus(row.status),
            input_data=row.input_data or {},
            output_data=row.output_data or {},
            error_message=row.error_message,
            error_details=row.error_details,
            started_at=row.started_at,
            completed_at=row.completed_at,
            duration_ms=row.duration_ms,
            retry_count=row.retry_count or 0,
            max_retries=row.max_retries or 0,
            timeout_seconds=row.timeout_seconds,
            parent_node_id=row.parent_node_id,
            child_index=row.child_index,
            progress_data=row.progress_data,
            created_at=row.created_at,
            updated_at=row.updated_at
        )


class SQLAlchemyExecutionLockRepository(ExecutionLockRepository):
    """SQLAlchemy 执行锁仓库

    获取锁是单条条件 UPDATE（接管过期锁或同一 owner 重入），未命中时依赖主键
    约束 INSERT；主键冲突即表示锁被他人持有。
    """

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def acquire_lock(
        self,
        lock_key: str,
        owner: str,
        expires_at: datetime,
        lock_type: LockType = LockType.WORKFLOW,
        lock_data: Dict[str, Any] = None
    ) -> bool:
        now = utcnow()
        try:
            async with self.db.get_session() as session:
                result = await session.execute(
                    update(ExecutionLockRow)
                    .where(
                        and_(
                            ExecutionLockRow.lock_key == lock_key,
                            or_(
                                ExecutionLockRow.expires_at <= now,
                                ExecutionLockRow.owner == owner
                            )
                        )
                    )
                    .values(
                        owner=owner,
                        expires_at=expires_at,
                        lock_type=lock_type.value,
                        lock_data=lock_data,
                        updated_at=now
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    return True

                session.add(ExecutionLockRow(
                    lock_key=lock_key,
                    owner=owner,
                    expires_at=expires_at,
                    lock_type=lock_type.value,
                    lock_data=lock_data,
                    created_at=now,
                    updated_at=now
                ))
                await session.flush()
                return True
        except IntegrityError:
            return False

    async def renew_lock(self, lock_key: str, owner: str, expires_at: datetime) -> bool:
        now = utcnow()
        async with self.db.get_session() as session:
            result = await session.execute(
                update(ExecutionLockRow)
                .where(
                    and_(
                        ExecutionLockRow.lock_key == lock_key,
                        ExecutionLockRow.owner == owner,
                        ExecutionLockRow.expires_at > now
                    )
                )
                .values(expires_at=expires_at, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def release_lock(self, lock_key: str, owner: str) -> bool:
        async with self.db.get_session() as session:
            result = await session.execute(
                delete(ExecutionLockRow).where(
                    and_(
                        ExecutionLockRow.lock_key == lock_key,
                        ExecutionLockRow.owner == owner
                    )
                )
            )
            return result.rowcount > 0

    async def check_lock(self, lock_key: str) -> Optional[ExecutionLock]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(ExecutionLockRow).where(
                    and_(
                        ExecutionLockRow.lock_key == lock_key,
                        ExecutionLockRow.expires_at > utcnow()
                    )
                )
            )
            row = result.scalar_one_or_none()
            return self._row_to_lock(row) if row is not None else None

    async def cleanup_expired_locks(self) -> int:
        async with self.db.get_session() as session:
            result = await session.execute(
                delete(ExecutionLockRow).where(ExecutionLockRow.expires_at <= utcnow())
            )
            return result.rowcount

    async def force_release_lock(self, lock_key: str) -> bool:
        async with self.db.get_session() as session:
            result = await session.execute(
                delete(ExecutionLockRow).where(ExecutionLockRow.lock_key == lock_key)
            )
            return result.rowcount > 0

    @staticmethod
    def _owner_filter(owner: str):
        return or_(
            ExecutionLockRow.owner == owner,
            ExecutionLockRow.owner.startswith(f"{owner}:", autoescape=True)
        )

    async def get_locks_by_owner(self, owner: str) -> List[ExecutionLock]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(ExecutionLockRow)
                .where(
                    and_(
                        self._owner_filter(owner),
                        ExecutionLockRow.expires_at > utcnow()
                    )
                )
                .order_by(ExecutionLockRow.lock_key)
            )
            return [self._row_to_lock(row) for row in result.scalars().all()]

    async def release_all_locks_by_owner(self, owner: str) -> int:
        async with self.db.get_session() as session:
            result = await session.execute(
                delete(ExecutionLockRow).where(self._owner_filter(owner))
            )
            return result.rowcount

    async def is_lock_owned_by(self, lock_key: str, owner: str) -> bool:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(func.count()).select_from(ExecutionLockRow).where(
                    and_(
                        ExecutionLockRow.lock_key == lock_key,
                        ExecutionLockRow.owner == owner,
                        ExecutionLockRow.expires_at > utcnow()
                    )
                )
            )
            return result.scalar_one() > 0

    async def get_active_locks(self) -> List[ExecutionLock]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(ExecutionLockRow)
                .where(ExecutionLockRow.expires_at > utcnow())
                .order_by(ExecutionLockRow.lock_key)
            )
            return [self._row_to_lock(row) for row in result.scalars().all()]

    def _row_to_lock(self, row: ExecutionLockRow) -> ExecutionLock:
        return ExecutionLock(
            lock_key=row.lock_key,
            owner=row.owner,
            expires_at=row.expires_at,
            lock_type=LockType(row.lock_type),
            lock_data=row.lock_data,
            created_at=row.created_at,
            updated_at=row.updated_at
        )


class SQLAlchemyExecutionLogRepository(ExecutionLogRepository):
    """SQLAlchemy 执行日志仓库"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def append(self, log: ExecutionLog) -> None:
        async with self.db.get_session() as session:
            session.add(ExecutionLogRow(
                workflow_instance_id=log.workflow_instance_id,
                node_instance_id=log.node_instance_id,
                level=log.level,
                event_type=log.event_type,
                message=log.message,
                details=log.details,
                created_at=log.created_at
            ))

    async def find_by_instance(self, workflow_instance_id: int, limit: int = 100) -> List[ExecutionLog]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(ExecutionLogRow)
                .where(ExecutionLogRow.workflow_instance_id == workflow_instance_id)
                .order_by(ExecutionLogRow.id)
                .limit(limit)
            )
            return [
                ExecutionLog(
                    id=row.id,
                    workflow_instance_id=row.workflow_instance_id,
                    node_instance_id=row.node_instance_id,
                    level=row.level,
                    event_type=row.event_type,
                    message=row.message,
                    details=row.details,
                    created_at=row.created_at
                )
                for row in result.scalars()
            ]
