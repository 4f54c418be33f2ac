"""
工作流引擎

把仓库和各个服务装配在一起，供 CLI、后台进程和嵌入方使用。
"""
import logging
from typing import Optional

from ..config import EngineSettings
from ..storage.memory import (
    InMemoryExecutionLockRepository, InMemoryExecutionLogRepository,
    InMemoryNodeInstanceRepository, InMemoryWorkflowDefinitionRepository,
    InMemoryWorkflowInstanceRepository
)
from ..storage.repository import (
    ExecutionLockRepository, ExecutionLogRepository, NodeInstanceRepository,
    WorkflowDefinitionRepository, WorkflowInstanceRepository
)
from .concurrency import ConcurrencyLimiter
from .definition_service import WorkflowDefinitionService
from .error_handler import RetryHandler
from .execution_service import WorkflowExecutionService
from .executors import ExecutorRegistry, register_builtin_executors
from .instance_service import WorkflowInstanceService
from .lock_service import ExecutionLockService
from .node_service import NodeExecutionService
from .parser import WorkflowParser
from .recovery import RecoveryWorker


logger = logging.getLogger(__name__)


class WorkflowEngine:
    """工作流引擎"""

    def __init__(
        self,
        definition_repository: WorkflowDefinitionRepository,
        instance_repository: WorkflowInstanceRepository,
        node_repository: NodeInstanceRepository,
        lock_repository: ExecutionLockRepository,
        log_repository: ExecutionLogRepository = None,
        executor_registry: ExecutorRegistry = None,
        settings: EngineSettings = None,
        db_manager=None
    ):
        self.settings = settings or EngineSettings()
        self.db_manager = db_manager
        self.executor_registry = executor_registry or register_builtin_executors()

        self.definition_repository = definition_repository
        self.instance_repository = instance_repository
        self.node_repository = node_repository
        self.lock_repository = lock_repository
        self.log_repository = log_repository

        self.parser = WorkflowParser(self.executor_registry)
        self.lock_service = ExecutionLockService(
            lock_repository, default_ttl_seconds=self.settings.lock_ttl_seconds
        )
        self.definition_service = WorkflowDefinitionService(definition_repository, self.parser)
        self.instance_service = WorkflowInstanceService(
            instance_repository,
            node_repository,
            self.definition_service,
            self.lock_service,
            settings=self.settings
        )
        self.limiter = ConcurrencyLimiter(
            engine_limit=self.settings.engine_max_concurrency,
            default_node_limit=self.settings.default_max_concurrency
        )
        self.node_service = NodeExecutionService(
            node_repository,
            self.instance_service,
            self.definition_service,
            self.executor_registry,
            limiter=self.limiter,
            retry_handler=RetryHandler(),
            log_repository=log_repository
        )
        self.execution_service = WorkflowExecutionService(
            self.instance_service,
            self.node_service,
            self.lock_service,
            self.definition_service,
            settings=self.settings,
            log_repository=log_repository
        )
        self.recovery_worker = RecoveryWorker(self.execution_service, self.settings)

    @classmethod
    def in_memory(
        cls,
        executor_registry: ExecutorRegistry = None,
        settings: EngineSettings = None
    ) -> "WorkflowEngine":
        """使用内存仓库，仅在单个进程内有效"""
        return cls(
            InMemoryWorkflowDefinitionRepository(),
            InMemoryWorkflowInstanceRepository(),
            InMemoryNodeInstanceRepository(),
            InMemoryExecutionLockRepository(),
            InMemoryExecutionLogRepository(),
            executor_registry=executor_registry,
            settings=settings
        )

    @classmethod
    async def from_settings(
        cls,
        settings: EngineSettings = None,
        executor_registry: ExecutorRegistry = None,
        create_tables: bool = True
    ) -> "WorkflowEngine":
        """按 DATABASE_URL 连接数据库并装配 SQLAlchemy 仓库"""
        from ..storage.sqlalchemy_repository import (
            DatabaseManager, SQLAlchemyExecutionLockRepository, SQLAlchemyExecutionLogRepository,
            SQLAlchemyNodeInstanceRepository, SQLAlchemyWorkflowDefinitionRepository,
            SQLAlchemyWorkflowInstanceRepository
        )

        settings = settings or EngineSettings.from_env()
        db_manager = DatabaseManager(settings.database_url, create_tables=create_tables)
        await db_manager.initialize()
        logger.info(f"Workflow engine {settings.engine_id} connected to database")

        return cls(
            SQLAlchemyWorkflowDefinitionRepository(db_manager),
            SQLAlchemyWorkflowInstanceRepository(db_manager),
            SQLAlchemyNodeInstanceRepository(db_manager),
            SQLAlchemyExecutionLockRepository(db_manager),
            SQLAlchemyExecutionLogRepository(db_manager),
            executor_registry=executor_registry,
            settings=settings,
            db_manager=db_manager
        )

    def executor(self, name: str):
        """注册执行器的装饰器"""
        return self.executor_registry.executor(name)

    async def close(self):
        """停止巡检并释放本引擎仍持有的锁，其他引擎无需等待租约过期"""
        await self.recovery_worker.stop()
        await self.lock_service.release_all_locks_by_owner(self.settings.engine_id)
        if self.db_manager is not None:
            await self.db_manager.close()
            self.db_manager = None

    async def __aenter__(self) -> "WorkflowEngine":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()
