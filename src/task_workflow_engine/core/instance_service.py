"""
工作流实例服务

负责在任何节点运行之前创建或恢复实例，并执行互斥规则：
实例类型锁（非终态实例）、互斥键（非终态实例）、业务键锁（任意状态）
是三个相互独立的判断。
"""
import inspect
import logging
import uuid
from contextlib import AsyncExitStack, asynccontextmanager
from datetime import timedelta
from typing import Any, Dict, List, Optional

from ..config import EngineSettings
from ..exceptions import InstanceNotFoundError, WorkflowValidationError
from ..models.definition import (
    BaseNodeDefinition, DefinitionStatus, WorkflowDefinition, WorkflowGraph
)
from ..models.execution import FailureReason, ServiceResult, WorkflowOptions
from ..models.instance import (
    Checkpoint, LockType, NodeInstance, NodeStatus, NodeType,
    WorkflowInstance, WorkflowStatus, utcnow
)
from ..storage.repository import NodeInstanceRepository, WorkflowInstanceRepository
from .definition_service import WorkflowDefinitionService
from .error_handler import RetryPolicy, error_details
from .lock_service import ExecutionLockService

# 虚拟起始节点，get_next_node 从它得到第一个节点
START_NODE_ID = "__start__"


class WorkflowInstanceService:
    """工作流实例服务"""

    def __init__(
        self,
        instance_repository: WorkflowInstanceRepository,
        node_repository: NodeInstanceRepository,
        definition_service: WorkflowDefinitionService,
        lock_service: ExecutionLockService,
        settings: EngineSettings = None,
        logger: logging.Logger = None
    ):
        self.instance_repository = instance_repository
        self.node_repository = node_repository
        self.definition_service = definition_service
        self.lock_service = lock_service
        self.settings = settings or EngineSettings()
        self.logger = logger or logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # 创建 / 恢复
    # ------------------------------------------------------------------

    async def get_or_create_workflow_instance(
        self,
        definition_id: int,
        opts: WorkflowOptions = None
    ) -> ServiceResult:
        """
        获取或创建工作流实例

        Returns:
            ServiceResult: data 为实例；恢复模式下没有可恢复实例时 data 为 None。
            冲突时 success=False，conflicting_instance 为冲突的实例。
        """
        opts = opts or WorkflowOptions()

        definition = await self.definition_service.find_definition(definition_id)
        if definition is None:
            return ServiceResult.fail(
                FailureReason.NOT_FOUND, f"Workflow definition not found: {definition_id}"
            )

        if opts.resume:
            return await self._resume_interrupted(definition, opts)

        if definition.status == DefinitionStatus.ARCHIVED:
            return ServiceResult.fail(
                FailureReason.VALIDATION,
                f"Workflow definition {definition.name}@{definition.version} is archived"
            )

        try:
            graph = self.definition_service.load_graph(definition)
        except WorkflowValidationError as e:
            self.logger.error(f"Workflow definition {definition.id} is invalid: {e}")
            return ServiceResult.fail(FailureReason.VALIDATION, str(e))

        existing = await self._find_existing(opts)
        if existing is not None:
            return ServiceResult.ok(existing)

        if graph.input_schema is not None:
            errors = self.definition_service.parser.schema_validator.validate(
                {**graph.inputs, **opts.input_data}, graph.input_schema
            )
            if errors:
                return ServiceResult.fail(
                    FailureReason.VALIDATION,
                    f"Input data does not match input_schema: {'; '.join(errors)}",
                    error_details={"errors": errors}
                )

        instance_type = opts.instance_type or definition.name
        guard_keys = [f"instance-type:{instance_type}"]
        if opts.external_id:
            guard_keys.append(f"external:{opts.external_id}")
        if opts.mutex_key:
            guard_keys.append(f"mutex:{opts.mutex_key}")
        if opts.business_key:
            guard_keys.append(f"business:{opts.business_key}")

        async with self._creation_guard(guard_keys) as acquired:
            if not acquired:
                return ServiceResult.fail(
                    FailureReason.LOCK_CONTENTION,
                    f"Could not obtain creation lock for {instance_type}"
                )
            return await self._check_and_create(definition, graph, instance_type, opts)

    @asynccontextmanager
    async def _creation_guard(self, keys: List[str]):
        """短租约串行化检查与创建，跨进程同样有效"""
        owner = f"{self.settings.engine_id}:{uuid.uuid4().hex[:8]}"
        async with AsyncExitStack() as stack:
            for key in sorted(keys):
                acquired = await stack.enter_async_context(
                    self.lock_service.hold(
                        key,
                        owner,
                        ttl_seconds=self.settings.creation_lock_ttl_seconds,
                        attempts=self.settings.creation_lock_attempts,
                        wait_seconds=self.settings.creation_lock_wait_seconds,
                        lock_type=LockType.INSTANCE
                    )
                )
                if not acquired:
                    yield False
                    return
            yield True

    async def _check_and_create(
        self,
        definition: WorkflowDefinition,
        graph: WorkflowGraph,
        instance_type: str,
        opts: WorkflowOptions
    ) -> ServiceResult:
        # 0. 持锁后再确认一次外部 ID，并发创建者拿到同一个实例
        existing = await self._find_existing(opts)
        if existing is not None:
            return ServiceResult.ok(existing)

        # 1. 实例类型锁
        exclusive = graph.config.exclusive if opts.exclusive is None else opts.exclusive
        if exclusive:
            running = await self.instance_repository.check_instance_lock(
                instance_type, opts.exclude_statuses
            )
            if running:
                return self._conflict(
                    f"Instance lock conflict: {instance_type} has running or interrupted instances",
                    running[0]
                )

        # 2. 互斥键
        if opts.mutex_key:
            holders = await self.instance_repository.find_by_mutex_key(
                opts.mutex_key, WorkflowStatus.non_terminal()
            )
            if holders:
                return self._conflict(
                    f"Mutex key conflict: {opts.mutex_key} is held by instance {holders[0].id}",
                    holders[0]
                )

        # 3. 业务键锁
        if opts.business_key:
            executed = await self.instance_repository.check_business_instance_lock(opts.business_key)
            if executed:
                return self._conflict(
                    f"Business instance lock conflict: {opts.business_key} "
                    f"already has executed instances",
                    executed[0]
                )

        # 4. 调用方检查点
        for name, validator in opts.checkpoint_validators.items():
            try:
                passed = validator(dict(opts.context_data))
                if inspect.isawaitable(passed):
                    passed = await passed
            except Exception as e:
                self.logger.warning(f"Checkpoint {name} raised: {e}")
                return ServiceResult.fail(
                    FailureReason.CHECKPOINT_REJECTED,
                    f"Checkpoint execution failed: {name}",
                    error_details=error_details(e)
                )
            if not passed:
                return ServiceResult.fail(
                    FailureReason.CHECKPOINT_REJECTED,
                    f"Checkpoint validation failed: {name}"
                )

        instance = WorkflowInstance(
            workflow_definition_id=definition.id,
            name=opts.workflow_name or definition.name,
            instance_type=instance_type,
            external_id=opts.external_id,
            business_key=opts.business_key,
            mutex_key=opts.mutex_key,
            status=WorkflowStatus.PENDING,
            input_data={**graph.inputs, **opts.input_data},
            context_data=dict(opts.context_data),
            max_retries=definition.max_retries if opts.max_retries is None else opts.max_retries
        )
        created = await self.instance_repository.create(instance)
        self.logger.info(
            f"Created workflow instance {created.id} ({created.instance_type}) "
            f"from definition {definition.name}@{definition.version}"
        )
        return ServiceResult.ok(created)

    async def _find_existing(self, opts: WorkflowOptions) -> Optional[WorkflowInstance]:
        if not opts.external_id:
            return None
        existing = await self.instance_repository.find_by_external_id(opts.external_id)
        if existing is not None:
            self.logger.info(
                f"Reusing workflow instance {existing.id} for external id {opts.external_id}"
            )
        return existing

    def _conflict(self, message: str, instance: WorkflowInstance) -> ServiceResult:
        self.logger.info(f"{message} (conflicting instance {instance.id})")
        return ServiceResult.fail(
            FailureReason.CONFLICT,
            message,
            conflicting_instance=instance
        )

    async def _resume_interrupted(
        self,
        definition: WorkflowDefinition,
        opts: WorkflowOptions
    ) -> ServiceResult:
        candidates = await self.find_interrupted_instances(
            definition_id=definition.id,
            business_key=opts.business_key,
            limit=1
        )
        if not candidates:
            self.logger.info(f"No interrupted instance to resume for definition {definition.id}")
            return ServiceResult.ok(None)
        return await self._claim_for_resume(candidates[0])

    async def find_interrupted_instances(
        self,
        definition_id: int = None,
        business_key: str = None,
        limit: int = None
    ) -> List[WorkflowInstance]:
        """查找心跳过期的运行中实例和已暂停实例"""
        threshold = utcnow() - timedelta(seconds=self.settings.stale_threshold_seconds)
        return await self.instance_repository.find_interrupted_instances(
            threshold, definition_id=definition_id, business_key=business_key, limit=limit
        )

    def is_interrupted(self, instance: WorkflowInstance) -> bool:
        if instance.status == WorkflowStatus.PAUSED:
            return True
        if instance.status != WorkflowStatus.RUNNING:
            return False
        threshold = utcnow() - timedelta(seconds=self.settings.stale_threshold_seconds)
        last_seen = instance.last_heartbeat or instance.updated_at
        return last_seen < threshold

    async def resume_instance(self, instance_id: int) -> ServiceResult:
        """把指定的中断实例切回 running"""
        instance = await self.instance_repository.find_by_id_nullable(instance_id)
        if instance is None:
            return ServiceResult.fail(
                FailureReason.NOT_FOUND, f"Workflow instance not found: {instance_id}"
            )
        if not self.is_interrupted(instance):
            return ServiceResult.fail(
                FailureReason.NOT_RESUMABLE,
                f"Workflow instance {instance_id} is {instance.status.value} and not interrupted"
            )
        return await self._claim_for_resume(instance)

    async def _claim_for_resume(self, instance: WorkflowInstance) -> ServiceResult:
        claimed = await self.instance_repository.update_status(
            instance.id,
            WorkflowStatus.RUNNING,
            expected_statuses=[WorkflowStatus.RUNNING, WorkflowStatus.PAUSED]
        )
        if not claimed:
            return ServiceResult.fail(
                FailureReason.NOT_RESUMABLE,
                f"Workflow instance {instance.id} changed state before it could be resumed"
            )
        await self.instance_repository.update_heartbeat(instance.id, self.settings.engine_id)
        resumed = await self.instance_repository.find_by_id_nullable(instance.id)
        self.logger.info(
            f"Resuming workflow instance {instance.id} at node {resumed.current_node_id or '<start>'}"
        )
        return ServiceResult.ok(resumed)

    # ------------------------------------------------------------------
    # 节点
    # ------------------------------------------------------------------

    async def get_next_node(
        self,
        node: NodeInstance,
        graph: WorkflowGraph = None,
        definition: WorkflowDefinition = None
    ) -> Optional[NodeInstance]:
        """
        获取下一个节点实例，不存在时按定义创建

        对同一个 (workflow_instance_id, node_id) 重复调用返回同一条记录。
        """
        if graph is None or definition is None:
            instance = await self.get_instance(node.workflow_instance_id)
            definition = await self.definition_service.get_definition(instance.workflow_definition_id)
            graph = self.definition_service.load_graph(definition)

        if node.node_id == START_NODE_ID:
            next_node_id = graph.first_node_id()
        else:
            next_node_id = graph.next_node_id(node.node_id)
        if next_node_id is None:
            return None

        return await self.ensure_node_instance(
            node.workflow_instance_id, graph.get_node(next_node_id), definition
        )

    async def get_first_node(
        self,
        instance: WorkflowInstance,
        graph: WorkflowGraph = None,
        definition: WorkflowDefinition = None
    ) -> Optional[NodeInstance]:
        return await self.get_next_node(self.start_node(instance), graph, definition)

    def start_node(self, instance: WorkflowInstance) -> NodeInstance:
        """虚拟起始节点，不会被持久化"""
        return NodeInstance(
            workflow_instance_id=instance.id,
            node_id=START_NODE_ID,
            node_type=NodeType.SIMPLE,
            status=NodeStatus.COMPLETED
        )

    async def ensure_node_instance(
        self,
        workflow_instance_id: int,
        node_definition: BaseNodeDefinition,
        definition: WorkflowDefinition = None,
        node_id: str = None,
        parent: NodeInstance = None,
        child_index: int = None,
        input_data: Dict[str, Any] = None
    ) -> NodeInstance:
        """按节点定义查找或创建节点实例"""
        node = self.build_node_instance(
            workflow_instance_id, node_definition, definition,
            node_id=node_id, parent=parent, child_index=child_index, input_data=input_data
        )
        return await self.node_repository.create_if_absent(node)

    def build_node_instance(
        self,
        workflow_instance_id: int,
        node_definition: BaseNodeDefinition,
        definition: WorkflowDefinition = None,
        node_id: str = None,
        parent: NodeInstance = None,
        child_index: int = None,
        input_data: Dict[str, Any] = None
    ) -> NodeInstance:
        """由节点定义构造尚未持久化的节点实例"""
        policy = RetryPolicy.resolve(node_definition, definition)
        return NodeInstance(
            workflow_instance_id=workflow_instance_id,
            node_id=node_id or node_definition.id,
            node_name=node_definition.display_name,
            node_type=node_definition.node_type,
            executor=getattr(node_definition, "executor", None),
            status=NodeStatus.PENDING,
            input_data=dict(node_definition.input_data if input_data is None else input_data),
            max_retries=policy.max_retries,
            timeout_seconds=node_definition.timeout_seconds,
            parent_node_id=parent.id if parent is not None else None,
            child_index=child_index
        )

    async def get_current_node(self, instance: WorkflowInstance) -> Optional[NodeInstance]:
        if not instance.current_node_id:
            return None
        return await self.node_repository.find_by_workflow_and_node_id(
            instance.id, instance.current_node_id
        )

    # ------------------------------------------------------------------
    # 状态
    # ------------------------------------------------------------------

    async def get_instance(self, instance_id: int) -> WorkflowInstance:
        instance = await self.instance_repository.find_by_id_nullable(instance_id)
        if instance is None:
            raise InstanceNotFoundError(f"Workflow instance not found: {instance_id}")
        return instance

    async def find_instance(self, instance_id: int) -> Optional[WorkflowInstance]:
        return await self.instance_repository.find_by_id_nullable(instance_id)

    async def update_current_node(
        self,
        instance_id: int,
        node_id: Optional[str],
        checkpoint: Checkpoint = None,
        status: WorkflowStatus = None
    ) -> bool:
        """记录当前节点和检查点"""
        checkpoint_data = checkpoint.model_dump(mode="json") if checkpoint is not None else None
        return await self.instance_repository.update_current_node(
            instance_id, node_id, checkpoint_data, status
        )

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
        return await self.instance_repository.update_status(
            instance_id,
            status,
            error_message=error_message,
            error_details=error_details,
            error_node_id=error_node_id,
            output_data=output_data,
            expected_statuses=expected_statuses
        )

    async def update_heartbeat(self, instance_id: int, engine_id: str = None) -> bool:
        return await self.instance_repository.update_heartbeat(
            instance_id, engine_id or self.settings.engine_id
        )

    async def mark_interrupted(self, instance_ids: List[int]) -> int:
        """
        把心跳过期的 running 实例批量标记为 paused（中断）

        查找与标记之间被其他引擎接管的实例心跳已刷新，不会被改动。
        """
        if not instance_ids:
            return 0
        threshold = utcnow() - timedelta(seconds=self.settings.stale_threshold_seconds)
        count = await self.instance_repository.batch_update_status(
            instance_ids,
            WorkflowStatus.PAUSED,
            expected_statuses=[WorkflowStatus.RUNNING],
            heartbeat_before=threshold
        )
        self.logger.info(f"Marked {count} workflow instances as interrupted")
        return count

    async def find_by_external_id(self, external_id: str) -> Optional[WorkflowInstance]:
        return await self.instance_repository.find_by_external_id(external_id)

    async def get_node_instances(self, instance_id: int) -> List[NodeInstance]:
        return await self.node_repository.find_by_workflow_instance(instance_id)
