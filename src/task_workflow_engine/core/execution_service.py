"""
工作流执行服务

顶层驱动：启动、恢复、停止、暂停工作流，并逐个节点推进执行。

同一实例同一时刻只允许一个引擎驱动，由实例级执行锁（租约）保证。
停止和暂停都是协作式的：执行中的节点不会被打断，驱动循环在下一次
节点切换时发现状态变化后退出。
"""
import asyncio
import logging
import uuid
from contextlib import suppress
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional

from ..config import EngineSettings
from ..exceptions import WorkflowValidationError
from ..models.definition import WorkflowDefinition, WorkflowGraph
from ..models.execution import (
    ExecutionContext, ExecutionResult, FailureReason, ServiceResult, WorkflowOptions
)
from ..models.instance import (
    Checkpoint, ExecutionLog, LockType, NodeInstance, NodeStatus,
    WorkflowInstance, WorkflowStatus, utcnow
)
from ..storage.repository import ExecutionLogRepository
from .definition_service import WorkflowDefinitionService
from .error_handler import RetryPolicy
from .instance_service import START_NODE_ID, WorkflowInstanceService
from .lock_service import ExecutionLockService, workflow_lock_key
from .node_service import INTERRUPTIONS, NodeExecutionService


@dataclass
class _Lease:
    """一次驱动持有的实例锁"""
    key: str
    owner: str
    lost: bool = False


class WorkflowExecutionService:
    """工作流执行服务"""

    def __init__(
        self,
        instance_service: WorkflowInstanceService,
        node_service: NodeExecutionService,
        lock_service: ExecutionLockService,
        definition_service: WorkflowDefinitionService,
        settings: EngineSettings = None,
        log_repository: ExecutionLogRepository = None,
        logger: logging.Logger = None
    ):
        self.instance_service = instance_service
        self.node_service = node_service
        self.lock_service = lock_service
        self.definition_service = definition_service
        self.settings = settings or EngineSettings()
        self.log_repository = log_repository
        self.logger = logger or logging.getLogger(__name__)

        self.node_service.bind_workflow_runner(self)

    # ------------------------------------------------------------------
    # 启动 / 恢复
    # ------------------------------------------------------------------

    async def start_workflow(self, definition_id: int, opts: WorkflowOptions = None) -> ServiceResult:
        """创建（或恢复）实例并执行"""
        created = await self.instance_service.get_or_create_workflow_instance(definition_id, opts)
        if not created.success or created.data is None:
            return created
        return await self.execute_workflow_instance(created.data)

    async def start_workflow_by_name(
        self,
        name: str,
        opts: WorkflowOptions = None,
        version: str = None
    ) -> ServiceResult:
        """按名称启动，未指定版本时使用激活版本"""
        definition = await self.definition_service.resolve_definition(name, version)
        if definition is None:
            return ServiceResult.fail(
                FailureReason.NOT_FOUND,
                f"Workflow definition not found: {name}{'@' + version if version else ''}"
            )
        return await self.start_workflow(definition.id, opts)

    async def resume_workflow(self, instance_id: int) -> ServiceResult:
        """从持久化的当前节点继续执行中断的实例"""
        lock = await self.lock_service.check_lock(workflow_lock_key(instance_id))
        if lock is not None:
            return ServiceResult.fail(
                FailureReason.LOCK_CONTENTION,
                f"Workflow instance {instance_id} is locked by {lock.owner}"
            )

        claimed = await self.instance_service.resume_instance(instance_id)
        if not claimed.success:
            return claimed

        await self._log(instance_id, "workflow_resumed", f"Workflow instance {instance_id} resumed")
        return await self.execute_workflow_instance(claimed.data)

    # ------------------------------------------------------------------
    # 驱动循环
    # ------------------------------------------------------------------

    async def execute_workflow_instance(self, instance: WorkflowInstance) -> ServiceResult:
        """
        执行工作流实例直到结束或被中断

        Returns:
            ServiceResult: 完成时 data 为实例；失败、取消、暂停、锁竞争时 success=False，
            reason 说明原因。
        """
        instance = await self.instance_service.get_instance(instance.id)
        if instance.is_terminal():
            return self._terminal_result(instance)
        if instance.status == WorkflowStatus.PAUSED:
            return ServiceResult.fail(
                FailureReason.PAUSED,
                f"Workflow instance {instance.id} is paused",
                data=instance
            )

        lease = _Lease(
            key=workflow_lock_key(instance.id),
            owner=f"{self.settings.engine_id}:{uuid.uuid4().hex[:8]}"
        )
        acquired = await self.lock_service.acquire(
            lease.key,
            lease.owner,
            ttl_seconds=self.settings.lock_ttl_seconds,
            lock_type=LockType.WORKFLOW,
            lock_data={"engine_id": self.settings.engine_id}
        )
        if not acquired:
            self.logger.info(f"Workflow instance {instance.id} is driven by another engine")
            return ServiceResult.fail(
                FailureReason.LOCK_CONTENTION,
                f"Could not acquire execution lock for workflow instance {instance.id}"
            )

        try:
            claimed = await self.instance_service.update_status(
                instance.id,
                WorkflowStatus.RUNNING,
                expected_statuses=[WorkflowStatus.PENDING, WorkflowStatus.RUNNING]
            )
            if not claimed:
                current = await self.instance_service.get_instance(instance.id)
                if current.is_terminal():
                    return self._terminal_result(current)
                return ServiceResult.fail(
                    FailureReason.PAUSED,
                    f"Workflow instance {instance.id} is {current.status.value}",
                    data=current
                )

            await self.instance_service.update_heartbeat(instance.id)
            if instance.status == WorkflowStatus.PENDING:
                await self._log(instance.id, "workflow_started", f"Workflow instance {instance.id} started")

            heartbeat = asyncio.create_task(self._heartbeat_loop(instance.id, lease))
            try:
                return await self._drive(instance.id, lease)
            finally:
                heartbeat.cancel()
                with suppress(asyncio.CancelledError):
                    await heartbeat
        finally:
            await self.lock_service.release(lease.key, lease.owner)

    async def _drive(self, instance_id: int, lease: _Lease) -> ServiceResult:
        instance = await self.instance_service.get_instance(instance_id)
        definition = await self.definition_service.get_definition(instance.workflow_definition_id)
        try:
            graph = self.definition_service.load_graph(definition)
        except WorkflowValidationError as e:
            await self.instance_service.update_status(
                instance.id,
                WorkflowStatus.FAILED,
                error_message=f"Invalid workflow definition: {e}",
                error_node_id=instance.current_node_id or self._first_node_id(definition),
                expected_statuses=[WorkflowStatus.RUNNING]
            )
            return ServiceResult.fail(FailureReason.VALIDATION, str(e))

        deadline = None
        if definition.timeout_seconds:
            deadline = (instance.started_at or utcnow()) + timedelta(seconds=definition.timeout_seconds)

        node_outputs = {
            node.node_id: node.output_data
            for node in await self.instance_service.get_node_instances(instance.id)
            if node.parent_node_id is None and node.status == NodeStatus.COMPLETED
        }
        check = self._cancellation_check(instance.id, deadline, lease)

        node = await self.instance_service.get_current_node(instance)
        if node is None:
            node = await self.instance_service.get_first_node(instance, graph, definition)

        last_output: Dict[str, Any] = {}
        while node is not None:
            reason = await check()
            if reason is None and not await self.lock_service.renew(
                lease.key, lease.owner, self.settings.lock_ttl_seconds
            ):
                lease.lost = True
                reason = FailureReason.LOCK_CONTENTION
            if reason is not None:
                return await self._interrupted(instance, node, reason, definition)

            checkpoint_data: Dict[str, Any] = {}
            if node.status != NodeStatus.COMPLETED:
                await self.instance_service.update_current_node(instance.id, node.node_id)
                result = await self._execute_top_level_node(
                    instance, node, graph, definition, node_outputs, deadline, check
                )
                if not result.success:
                    if result.reason in INTERRUPTIONS:
                        return await self._interrupted(instance, node, result.reason, definition)
                    return await self._fail(instance, node, result)
                checkpoint_data = result.checkpoint or {}
                node = await self.instance_service.node_repository.find_by_id(node.id)

            node_outputs[node.node_id] = node.output_data
            last_output = node.output_data

            next_node = await self.instance_service.get_next_node(node, graph, definition)
            await self.instance_service.update_current_node(
                instance.id,
                next_node.node_id if next_node is not None else node.node_id,
                Checkpoint(
                    last_completed_node=node.node_id,
                    next_node=next_node.node_id if next_node is not None else None,
                    data=checkpoint_data
                )
            )
            node = next_node

        completed = await self.instance_service.update_status(
            instance.id,
            WorkflowStatus.COMPLETED,
            output_data=last_output,
            expected_statuses=[WorkflowStatus.RUNNING]
        )
        current = await self.instance_service.get_instance(instance.id)
        if not completed:
            # 最后一个节点执行期间被停止或暂停
            return self._terminal_result(current) if current.is_terminal() else ServiceResult.fail(
                FailureReason.PAUSED, f"Workflow instance {instance.id} is {current.status.value}",
                data=current
            )

        self.logger.info(f"Workflow instance {instance.id} completed")
        await self._log(instance.id, "workflow_completed", f"Workflow instance {instance.id} completed")
        return ServiceResult.ok(current)

    async def _execute_top_level_node(
        self,
        instance: WorkflowInstance,
        node: NodeInstance,
        graph: WorkflowGraph,
        definition: WorkflowDefinition,
        node_outputs: Dict[str, Any],
        deadline,
        check
    ) -> ExecutionResult:
        node_definition = graph.get_node(node.node_id)
        context = ExecutionContext(
            workflow_instance=instance,
            node_instance=node,
            node_definition=node_definition,
            graph=graph,
            logger=self.node_service.node_logger(node),
            workflow_definition=definition,
            inputs=instance.input_data,
            config=dict(getattr(node_definition, "config", {}) or {}),
            node_outputs=node_outputs,
            deadline=deadline,
            cancellation_check=check
        )
        return await self.node_service.execute_with_retry(
            node, context, RetryPolicy.resolve(node_definition, definition)
        )

    def _cancellation_check(self, instance_id: int, deadline, lease: _Lease):
        """构造协作式取消检查：停止、暂停、父实例停止、超过截止时间、失去锁"""

        async def check() -> Optional[FailureReason]:
            current = await self.instance_service.find_instance(instance_id)
            if current is None or current.status == WorkflowStatus.CANCELLED:
                return FailureReason.CANCELLED
            if current.status == WorkflowStatus.PAUSED:
                return FailureReason.PAUSED

            parent_id = current.context_data.get("parent_instance_id")
            if parent_id is not None:
                parent = await self.instance_service.find_instance(parent_id)
                if parent is None or parent.status in (WorkflowStatus.CANCELLED, WorkflowStatus.FAILED):
                    return FailureReason.CANCELLED
                if parent.status == WorkflowStatus.PAUSED:
                    return FailureReason.PAUSED

            if deadline is not None and utcnow() > deadline:
                return FailureReason.DEADLINE_EXCEEDED
            if lease.lost:
                return FailureReason.LOCK_CONTENTION
            return None

        return check

    async def _heartbeat_loop(self, instance_id: int, lease: _Lease):
        """后台续租并刷新心跳，续租失败时标记失去锁"""
        interval = self.settings.heartbeat_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                renewed = await self.lock_service.renew(
                    lease.key, lease.owner, self.settings.lock_ttl_seconds
                )
                if not renewed:
                    lease.lost = True
                    return
                await self.instance_service.update_heartbeat(instance_id)
            except Exception as e:
                self.logger.error(f"Heartbeat for workflow instance {instance_id} failed: {e}", exc_info=True)
                lease.lost = True
                return

    async def _interrupted(
        self,
        instance: WorkflowInstance,
        node: NodeInstance,
        reason: FailureReason,
        definition: WorkflowDefinition
    ) -> ServiceResult:
        """驱动循环被中断：按原因更新实例状态后退出"""
        if reason == FailureReason.DEADLINE_EXCEEDED:
            message = (
                f"Workflow instance {instance.id} exceeded timeout of "
                f"{definition.timeout_seconds}s at node {node.node_id}"
            )
            await self.instance_service.update_status(
                instance.id,
                WorkflowStatus.FAILED,
                error_message=message,
                error_details={"timeout_seconds": definition.timeout_seconds},
                error_node_id=node.node_id,
                expected_statuses=[WorkflowStatus.RUNNING]
            )
            self.logger.warning(message)
            await self._log(instance.id, "workflow_timeout", message, level="error")
        elif reason == FailureReason.CANCELLED:
            # 父实例被停止时，子实例自身的状态还需要更新
            await self.instance_service.update_status(
                instance.id,
                WorkflowStatus.CANCELLED,
                error_message="Parent workflow stopped",
                expected_statuses=[WorkflowStatus.PENDING, WorkflowStatus.RUNNING]
            )
            self.logger.info(f"Workflow instance {instance.id} cancelled before node {node.node_id}")
        elif reason == FailureReason.PAUSED:
            await self.instance_service.update_status(
                instance.id,
                WorkflowStatus.PAUSED,
                expected_statuses=[WorkflowStatus.RUNNING]
            )
            self.logger.info(f"Workflow instance {instance.id} paused at node {node.node_id}")
        else:
            self.logger.warning(
                f"Workflow instance {instance.id} lost its execution lock at node {node.node_id}"
            )

        current = await self.instance_service.find_instance(instance.id)
        return ServiceResult.fail(
            reason,
            f"Workflow instance {instance.id} interrupted at node {node.node_id}: {reason.value}",
            data=current
        )

    async def _fail(
        self,
        instance: WorkflowInstance,
        node: NodeInstance,
        result: ExecutionResult
    ) -> ServiceResult:
        error = result.error or f"Node {node.node_id} failed"
        await self.instance_service.update_status(
            instance.id,
            WorkflowStatus.FAILED,
            error_message=error,
            error_details=result.error_details or {},
            error_node_id=node.node_id,
            expected_statuses=[WorkflowStatus.RUNNING]
        )
        self.logger.error(f"Workflow instance {instance.id} failed at node {node.node_id}: {error}")
        await self._log(
            instance.id, "workflow_failed", error, level="error",
            details={"node_id": node.node_id}
        )
        current = await self.instance_service.find_instance(instance.id)
        return ServiceResult.fail(
            result.reason or FailureReason.EXECUTOR_FAILURE,
            error,
            data=current,
            error_details=result.error_details
        )

    @staticmethod
    def _first_node_id(definition: WorkflowDefinition) -> str:
        """定义无法加载时从原始节点列表取第一个节点"""
        nodes = (definition.definition or {}).get("nodes") or []
        if nodes and isinstance(nodes[0], dict) and nodes[0].get("id"):
            return nodes[0]["id"]
        return START_NODE_ID

    @staticmethod
    def _terminal_result(instance: WorkflowInstance) -> ServiceResult:
        if instance.status == WorkflowStatus.COMPLETED:
            return ServiceResult.ok(instance)
        if instance.status == WorkflowStatus.CANCELLED:
            return ServiceResult.fail(
                FailureReason.CANCELLED,
                instance.error_message or f"Workflow instance {instance.id} was cancelled",
                data=instance
            )
        return ServiceResult.fail(
            FailureReason.EXECUTOR_FAILURE,
            instance.error_message or f"Workflow instance {instance.id} failed",
            data=instance,
            error_details=instance.error_details
        )

    # ------------------------------------------------------------------
    # 停止 / 暂停 / 查询
    # ------------------------------------------------------------------

    async def stop_workflow(self, instance_id: int, reason: str = None) -> ServiceResult:
        """停止实例：标记为 cancelled 并释放实例锁"""
        instance = await self.instance_service.find_instance(instance_id)
        if instance is None:
            return ServiceResult.fail(
                FailureReason.NOT_FOUND, f"Workflow instance not found: {instance_id}"
            )

        stopped = await self.instance_service.update_status(
            instance_id,
            WorkflowStatus.CANCELLED,
            error_message=reason or "Stopped by user",
            expected_statuses=WorkflowStatus.non_terminal()
        )
        if not stopped:
            current = await self.instance_service.get_instance(instance_id)
            return ServiceResult.fail(
                FailureReason.VALIDATION,
                f"Workflow instance {instance_id} is already {current.status.value}",
                data=current
            )

        await self.lock_service.force_release_lock(workflow_lock_key(instance_id))
        self.logger.info(f"Workflow instance {instance_id} stopped: {reason or 'no reason given'}")
        await self._log(
            instance_id, "workflow_cancelled", reason or "Stopped by user", level="warning"
        )
        return ServiceResult.ok(await self.instance_service.get_instance(instance_id))

    async def pause_workflow(self, instance_id: int) -> ServiceResult:
        """暂停实例，驱动它的引擎在下一次节点切换时退出"""
        instance = await self.instance_service.find_instance(instance_id)
        if instance is None:
            return ServiceResult.fail(
                FailureReason.NOT_FOUND, f"Workflow instance not found: {instance_id}"
            )

        paused = await self.instance_service.update_status(
            instance_id,
            WorkflowStatus.PAUSED,
            expected_statuses=[WorkflowStatus.PENDING, WorkflowStatus.RUNNING]
        )
        if not paused:
            current = await self.instance_service.get_instance(instance_id)
            return ServiceResult.fail(
                FailureReason.VALIDATION,
                f"Workflow instance {instance_id} is {current.status.value} and cannot be paused",
                data=current
            )

        self.logger.info(f"Workflow instance {instance_id} paused")
        await self._log(instance_id, "workflow_paused", f"Workflow instance {instance_id} paused")
        return ServiceResult.ok(await self.instance_service.get_instance(instance_id))

    async def get_workflow_status(self, instance_id: int) -> Dict[str, Any]:
        """获取实例及其节点的执行状态"""
        instance = await self.instance_service.get_instance(instance_id)
        nodes = await self.instance_service.get_node_instances(instance_id)

        def timestamp(value):
            return value.isoformat() if value else None

        return {
            "instance_id": instance.id,
            "workflow_definition_id": instance.workflow_definition_id,
            "name": instance.name,
            "status": instance.status.value,
            "current_node_id": instance.current_node_id,
            "checkpoint": instance.checkpoint_data,
            "started_at": timestamp(instance.started_at),
            "completed_at": timestamp(instance.completed_at),
            "last_heartbeat": timestamp(instance.last_heartbeat),
            "assigned_engine_id": instance.assigned_engine_id,
            "error_message": instance.error_message,
            "error_node_id": instance.error_node_id,
            "output": instance.output_data,
            "nodes": [
                {
                    "node_id": node.node_id,
                    "node_type": node.node_type.value,
                    "status": node.status.value,
                    "parent_node_id": node.parent_node_id,
                    "retry_count": node.retry_count,
                    "duration_ms": node.duration_ms,
                    "progress": node.progress_data,
                    "error_message": node.error_message,
                }
                for node in nodes
            ]
        }

    async def _log(
        self,
        instance_id: int,
        event_type: str,
        message: str,
        level: str = "info",
        details: Dict[str, Any] = None
    ):
        if self.log_repository is None:
            return
        await self.log_repository.append(ExecutionLog(
            workflow_instance_id=instance_id,
            event_type=event_type,
            message=message,
            level=level,
            details=details
        ))
