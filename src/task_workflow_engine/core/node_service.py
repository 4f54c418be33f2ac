"""
节点执行服务

按节点类型分发执行：simple / loop / parallel / sub_process。
执行器抛出的异常在这里被捕获，节点标记为 failed 并返回失败结果；
是否重试由调用方根据重试策略决定。存储异常不做处理，原样向上抛出。
"""
import asyncio
import dataclasses
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from ..models.definition import (
    BaseNodeDefinition, LoopNodeDefinition, ParallelNodeDefinition,
    SubProcessNodeDefinition
)
from ..models.execution import (
    ExecutionContext, ExecutionResult, FailureReason, WorkflowOptions
)
from ..models.instance import (
    ExecutionLog, LoopProgress, NodeInstance, NodeStatus, NodeType,
    ParallelProgress, WorkflowStatus
)
from ..exceptions import (
    ExecutorNotFoundError, WorkflowCancelledError, WorkflowExecutionError, WorkflowTimeoutError
)
from ..storage.repository import ExecutionLogRepository, NodeInstanceRepository
from .concurrency import ConcurrencyLimiter
from .definition_service import WorkflowDefinitionService
from .error_handler import RetryHandler, RetryPolicy, error_details
from .executors import ExecutorRegistry, to_execution_result
from .instance_service import WorkflowInstanceService
from .templates import resolve_template

# 出现这些原因时应停止继续调度子节点，并把原因向上传递
INTERRUPTIONS = (
    FailureReason.CANCELLED,
    FailureReason.PAUSED,
    FailureReason.DEADLINE_EXCEEDED,
    FailureReason.LOCK_CONTENTION,
)


class NodeLoggerAdapter(logging.LoggerAdapter):
    """在日志前加上实例和节点标识"""

    def process(self, msg, kwargs):
        prefix = f"[instance={self.extra.get('workflow_instance_id')}"
        if self.extra.get("node_id"):
            prefix += f" node={self.extra['node_id']}"
        return f"{prefix}] {msg}", kwargs


def loop_child_node_id(parent_node_id: str, index: int) -> str:
    return f"{parent_node_id}_child_{index}"


def branch_node_id(parent_node_id: str, branch_id: str) -> str:
    return f"{parent_node_id}.{branch_id}"


class NodeExecutionService:
    """节点执行服务"""

    def __init__(
        self,
        node_repository: NodeInstanceRepository,
        instance_service: WorkflowInstanceService,
        definition_service: WorkflowDefinitionService,
        executor_registry: ExecutorRegistry,
        limiter: ConcurrencyLimiter = None,
        retry_handler: RetryHandler = None,
        log_repository: ExecutionLogRepository = None,
        logger: logging.Logger = None
    ):
        self.node_repository = node_repository
        self.instance_service = instance_service
        self.definition_service = definition_service
        self.executor_registry = executor_registry
        self.limiter = limiter or ConcurrencyLimiter()
        self.retry_handler = retry_handler or RetryHandler()
        self.log_repository = log_repository
        self.logger = logger or logging.getLogger(__name__)
        self._workflow_runner = None

        self._handlers = {
            NodeType.SIMPLE: self._execute_simple_node,
            NodeType.LOOP: self._execute_loop_node,
            NodeType.PARALLEL: self._execute_parallel_node,
            NodeType.SUB_PROCESS: self._execute_sub_process_node,
        }
        missing = set(NodeType) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for node types: {sorted(t.value for t in missing)}")

    def bind_workflow_runner(self, runner):
        """子流程节点通过它递归执行嵌套的工作流实例"""
        self._workflow_runner = runner

    def node_logger(self, node: NodeInstance) -> NodeLoggerAdapter:
        return NodeLoggerAdapter(
            self.logger,
            {"workflow_instance_id": node.workflow_instance_id, "node_id": node.node_id}
        )

    # ------------------------------------------------------------------
    # 分发
    # ------------------------------------------------------------------

    async def execute_node(self, node: NodeInstance, context: ExecutionContext) -> ExecutionResult:
        """执行单个节点"""
        if node.status == NodeStatus.COMPLETED:
            return ExecutionResult.ok(node.output_data)

        handler = self._handlers[node.node_type]
        started = time.monotonic()
        result = await handler(node, context)
        result.duration_ms = int((time.monotonic() - started) * 1000)
        return result

    async def execute_with_retry(
        self,
        node: NodeInstance,
        context: ExecutionContext,
        policy: RetryPolicy = None
    ) -> ExecutionResult:
        """执行节点，失败时按重试策略重试"""
        policy = policy or RetryPolicy.resolve(context.node_definition, context.workflow_definition)

        async def attempt(current: NodeInstance) -> ExecutionResult:
            return await self.execute_node(
                current, dataclasses.replace(context, node_instance=current)
            )

        return await self.retry_handler.execute(
            node,
            attempt,
            self._prepare_retry,
            policy,
            check_abort=context.check_cancelled
        )

    async def _prepare_retry(self, node: NodeInstance, retry_count: int) -> NodeInstance:
        """重置节点为 pending；循环/并行节点同时重置失败的子节点"""
        await self.node_repository.update_status(node.id, NodeStatus.PENDING, retry_count=retry_count)

        if node.node_type in (NodeType.LOOP, NodeType.PARALLEL):
            for child in await self.node_repository.find_child_nodes(node.id):
                if child.status == NodeStatus.FAILED:
                    await self.node_repository.update_status(child.id, NodeStatus.PENDING)
            if node.node_type == NodeType.LOOP and node.progress_data is not None:
                progress = node.loop_progress()
                if progress.status == "completed":
                    progress.status = "executing"
                    await self.node_repository.update_loop_progress(node.id, progress.model_dump())

        return await self.node_repository.find_by_id(node.id)

    # ------------------------------------------------------------------
    # simple
    # ------------------------------------------------------------------

    async def _execute_simple_node(self, node: NodeInstance, context: ExecutionContext) -> ExecutionResult:
        await self._mark_running(node, context)
        prepared = self._prepare_context(node, context)
        result = await self._invoke_executor(node.executor, prepared)
        return await self._finish(node, prepared, result)

    # ------------------------------------------------------------------
    # loop
    # ------------------------------------------------------------------

    async def _execute_loop_node(self, node: NodeInstance, context: ExecutionContext) -> ExecutionResult:
        loop_def: LoopNodeDefinition = context.node_definition
        progress = node.loop_progress()

        if progress is None or progress.status == "creating":
            # 创建阶段：取数，并在一个事务里创建全部子节点和进度
            await self._mark_running(node, context)
            prepared = self._prepare_context(node, context)
            data_result = await self._invoke_executor(loop_def.executor, prepared)
            if not data_result.success:
                return await self._finish(node, prepared, data_result)

            items = self._extract_items(data_result.data)
            if items is None:
                return await self._finish(node, prepared, ExecutionResult.fail(
                    f"Loop data executor '{loop_def.executor}' must return a list "
                    f"or a mapping with an 'items' list"
                ))

            children = [
                self.instance_service.build_node_instance(
                    node.workflow_instance_id,
                    loop_def.node,
                    context.workflow_definition,
                    node_id=loop_child_node_id(node.node_id, index),
                    parent=node,
                    child_index=index,
                    input_data={
                        **loop_def.node.input_data,
                        "iteration_index": index,
                        "iteration_data": item
                    }
                )
                for index, item in enumerate(items)
            ]
            progress = LoopProgress(
                status="executing",
                total_count=len(children),
                child_status={child.node_id: NodeStatus.PENDING.value for child in children}
            )
            await self.node_repository.create_loop_children(node.id, children, progress.model_dump())
            context.logger.info(f"Loop {node.node_id} created {len(children)} children")
        elif node.status == NodeStatus.PENDING:
            await self._mark_running(node, context)

        return await self._run_children(
            node,
            context,
            child_definition=lambda child: loop_def.node,
            parallel=loop_def.parallel,
            max_concurrency=loop_def.max_concurrency,
            fail_fast=loop_def.error_handling == "stop"
        )

    @staticmethod
    def _extract_items(data: Any) -> Optional[List[Any]]:
        if isinstance(data, list):
            return data
        if isinstance(data, dict) and isinstance(data.get("items"), list):
            return data["items"]
        return None

    # ------------------------------------------------------------------
    # parallel
    # ------------------------------------------------------------------

    async def _execute_parallel_node(self, node: NodeInstance, context: ExecutionContext) -> ExecutionResult:
        parallel_def: ParallelNodeDefinition = context.node_definition
        if node.status == NodeStatus.PENDING:
            await self._mark_running(node, context)

        children = []
        for index, branch in enumerate(parallel_def.branches):
            children.append(await self.instance_service.ensure_node_instance(
                node.workflow_instance_id,
                branch,
                context.workflow_definition,
                node_id=branch_node_id(node.node_id, branch.id),
                parent=node,
                child_index=index
            ))

        if node.progress_data is None:
            progress = ParallelProgress(
                total_count=len(children),
                child_status={child.node_id: child.status.value for child in children}
            )
            await self.node_repository.update_loop_progress(node.id, progress.model_dump())

        return await self._run_children(
            node,
            context,
            child_definition=lambda child: parallel_def.branches[child.child_index],
            parallel=True,
            max_concurrency=parallel_def.max_concurrency,
            fail_fast=parallel_def.fail_fast
        )

    # ------------------------------------------------------------------
    # 子节点调度（loop 与 parallel 共用）
    # ------------------------------------------------------------------

    async def _run_children(
        self,
        parent: NodeInstance,
        context: ExecutionContext,
        child_definition: Callable[[NodeInstance], BaseNodeDefinition],
        parallel: bool,
        max_concurrency: Optional[int],
        fail_fast: bool
    ) -> ExecutionResult:
        pending = await self.node_repository.find_pending_child_nodes(parent.id)
        already_failed = any(
            child.status == NodeStatus.FAILED
            for child in await self.node_repository.find_child_nodes(parent.id)
        )
        interruption: Optional[FailureReason] = None

        if pending and not (fail_fast and already_failed):
            if parallel:
                interruption = await self._run_children_concurrently(
                    parent, pending, context, child_definition, max_concurrency, fail_fast
                )
            else:
                interruption = await self._run_children_sequentially(
                    parent, pending, context, child_definition, fail_fast
                )

        if interruption is not None:
            context.logger.info(f"Node {parent.node_id} interrupted: {interruption.value}")
            return ExecutionResult.fail(
                f"Node {parent.node_id} interrupted: {interruption.value}",
                reason=interruption
            )

        return await self._finalize_parent(parent, context, fail_fast)

    async def _run_children_sequentially(
        self,
        parent: NodeInstance,
        pending: List[NodeInstance],
        context: ExecutionContext,
        child_definition: Callable[[NodeInstance], BaseNodeDefinition],
        fail_fast: bool
    ) -> Optional[FailureReason]:
        for child in pending:
            reason = await context.check_cancelled()
            if reason is not None:
                return reason

            result = await self._execute_child(child, context, child_definition(child))
            await self._record_child_progress(parent)

            if result.reason in INTERRUPTIONS:
                return result.reason
            if not result.success and fail_fast:
                context.logger.info(f"Stopping {parent.node_id} after child {child.node_id} failed")
                break
        return None

    async def _run_children_concurrently(
        self,
        parent: NodeInstance,
        pending: List[NodeInstance],
        context: ExecutionContext,
        child_definition: Callable[[NodeInstance], BaseNodeDefinition],
        max_concurrency: Optional[int],
        fail_fast: bool
    ) -> Optional[FailureReason]:
        semaphore = self.limiter.node_semaphore(max_concurrency)
        progress_lock = asyncio.Lock()
        stop = asyncio.Event()

        async def run_one(child: NodeInstance) -> Optional[FailureReason]:
            async with self.limiter.slot(semaphore):
                # 快速失败或中断后，尚未开始的子节点不再启动
                if stop.is_set():
                    return None
                reason = await context.check_cancelled()
                if reason is not None:
                    stop.set()
                    return reason

                result = await self._execute_child(child, context, child_definition(child))
                async with progress_lock:
                    await self._record_child_progress(parent)

                if result.reason in INTERRUPTIONS:
                    stop.set()
                    return result.reason
                if not result.success and fail_fast:
                    stop.set()
                return None

        outcomes = await asyncio.gather(
            *(run_one(child) for child in pending), return_exceptions=True
        )
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
        for outcome in outcomes:
            if outcome is not None:
                return outcome
        return None

    async def _execute_child(
        self,
        child: NodeInstance,
        context: ExecutionContext,
        definition: BaseNodeDefinition
    ) -> ExecutionResult:
        child_context = context.for_child(child, definition, logger=self.node_logger(child))
        policy = RetryPolicy.resolve(definition, context.workflow_definition)
        return await self.execute_with_retry(child, child_context, policy)

    async def _record_child_progress(self, parent: NodeInstance):
        """根据子节点的持久化状态重新计算父节点进度"""
        children = await self.node_repository.find_child_nodes(parent.id)
        refreshed = await self.node_repository.find_by_id(parent.id)
        counts = self._count_children(children)

        if parent.node_type == NodeType.LOOP:
            progress = refreshed.loop_progress() or LoopProgress(status="executing")
        else:
            progress = refreshed.parallel_progress() or ParallelProgress()
        progress.total_count = len(children)
        progress.completed_count = counts["completed"]
        progress.failed_count = counts["failed"]
        progress.child_status = {child.node_id: child.status.value for child in children}

        await self.node_repository.update_loop_progress(parent.id, progress.model_dump())
        return progress

    @staticmethod
    def _count_children(children: List[NodeInstance]) -> Dict[str, int]:
        return {
            "completed": sum(1 for c in children if c.status == NodeStatus.COMPLETED),
            "failed": sum(1 for c in children if c.status == NodeStatus.FAILED),
            "pending": sum(1 for c in children if not c.status.is_terminal),
        }

    async def _finalize_parent(
        self,
        parent: NodeInstance,
        context: ExecutionContext,
        fail_fast: bool
    ) -> ExecutionResult:
        progress = await self._record_child_progress(parent)
        children = await self.node_repository.find_child_nodes(parent.id)
        counts = self._count_children(children)
        total = len(children)

        if parent.node_type == NodeType.LOOP:
            if counts["pending"] == 0:
                progress.status = "completed"
                await self.node_repository.update_loop_progress(parent.id, progress.model_dump())
            output = {
                "total": total,
                "completed": counts["completed"],
                "failed": counts["failed"],
                "results": [child.output_data for child in children]
            }
            if counts["failed"] and (fail_fast or counts["completed"] == 0):
                error = (
                    f"Loop {parent.node_id}: {counts['failed']} of {total} children failed"
                )
            elif counts["pending"]:
                error = f"Loop {parent.node_id}: {counts['pending']} children did not finish"
            else:
                error = None
        else:
            output = {
                "branches": {child.node_id: child.output_data for child in children},
                "completed": counts["completed"],
                "failed": counts["failed"]
            }
            if counts["failed"]:
                error = f"Parallel {parent.node_id}: {counts['failed']} of {total} branches failed"
            elif counts["pending"]:
                error = f"Parallel {parent.node_id}: {counts['pending']} branches did not finish"
            else:
                error = None

        if error is None:
            result = ExecutionResult.ok(output)
        else:
            failed_children = [c.node_id for c in children if c.status == NodeStatus.FAILED]
            result = ExecutionResult.fail(error, {"failed_children": failed_children, **output})
        return await self._finish(parent, context, result)

    # ------------------------------------------------------------------
    # sub_process
    # ------------------------------------------------------------------

    async def _execute_sub_process_node(self, node: NodeInstance, context: ExecutionContext) -> ExecutionResult:
        sub_def: SubProcessNodeDefinition = context.node_definition
        if self._workflow_runner is None:
            raise WorkflowExecutionError("Sub-process nodes require a bound workflow runner")

        await self._mark_running(node, context)
        prepared = self._prepare_context(node, context)

        # 每次重试使用新的子实例
        external_id = f"node:{node.id}:{node.retry_count}"
        child = await self.instance_service.find_by_external_id(external_id)

        if child is None:
            definition = await self.definition_service.resolve_definition(
                sub_def.workflow_name, sub_def.version
            )
            if definition is None:
                version = f"@{sub_def.version}" if sub_def.version else " (active)"
                return await self._finish(node, prepared, ExecutionResult.fail(
                    f"Sub-process workflow not found: {sub_def.workflow_name}{version}"
                ))

            scope = self._template_scope(node, context)
            inputs = (
                resolve_template(sub_def.input_mapping, scope)
                if sub_def.input_mapping else dict(prepared.input_data)
            )
            created = await self.instance_service.get_or_create_workflow_instance(
                definition.id,
                WorkflowOptions(
                    external_id=external_id,
                    input_data=inputs,
                    context_data={
                        "parent_instance_id": node.workflow_instance_id,
                        "parent_node_id": node.node_id,
                        "parent_node_instance_id": node.id
                    },
                    exclusive=False
                )
            )
            if not created.success:
                return await self._finish(node, prepared, ExecutionResult.fail(
                    f"Could not create sub-process instance: {created.error}",
                    {"reason": created.reason.value if created.reason else None}
                ))
            child = created.data
            context.logger.info(
                f"Started sub-process instance {child.id} ({sub_def.workflow_name})"
            )

        if child.status == WorkflowStatus.PAUSED:
            # 随父实例一起暂停的子实例，恢复父实例时一并恢复
            claimed = await self.instance_service.resume_instance(child.id)
            if claimed.success:
                child = claimed.data

        if not child.is_terminal():
            run = await self._workflow_runner.execute_workflow_instance(child)
            child = await self.instance_service.get_instance(child.id)
            if not child.is_terminal():
                # 子实例被其他引擎持有或被暂停：本次执行放弃，节点保持 running
                reason = run.reason if run.reason in INTERRUPTIONS else FailureReason.LOCK_CONTENTION
                return ExecutionResult.fail(
                    f"Sub-process instance {child.id} did not finish: {run.error}",
                    reason=reason
                )

        if child.status == WorkflowStatus.COMPLETED:
            output = child.output_data or {}
            if sub_def.output_mapping:
                output = {key: output.get(source) for key, source in sub_def.output_mapping.items()}
            return await self._finish(node, prepared, ExecutionResult.ok(output))

        return await self._finish(node, prepared, ExecutionResult.fail(
            f"Sub-process instance {child.id} {child.status.value}: "
            f"{child.error_message or 'no error message'}",
            {
                "sub_instance_id": child.id,
                "sub_error_node_id": child.error_node_id,
                "sub_status": child.status.value
            }
        ))

    # ------------------------------------------------------------------
    # 公共步骤
    # ------------------------------------------------------------------

    def _template_scope(self, node: NodeInstance, context: ExecutionContext) -> Dict[str, Any]:
        instance = context.workflow_instance
        return {
            "inputs": instance.input_data,
            "context": instance.context_data,
            "nodes": context.node_outputs,
            "item": node.input_data.get("iteration_data"),
            "index": node.input_data.get("iteration_index"),
        }

    def _prepare_context(self, node: NodeInstance, context: ExecutionContext) -> ExecutionContext:
        """解析输入模板，得到交给执行器的上下文"""
        scope = self._template_scope(node, context)
        resolved_node = dataclasses.replace(node, input_data=resolve_template(node.input_data, scope))
        config = getattr(context.node_definition, "config", None) or {}
        return dataclasses.replace(
            context,
            node_instance=resolved_node,
            config=resolve_template(config, scope)
        )

    async def _invoke_executor(self, executor_name: str, context: ExecutionContext) -> ExecutionResult:
        """调用执行器，异常和超时都转换为失败结果"""
        node = context.node_instance
        try:
            executor = self.executor_registry.get(executor_name)
        except ExecutorNotFoundError as e:
            return ExecutionResult.fail(str(e), reason=FailureReason.VALIDATION)

        started = time.monotonic()
        try:
            result = to_execution_result(await executor.execute(context))
        except WorkflowTimeoutError as e:
            return ExecutionResult.fail(str(e), reason=FailureReason.DEADLINE_EXCEEDED)
        except WorkflowCancelledError as e:
            return ExecutionResult.fail(str(e), reason=e.reason or FailureReason.CANCELLED)
        except Exception as e:
            context.logger.error(f"Executor {executor_name} raised: {e}", exc_info=True)
            return ExecutionResult.fail(str(e) or type(e).__name__, error_details(e))

        elapsed = time.monotonic() - started
        if node.timeout_seconds is not None and elapsed > node.timeout_seconds:
            return ExecutionResult.fail(
                f"Node {node.node_id} exceeded timeout of {node.timeout_seconds}s "
                f"(took {elapsed:.2f}s)",
                {"timeout_seconds": node.timeout_seconds, "elapsed_seconds": elapsed},
                reason=FailureReason.TIMEOUT
            )
        return result

    async def _mark_running(self, node: NodeInstance, context: ExecutionContext):
        await self.node_repository.update_status(node.id, NodeStatus.RUNNING)
        node.status = NodeStatus.RUNNING
        await self._log(node, "node_started", f"Node {node.node_id} started")

    async def _finish(
        self,
        node: NodeInstance,
        context: ExecutionContext,
        result: ExecutionResult
    ) -> ExecutionResult:
        """把执行结果写回节点"""
        if result.reason in INTERRUPTIONS:
            # 被中断的节点保持 running，恢复后重新执行
            context.logger.info(f"Node {node.node_id} interrupted: {result.reason.value}")
            return result

        if result.success:
            output = self._as_output(result.data)
            await self.node_repository.update_status(node.id, NodeStatus.COMPLETED, output_data=output)
            node.status = NodeStatus.COMPLETED
            node.output_data = output
            context.logger.info(f"Node {node.node_id} completed")
            await self._log(node, "node_completed", f"Node {node.node_id} completed")
            return result

        error = result.error or f"Node {node.node_id} failed"
        result.error = error
        await self.node_repository.update_status(
            node.id,
            NodeStatus.FAILED,
            error_message=error,
            error_details=result.error_details or {}
        )
        node.status = NodeStatus.FAILED
        node.error_message = error
        context.logger.warning(f"Node {node.node_id} failed: {error}")
        await self._log(node, "node_failed", error, level="error", details=result.error_details)
        return result

    @staticmethod
    def _as_output(data: Any) -> Dict[str, Any]:
        if data is None:
            return {}
        if isinstance(data, dict):
            return data
        return {"result": data}

    async def _log(
        self,
        node: NodeInstance,
        event_type: str,
        message: str,
        level: str = "info",
        details: Dict[str, Any] = None
    ):
        if self.log_repository is None:
            return
        await self.log_repository.append(ExecutionLog(
            workflow_instance_id=node.workflow_instance_id,
            node_instance_id=node.id,
            event_type=event_type,
            message=message,
            level=level,
            details=details
        ))
