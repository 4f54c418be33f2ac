"""
重试策略与错误详情
"""
import asyncio
import logging
import random
import traceback
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from ..exceptions import NodeExecutionError
from ..models.definition import BaseNodeDefinition, WorkflowDefinition
from ..models.execution import ExecutionResult, FailureReason
from ..models.instance import NodeInstance, NodeStatus


logger = logging.getLogger(__name__)


class RetryStrategy(Enum):
    """重试策略"""
    FIXED_DELAY = "fixed_delay"           # 固定延迟
    EXPONENTIAL_BACKOFF = "exponential"   # 指数退避
    LINEAR_BACKOFF = "linear"             # 线性退避


# 这些原因表示本次执行需要整体放弃，重试没有意义
NON_RETRYABLE = (
    FailureReason.CANCELLED,
    FailureReason.PAUSED,
    FailureReason.DEADLINE_EXCEEDED,
    FailureReason.LOCK_CONTENTION,
    FailureReason.VALIDATION,
)


@dataclass
class RetryPolicy:
    """重试策略"""
    max_retries: int = 0
    retry_delay_seconds: float = 0.0
    max_delay_seconds: float = 300.0
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL_BACKOFF
    backoff_factor: float = 2.0
    jitter: bool = False

    @classmethod
    def resolve(
        cls,
        node_definition: BaseNodeDefinition,
        workflow_definition: Optional[WorkflowDefinition] = None
    ) -> "RetryPolicy":
        """节点上的配置优先，其次使用定义级默认值"""
        max_retries = node_definition.max_retries
        delay = node_definition.retry_delay_seconds
        if workflow_definition is not None:
            if max_retries is None:
                max_retries = workflow_definition.max_retries
            if delay is None:
                delay = workflow_definition.retry_delay_seconds
        return cls(max_retries=max_retries or 0, retry_delay_seconds=delay or 0.0)


def error_details(error: BaseException) -> Dict[str, Any]:
    """异常转为可持久化的错误详情"""
    details = {
        "type": type(error).__name__,
        "message": str(error),
        "traceback": "".join(
            traceback.format_exception(type(error), error, error.__traceback__)
        )
    }
    if isinstance(error, NodeExecutionError) and error.cause is not None:
        details["cause"] = f"{type(error.cause).__name__}: {error.cause}"
    return details


class RetryHandler:
    """按策略重试节点执行"""

    def calculate_delay(self, retry_count: int, policy: RetryPolicy) -> float:
        """计算重试延迟"""
        initial_delay = policy.retry_delay_seconds

        if policy.strategy == RetryStrategy.FIXED_DELAY:
            delay = initial_delay
        elif policy.strategy == RetryStrategy.LINEAR_BACKOFF:
            delay = initial_delay * (retry_count + 1)
        else:
            delay = initial_delay * (policy.backoff_factor ** retry_count)

        delay = min(delay, policy.max_delay_seconds)

        if policy.jitter and delay > 0:
            delay += random.uniform(0, delay * 0.1)

        return delay

    async def execute(
        self,
        node: NodeInstance,
        attempt: Callable[[NodeInstance], Awaitable[ExecutionResult]],
        prepare_retry: Callable[[NodeInstance, int], Awaitable[NodeInstance]],
        policy: RetryPolicy,
        check_abort: Optional[Callable[[], Awaitable[Optional[FailureReason]]]] = None
    ) -> ExecutionResult:
        """
        执行节点，失败时按策略重试

        Args:
            node: 节点实例
            attempt: 执行一次节点
            prepare_retry: 重置节点状态并写入新的重试次数，返回最新节点
            policy: 重试策略
            check_abort: 重试等待后调用，返回非 None 时放弃重试
        """
        if node.status == NodeStatus.FAILED:
            # 崩溃前已失败的节点：还有重试次数就继续，否则直接返回失败
            if node.retry_count >= policy.max_retries:
                return ExecutionResult.fail(
                    node.error_message or f"Node {node.node_id} failed",
                    node.error_details
                )
            node = await prepare_retry(node, node.retry_count + 1)

        while True:
            result = await attempt(node)
            if result.success or result.reason in NON_RETRYABLE:
                return result

            if node.retry_count >= policy.max_retries:
                if policy.max_retries > 0:
                    logger.warning(
                        f"Node {node.node_id} failed after {node.retry_count + 1} attempts: "
                        f"{result.error}"
                    )
                return result

            delay = self.calculate_delay(node.retry_count, policy)
            logger.info(
                f"Retrying node {node.node_id} after {delay:.2f}s "
                f"(attempt {node.retry_count + 2})"
            )
            if delay > 0:
                await asyncio.sleep(delay)

            if check_abort is not None:
                reason = await check_abort()
                if reason is not None:
                    return ExecutionResult.fail(
                        f"Retry of node {node.node_id} aborted: {reason.value}",
                        reason=reason
                    )

            node = await prepare_retry(node, node.retry_count + 1)
