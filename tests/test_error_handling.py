"""
重试策略测试
"""
import pytest

from task_workflow_engine.core.error_handler import (
    RetryHandler, RetryPolicy, RetryStrategy, error_details
)
from task_workflow_engine.exceptions import NodeExecutionError
from task_workflow_engine.models.definition import SimpleNodeDefinition, WorkflowDefinition
from task_workflow_engine.models.execution import ExecutionResult, FailureReason
from task_workflow_engine.models.instance import NodeInstance, NodeStatus, NodeType


def make_node(**kwargs) -> NodeInstance:
    return NodeInstance(workflow_instance_id=1, node_id="n1", node_type=NodeType.SIMPLE, id=1, **kwargs)


async def prepare_retry(node: NodeInstance, retry_count: int) -> NodeInstance:
    node.retry_count = retry_count
    node.status = NodeStatus.PENDING
    return node


class TestRetryPolicy:
    """重试策略测试"""

    def test_calculate_delay(self):
        handler = RetryHandler()

        fixed = RetryPolicy(retry_delay_seconds=1.0, strategy=RetryStrategy.FIXED_DELAY)
        assert [handler.calculate_delay(i, fixed) for i in range(3)] == [1.0, 1.0, 1.0]

        linear = RetryPolicy(retry_delay_seconds=1.0, strategy=RetryStrategy.LINEAR_BACKOFF)
        assert [handler.calculate_delay(i, linear) for i in range(3)] == [1.0, 2.0, 3.0]

        exponential = RetryPolicy(retry_delay_seconds=1.0, strategy=RetryStrategy.EXPONENTIAL_BACKOFF)
        assert [handler.calculate_delay(i, exponential) for i in range(3)] == [1.0, 2.0, 4.0]

    def test_delay_is_capped(self):
        policy = RetryPolicy(retry_delay_seconds=10.0, max_delay_seconds=30.0)
        assert RetryHandler().calculate_delay(5, policy) == 30.0

    def test_jitter_stays_within_ten_percent(self):
        policy = RetryPolicy(retry_delay_seconds=1.0, strategy=RetryStrategy.FIXED_DELAY, jitter=True)
        delay = RetryHandler().calculate_delay(0, policy)
        assert 1.0 <= delay <= 1.1

    def test_resolve_prefers_node_settings(self):
        workflow = WorkflowDefinition(
            name="wf", version="1", definition={}, max_retries=4, retry_delay_seconds=2.0
        )
        inherited = SimpleNodeDefinition(id="a", executor="noop")
        overridden = SimpleNodeDefinition(id="b", executor="noop", max_retries=1, retry_delay_seconds=0)

        assert RetryPolicy.resolve(inherited, workflow).max_retries == 4
        assert RetryPolicy.resolve(inherited, workflow).retry_delay_seconds == 2.0
        assert RetryPolicy.resolve(overridden, workflow).max_retries == 1
        assert RetryPolicy.resolve(overridden, workflow).retry_delay_seconds == 0.0
        assert RetryPolicy.resolve(inherited).max_retries == 0

    def test_error_details_includes_cause(self):
        try:
            raise NodeExecutionError("n1", "wrapped", cause=KeyError("course_id"))
        except NodeExecutionError as e:
            details = error_details(e)

        assert details["type"] == "NodeExecutionError"
        assert details["cause"] == "KeyError: 'course_id'"
        assert "Traceback" in details["traceback"]


class TestRetryHandler:
    """重试执行测试"""

    @pytest.mark.asyncio
    async def test_retries_until_success(self):
        attempts = []

        async def attempt(node):
            attempts.append(node.retry_count)
            if len(attempts) < 3:
                return ExecutionResult.fail("not yet")
            return ExecutionResult.ok({"done": True})

        result = await RetryHandler().execute(make_node(), attempt, prepare_retry, RetryPolicy(max_retries=3))

        assert result.success
        assert attempts == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        attempts = []

        async def attempt(node):
            attempts.append(node.retry_count)
            return ExecutionResult.fail("always")

        result = await RetryHandler().execute(make_node(), attempt, prepare_retry, RetryPolicy(max_retries=2))

        assert not result.success
        assert attempts == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_interruptions_are_not_retried(self):
        attempts = []

        async def attempt(node):
            attempts.append(node.retry_count)
            return ExecutionResult.fail("stopped", reason=FailureReason.CANCELLED)

        result = await RetryHandler().execute(make_node(), attempt, prepare_retry, RetryPolicy(max_retries=5))

        assert result.reason == FailureReason.CANCELLED
        assert attempts == [0]

    @pytest.mark.asyncio
    async def test_abort_between_retries(self):
        async def attempt(node):
            return ExecutionResult.fail("boom")

        async def paused():
            return FailureReason.PAUSED

        result = await RetryHandler().execute(
            make_node(), attempt, prepare_retry, RetryPolicy(max_retries=3), check_abort=paused
        )

        assert result.reason == FailureReason.PAUSED

    @pytest.mark.asyncio
    async def test_previously_failed_node(self):
        """恢复时遇到已失败的节点：有剩余次数则继续重试，否则直接失败"""
        async def attempt(node):
            return ExecutionResult.ok({"retry": node.retry_count})

        exhausted = make_node(status=NodeStatus.FAILED, retry_count=2, error_message="earlier failure")
        result = await RetryHandler().execute(exhausted, attempt, prepare_retry, RetryPolicy(max_retries=2))
        assert not result.success
        assert result.error == "earlier failure"

        retryable = make_node(status=NodeStatus.FAILED, retry_count=0)
        result = await RetryHandler().execute(retryable, attempt, prepare_retry, RetryPolicy(max_retries=2))
        assert result.success
        assert result.data == {"retry": 1}
