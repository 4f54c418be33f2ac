"""
工作流执行集成测试
"""
import asyncio
import dataclasses

import pytest

from task_workflow_engine.core.engine import WorkflowEngine
from task_workflow_engine.core.executors import register_builtin_executors
from task_workflow_engine.core.lock_service import workflow_lock_key
from task_workflow_engine.models.execution import ExecutionResult, FailureReason, WorkflowOptions
from task_workflow_engine.models.instance import NodeStatus, WorkflowStatus


async def start(engine, definition, **options):
    registered = await engine.definition_service.register_definition(definition, activate=True)
    return await engine.execution_service.start_workflow(registered.id, WorkflowOptions(**options))


async def node_of(engine, instance_id, node_id):
    return await engine.node_repository.find_by_workflow_and_node_id(instance_id, node_id)


def loop_definition(name, child_executor, items, **loop_options):
    """A -> B(loop) -> C"""
    return {
        "name": name,
        "version": "1.0.0",
        "nodes": [
            {"id": "A", "type": "simple", "executor": "record"},
            {
                "id": "B",
                "type": "loop",
                "executor": "items",
                "input_data": {"items": items},
                "node": {"id": "B_item", "type": "simple", "executor": child_executor},
                **loop_options
            },
            {"id": "C", "type": "simple", "executor": "record"}
        ]
    }


class TestSequentialExecution:
    """顺序执行测试"""

    @pytest.mark.asyncio
    async def test_abc_workflow(self, engine, recorder, abc_definition):
        """A 完成后 B 为每个元素创建子节点，全部完成后才执行 C"""
        result = await start(engine, abc_definition)

        assert result.success
        instance = result.data
        assert instance.status == WorkflowStatus.COMPLETED
        assert recorder.calls == ["A", "B_child_0", "B_child_1", "B_child_2", "C"]

        loop = await node_of(engine, instance.id, "B")
        progress = loop.loop_progress()
        assert loop.status == NodeStatus.COMPLETED
        assert progress.status == "completed"
        assert progress.total_count == 3
        assert progress.completed_count == 3
        assert [r["value"] for r in loop.output_data["results"]] == [1, 2, 3]

        assert instance.output_data == {"node": "C"}
        checkpoint = instance.checkpoint()
        assert checkpoint.last_completed_node == "C"
        assert checkpoint.next_node is None

    @pytest.mark.asyncio
    async def test_completed_instance_is_not_rerun(self, engine, recorder, abc_definition):
        result = await start(engine, abc_definition)

        again = await engine.execution_service.execute_workflow_instance(result.data)

        assert again.success
        assert recorder.count("A") == 1
        assert recorder.count("C") == 1

    @pytest.mark.asyncio
    async def test_loop_items_from_previous_node(self, engine, recorder):
        """循环数据可以引用前序节点输出，执行器也可以直接返回列表"""
        @engine.executor("load")
        async def load(context):
            return {"courses": ["math", "art"]}

        @engine.executor("as_list")
        async def as_list(context):
            return context.input_data["values"]

        result = await start(engine, {
            "name": "courses",
            "version": "1.0.0",
            "nodes": [
                {"id": "fetch", "type": "simple", "executor": "load"},
                {
                    "id": "each",
                    "type": "loop",
                    "executor": "as_list",
                    "input_data": {"values": "${nodes.fetch.courses}"},
                    "node": {
                        "id": "sync",
                        "type": "simple",
                        "executor": "record",
                        "input_data": {"course": "${item}", "position": "${index}"}
                    }
                }
            ]
        })

        assert result.success
        results = result.data.output_data["results"]
        assert [(r["course"], r["position"]) for r in results] == [("math", 0), ("art", 1)]

    @pytest.mark.asyncio
    async def test_empty_loop(self, engine, recorder):
        result = await start(engine, loop_definition("empty", "record", []))

        assert result.success
        loop = await node_of(engine, result.data.id, "B")
        assert loop.output_data["total"] == 0
        assert recorder.calls == ["A", "C"]

    @pytest.mark.asyncio
    async def test_execution_logs(self, engine, abc_definition):
        result = await start(engine, abc_definition)

        logs = await engine.log_repository.find_by_instance(result.data.id)
        events = [log.event_type for log in logs]

        assert events[0] == "workflow_started"
        assert events[-1] == "workflow_completed"
        assert events.count("node_completed") == 6

    @pytest.mark.asyncio
    async def test_workflow_status(self, engine, abc_definition):
        result = await start(engine, abc_definition)

        status = await engine.execution_service.get_workflow_status(result.data.id)

        assert status["status"] == "completed"
        assert status["assigned_engine_id"] == "test-engine"
        assert [n["node_id"] for n in status["nodes"]] == [
            "A", "B", "B_child_0", "B_child_1", "B_child_2", "C"
        ]
        loop = next(n for n in status["nodes"] if n["node_id"] == "B")
        assert loop["progress"]["completed_count"] == 3


class TestConcurrentExecution:
    """并行执行测试"""

    @pytest.mark.asyncio
    async def test_parallel_loop_respects_max_concurrency(self, engine, recorder):
        definition = loop_definition("fanout", "slow", list(range(6)), parallel=True, max_concurrency=2)
        definition["nodes"][1]["node"]["config"] = {"seconds": 0.05}

        result = await start(engine, definition)

        assert result.success
        assert engine.limiter.peak == 2
        assert sorted(recorder.calls[1:-1]) == sorted(f"B_child_{i}" for i in range(6))
        assert recorder.calls[-1] == "C"

    @pytest.mark.asyncio
    async def test_engine_wide_limit(self, registry, settings):
        """引擎级上限与节点级上限同时生效"""
        engine = WorkflowEngine.in_memory(
            executor_registry=registry,
            settings=dataclasses.replace(settings, engine_max_concurrency=1)
        )

        result = await start(engine, {
            "name": "branches",
            "version": "1.0.0",
            "nodes": [{
                "id": "P",
                "type": "parallel",
                "max_concurrency": 3,
                "branches": [
                    {"id": f"b{i}", "type": "simple", "executor": "slow", "config": {"seconds": 0.02}}
                    for i in range(3)
                ]
            }]
        })

        assert result.success
        assert engine.limiter.peak == 1

    @pytest.mark.asyncio
    async def test_parallel_node(self, engine, recorder):
        result = await start(engine, {
            "name": "parallel",
            "version": "1.0.0",
            "nodes": [{
                "id": "P",
                "type": "parallel",
                "branches": [
                    {"id": "left", "type": "simple", "executor": "record"},
                    {"id": "right", "type": "simple", "executor": "record"}
                ]
            }]
        })

        assert result.success
        output = result.data.output_data
        assert set(output["branches"]) == {"P.left", "P.right"}
        assert output["completed"] == 2
        parallel = await node_of(engine, result.data.id, "P")
        assert parallel.parallel_progress().completed_count == 2

    @pytest.mark.asyncio
    async def test_failed_branch_does_not_cancel_siblings(self, engine, recorder):
        result = await start(engine, {
            "name": "parallel",
            "version": "1.0.0",
            "nodes": [{
                "id": "P",
                "type": "parallel",
                "branches": [
                    {"id": "bad", "type": "simple", "executor": "fail"},
                    {"id": "good", "type": "simple", "executor": "slow", "config": {"seconds": 0.02}}
                ]
            }]
        })

        assert not result.success
        assert result.data.status == WorkflowStatus.FAILED
        assert result.data.error_node_id == "P"
        assert result.error_details["failed_children"] == ["P.bad"]
        assert (await node_of(engine, result.data.id, "P.good")).status == NodeStatus.COMPLETED


class TestLoopErrorHandling:
    """循环错误处理测试"""

    @pytest.fixture
    def second_item_fails(self, engine, recorder):
        @engine.executor("second_fails")
        async def second_fails(context):
            recorder.calls.append(context.node_instance.node_id)
            if context.index == 1:
                return ExecutionResult.fail("item 1 is broken")
            return {"item": context.item}

    @pytest.mark.asyncio
    async def test_best_effort(self, engine, recorder, second_item_fails):
        """continue 模式下部分子节点失败，循环仍然完成"""
        result = await start(engine, loop_definition("best-effort", "second_fails", [1, 2, 3]))

        assert result.success
        loop = await node_of(engine, result.data.id, "B")
        assert loop.output_data["completed"] == 2
        assert loop.output_data["failed"] == 1
        assert recorder.calls == ["A", "B_child_0", "B_child_1", "B_child_2", "C"]

    @pytest.mark.asyncio
    async def test_fail_fast(self, engine, recorder, second_item_fails):
        """stop 模式下第一个失败后不再启动新的子节点"""
        result = await start(
            engine, loop_definition("fail-fast", "second_fails", [1, 2, 3], error_handling="stop")
        )

        assert not result.success
        assert result.data.status == WorkflowStatus.FAILED
        assert result.data.error_node_id == "B"
        assert recorder.calls == ["A", "B_child_0", "B_child_1"]
        assert (await node_of(engine, result.data.id, "B_child_2")).status == NodeStatus.PENDING

    @pytest.mark.asyncio
    async def test_all_children_failed(self, engine, recorder):
        result = await start(engine, loop_definition("all-fail", "fail", [1, 2]))

        assert not result.success
        assert result.error_details["failed_children"] == ["B_child_0", "B_child_1"]
        assert "C" not in recorder.calls


class TestSubProcess:
    """子流程测试"""

    @pytest.mark.asyncio
    async def test_sub_process_with_mappings(self, engine):
        await engine.definition_service.register_definition({
            "name": "child-flow",
            "version": "1.0.0",
            "nodes": [{
                "id": "inner",
                "type": "simple",
                "executor": "record",
                "input_data": {"value": "${inputs.value}"}
            }]
        }, activate=True)

        result = await start(engine, {
            "name": "parent-flow",
            "version": "1.0.0",
            "nodes": [{
                "id": "call",
                "type": "sub_process",
                "workflow_name": "child-flow",
                "input_mapping": {"value": "${inputs.seed}"},
                "output_mapping": {"echo": "value"}
            }]
        }, input_data={"seed": 7})

        assert result.success
        assert result.data.output_data == {"echo": 7}

        call = await node_of(engine, result.data.id, "call")
        child = await engine.instance_service.find_by_external_id(f"node:{call.id}:0")
        assert child.status == WorkflowStatus.COMPLETED
        assert child.context_data["parent_instance_id"] == result.data.id
        assert child.context_data["parent_node_id"] == "call"

    @pytest.mark.asyncio
    async def test_failed_sub_process_fails_parent(self, engine, make_simple_definition):
        await engine.definition_service.register_definition(
            make_simple_definition("broken-child", "fail"), activate=True
        )

        result = await start(engine, {
            "name": "parent-flow",
            "version": "1.0.0",
            "nodes": [{"id": "call", "type": "sub_process", "workflow_name": "broken-child"}]
        })

        assert not result.success
        assert result.data.error_node_id == "call"
        assert result.error_details["sub_status"] == "failed"
        assert result.error_details["sub_error_node_id"] == "step1"

    @pytest.mark.asyncio
    async def test_missing_sub_process_definition(self, engine):
        result = await start(engine, {
            "name": "parent-flow",
            "version": "1.0.0",
            "nodes": [{"id": "call", "type": "sub_process", "workflow_name": "nowhere"}]
        })

        assert not result.success
        assert "nowhere" in result.error


class TestRetryAndTimeouts:
    """重试与超时测试"""

    @pytest.fixture
    def flaky(self, engine, recorder):
        @engine.executor("flaky")
        async def flaky(context):
            recorder.calls.append(context.node_instance.node_id)
            if recorder.count(context.node_instance.node_id) < 3:
                raise ConnectionError("upstream unavailable")
            return {"ok": True}

    @pytest.mark.asyncio
    async def test_retry_until_success(self, engine, recorder, flaky, make_simple_definition):
        definition = make_simple_definition("retry", "flaky")
        definition["nodes"][0]["max_retries"] = 2

        result = await start(engine, definition)

        assert result.success
        assert recorder.count("step1") == 3
        assert (await node_of(engine, result.data.id, "step1")).retry_count == 2

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, engine, recorder, flaky, make_simple_definition):
        definition = make_simple_definition("retry", "flaky", max_retries=1)

        result = await start(engine, definition)

        assert not result.success
        assert recorder.count("step1") == 2
        assert result.data.error_details["type"] == "ConnectionError"

    @pytest.mark.asyncio
    async def test_executor_exception_fails_workflow(self, engine, recorder, make_simple_definition):
        result = await start(engine, make_simple_definition("boom", "record", "explode", "record"))

        assert not result.success
        assert result.reason == FailureReason.EXECUTOR_FAILURE
        instance = result.data
        assert instance.status == WorkflowStatus.FAILED
        assert instance.error_node_id == "step2"
        assert instance.error_message == "executor exploded"
        assert "step3" not in recorder.calls
        assert (await node_of(engine, instance.id, "step2")).status == NodeStatus.FAILED

    @pytest.mark.asyncio
    async def test_node_timeout(self, engine, make_simple_definition):
        definition = make_simple_definition("slow-node", "slow")
        definition["nodes"][0].update({"timeout_seconds": 0.01, "config": {"seconds": 0.05}})

        result = await start(engine, definition)

        assert not result.success
        assert result.reason == FailureReason.TIMEOUT
        node = await node_of(engine, result.data.id, "step1")
        assert node.status == NodeStatus.FAILED
        assert "exceeded timeout" in node.error_message

    @pytest.mark.asyncio
    async def test_workflow_deadline(self, engine, recorder, make_simple_definition):
        """截止时间在节点切换时检查，当前节点不会被打断"""
        definition = make_simple_definition("deadline", "slow", "record", timeout_seconds=0.05)
        definition["nodes"][0]["config"] = {"seconds": 0.1}

        result = await start(engine, definition)

        assert result.reason == FailureReason.DEADLINE_EXCEEDED
        assert result.data.status == WorkflowStatus.FAILED
        assert result.data.error_node_id == "step2"
        assert recorder.calls == ["step1"]

    @pytest.mark.asyncio
    async def test_long_executor_observes_deadline(self, engine, make_simple_definition):
        @engine.executor("long_task")
        async def long_task(context):
            for _ in range(50):
                await context.raise_if_cancelled()
                await asyncio.sleep(0.01)
            return {"finished": True}

        result = await start(engine, make_simple_definition("long", "long_task", timeout_seconds=0.05))

        assert result.reason == FailureReason.DEADLINE_EXCEEDED
        assert result.data.status == WorkflowStatus.FAILED
        assert result.data.error_node_id == "step1"


class TestStopAndPause:
    """停止与暂停测试"""

    @pytest.mark.asyncio
    async def test_stop_during_loop(self, engine, recorder):
        """停止在子节点之间生效，后续节点不再执行"""
        @engine.executor("stopper")
        async def stopper(context):
            recorder.calls.append(context.node_instance.node_id)
            if context.index == 1:
                await engine.execution_service.stop_workflow(
                    context.workflow_instance.id, "operator stop"
                )
            return {}

        result = await start(engine, loop_definition("stoppable", "stopper", [0, 1, 2]))

        assert result.reason == FailureReason.CANCELLED
        instance = await engine.instance_service.get_instance(result.data.id)
        assert instance.status == WorkflowStatus.CANCELLED
        assert instance.error_message == "operator stop"
        assert recorder.calls == ["A", "B_child_0", "B_child_1"]
        assert not await engine.lock_service.is_locked(workflow_lock_key(instance.id))

    @pytest.mark.asyncio
    async def test_stop_during_parallel_loop(self, engine, recorder):
        """并行循环中停止后，等待并发槽位的子节点不再启动"""
        @engine.executor("parallel_stopper")
        async def parallel_stopper(context):
            recorder.calls.append(context.node_instance.node_id)
            if context.index == 0:
                await engine.execution_service.stop_workflow(
                    context.workflow_instance.id, "operator stop"
                )
            else:
                await asyncio.sleep(0.02)
            return {}

        result = await start(engine, loop_definition(
            "stoppable-parallel", "parallel_stopper", list(range(6)), parallel=True, max_concurrency=2
        ))

        assert result.reason == FailureReason.CANCELLED
        instance = await engine.instance_service.get_instance(result.data.id)
        assert instance.status == WorkflowStatus.CANCELLED
        assert "C" not in recorder.calls
        assert sorted(c for c in recorder.calls if c.startswith("B_child_")) == ["B_child_0", "B_child_1"]
        assert (await node_of(engine, instance.id, "B_child_5")).status == NodeStatus.PENDING
        assert await node_of(engine, instance.id, "C") is None

    @pytest.mark.asyncio
    async def test_stop_terminal_instance(self, engine, abc_definition):
        result = await start(engine, abc_definition)

        stopped = await engine.execution_service.stop_workflow(result.data.id)

        assert stopped.reason == FailureReason.VALIDATION

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, engine, recorder, make_simple_definition):
        paused_once = []

        @engine.executor("pauser")
        async def pauser(context):
            recorder.calls.append(context.node_instance.node_id)
            if not paused_once:
                paused_once.append(True)
                await engine.execution_service.pause_workflow(context.workflow_instance.id)
            return {}

        result = await start(engine, make_simple_definition("pausable", "record", "pauser", "record"))

        assert result.reason == FailureReason.PAUSED
        paused = await engine.instance_service.get_instance(result.data.id)
        assert paused.status == WorkflowStatus.PAUSED
        assert paused.current_node_id == "step3"
        assert recorder.calls == ["step1", "step2"]

        resumed = await engine.execution_service.resume_workflow(paused.id)

        assert resumed.success
        assert resumed.data.status == WorkflowStatus.COMPLETED
        assert recorder.calls == ["step1", "step2", "step3"]

    @pytest.mark.asyncio
    async def test_resume_completed_instance(self, engine, abc_definition):
        result = await start(engine, abc_definition)

        resumed = await engine.execution_service.resume_workflow(result.data.id)

        assert resumed.reason == FailureReason.NOT_RESUMABLE


class TestStartOptions:
    """启动选项测试"""

    @pytest.mark.asyncio
    async def test_lock_contention(self, engine, recorder, make_simple_definition):
        """实例锁被其他引擎持有时不执行任何节点"""
        definition = await engine.definition_service.register_definition(
            make_simple_definition("locked", "record"), activate=True
        )
        created = await engine.instance_service.get_or_create_workflow_instance(definition.id)
        await engine.lock_service.acquire(workflow_lock_key(created.data.id), "other-engine")

        result = await engine.execution_service.execute_workflow_instance(created.data)

        assert result.reason == FailureReason.LOCK_CONTENTION
        assert recorder.calls == []
        assert (await engine.instance_service.get_instance(created.data.id)).status == WorkflowStatus.PENDING

    @pytest.mark.asyncio
    async def test_start_by_name(self, engine, abc_definition):
        await engine.definition_service.register_definition(abc_definition, activate=True)

        result = await engine.execution_service.start_workflow_by_name("abc")
        missing = await engine.execution_service.start_workflow_by_name("unknown")

        assert result.success
        assert missing.reason == FailureReason.NOT_FOUND

    @pytest.mark.asyncio
    async def test_business_key_runs_once(self, engine, recorder, abc_definition):
        first = await start(engine, abc_definition, business_key="term:2024-fall")
        second = await engine.execution_service.start_workflow_by_name(
            "abc", WorkflowOptions(business_key="term:2024-fall")
        )

        assert first.success
        assert second.reason == FailureReason.CONFLICT
        assert second.conflicting_instance.id == first.data.id
        assert recorder.count("A") == 1


class TestInvalidDefinitionAtRuntime:
    """驱动时定义无法加载"""

    @pytest.mark.asyncio
    async def test_missing_executor_on_recovering_engine(self, engine, settings, abc_definition):
        """接管的引擎缺少执行器时实例失败，并记录出错节点"""
        registered = await engine.definition_service.register_definition(abc_definition, activate=True)
        created = await engine.instance_service.get_or_create_workflow_instance(registered.id)
        other = WorkflowEngine(
            engine.definition_repository,
            engine.instance_repository,
            engine.node_repository,
            engine.lock_repository,
            engine.log_repository,
            executor_registry=register_builtin_executors(),
            settings=dataclasses.replace(settings, engine_id="other-engine")
        )

        result = await other.execution_service.execute_workflow_instance(created.data)

        assert result.reason == FailureReason.VALIDATION
        failed = await engine.instance_service.get_instance(created.data.id)
        assert failed.status == WorkflowStatus.FAILED
        assert failed.error_node_id == "A"
        assert "record" in failed.error_message
        assert not await engine.lock_service.is_locked(workflow_lock_key(failed.id))
