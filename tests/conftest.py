"""
Pytest 配置和公共 fixtures
"""
import asyncio
from typing import Any, AsyncGenerator, Dict, List

import pytest

from task_workflow_engine.config import EngineSettings
from task_workflow_engine.core.engine import WorkflowEngine
from task_workflow_engine.core.executors import ExecutorRegistry, register_builtin_executors
from task_workflow_engine.models.execution import ExecutionContext, ExecutionResult


class CallRecorder:
    """记录执行器调用顺序"""

    def __init__(self):
        self.calls: List[str] = []

    def count(self, node_id: str) -> int:
        return self.calls.count(node_id)

    def index(self, node_id: str) -> int:
        return self.calls.index(node_id)


@pytest.fixture
def recorder() -> CallRecorder:
    return CallRecorder()


@pytest.fixture
def registry(recorder: CallRecorder) -> ExecutorRegistry:
    """内置执行器加上测试用执行器"""
    registry = register_builtin_executors(ExecutorRegistry())

    async def record(context: ExecutionContext) -> Dict[str, Any]:
        recorder.calls.append(context.node_instance.node_id)
        return {"node": context.node_instance.node_id, **context.input_data}

    async def slow(context: ExecutionContext) -> Dict[str, Any]:
        recorder.calls.append(context.node_instance.node_id)
        await asyncio.sleep(context.config.get("seconds", 0.05))
        return {"node": context.node_instance.node_id}

    async def fail(context: ExecutionContext) -> ExecutionResult:
        recorder.calls.append(context.node_instance.node_id)
        return ExecutionResult.fail(f"{context.node_instance.node_id} failed on purpose")

    async def explode(context: ExecutionContext):
        recorder.calls.append(context.node_instance.node_id)
        raise RuntimeError("executor exploded")

    registry.register("record", record)
    registry.register("slow", slow)
    registry.register("fail", fail)
    registry.register("explode", explode)
    return registry


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(
        engine_id="test-engine",
        lock_ttl_seconds=30,
        heartbeat_interval_seconds=0.05,
        stale_threshold_seconds=60,
        creation_lock_wait_seconds=0.01,
        creation_lock_attempts=200
    )


@pytest.fixture
def engine(registry: ExecutorRegistry, settings: EngineSettings) -> WorkflowEngine:
    """使用内存存储的工作流引擎"""
    return WorkflowEngine.in_memory(executor_registry=registry, settings=settings)


@pytest.fixture
async def sql_engine(tmp_path, registry: ExecutorRegistry, settings: EngineSettings) -> AsyncGenerator[WorkflowEngine, None]:
    """使用临时 SQLite 文件的工作流引擎"""
    settings.database_url = f"sqlite+aiosqlite:///{tmp_path / 'workflows.db'}"
    engine = await WorkflowEngine.from_settings(settings, executor_registry=registry)
    yield engine
    await engine.close()


@pytest.fixture
def abc_definition() -> Dict[str, Any]:
    """A(simple) -> B(loop, [1, 2, 3]) -> C(simple)"""
    return {
        "workflow": {
            "name": "abc",
            "version": "1.0.0",
            "nodes": [
                {"id": "A", "type": "simple", "executor": "record"},
                {
                    "id": "B",
                    "type": "loop",
                    "executor": "items",
                    "input_data": {"items": [1, 2, 3]},
                    "node": {
                        "id": "B_item",
                        "type": "simple",
                        "executor": "record",
                        "input_data": {"value": "${item}"}
                    }
                },
                {"id": "C", "type": "simple", "executor": "record"}
            ]
        }
    }


def simple_definition(name: str, *executors: str, **extra) -> Dict[str, Any]:
    """按顺序由若干 simple 节点组成的定义"""
    nodes = [
        {"id": f"step{i + 1}", "type": "simple", "executor": executor}
        for i, executor in enumerate(executors)
    ]
    return {"name": name, "version": "1.0.0", "nodes": nodes, **extra}


@pytest.fixture
def make_simple_definition():
    return simple_definition
