"""
执行器注册表

业务逻辑以命名执行器的形式注入引擎。定义加载时校验执行器是否已注册，
把运行期的查找失败提前为加载期的验证错误。
"""
import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from ..exceptions import ExecutorNotFoundError, WorkflowValidationError
from ..models.definition import WorkflowGraph
from ..models.execution import ExecutionContext, ExecutionResult


logger = logging.getLogger(__name__)


class Executor(ABC):
    """节点执行器基类"""

    @abstractmethod
    async def execute(self, context: ExecutionContext) -> ExecutionResult:
        """执行节点"""
        pass


def to_execution_result(value: Any) -> ExecutionResult:
    """把执行器返回值规整为 ExecutionResult"""
    if isinstance(value, ExecutionResult):
        return value
    return ExecutionResult.ok(data=value)


class FunctionExecutor(Executor):
    """把普通函数或协程函数包装为执行器"""

    def __init__(self, func: Callable[[ExecutionContext], Any], name: str = None):
        if not callable(func):
            raise ValueError(f"Executor {name or func!r} must be callable")
        self.func = func
        self.name = name or getattr(func, "__name__", repr(func))

    async def execute(self, context: ExecutionContext) -> ExecutionResult:
        value = self.func(context)
        if inspect.isawaitable(value):
            value = await value
        return to_execution_result(value)


class ExecutorRegistry:
    """执行器注册表"""

    def __init__(self):
        self._executors: Dict[str, Executor] = {}

    def register(self, name: str, executor: Any, replace: bool = False):
        """注册执行器，可以是 Executor 实例或可调用对象"""
        if not name:
            raise ValueError("Executor name must not be empty")
        if name in self._executors and not replace:
            raise ValueError(f"Executor already registered: {name}")

        if not isinstance(executor, Executor):
            executor = FunctionExecutor(executor, name=name)

        self._executors[name] = executor
        logger.info(f"Registered executor: {name}")

    def executor(self, name: str):
        """装饰器形式注册"""
        def decorator(func):
            self.register(name, func)
            return func
        return decorator

    def unregister(self, name: str):
        """注销执行器"""
        if self._executors.pop(name, None) is not None:
            logger.info(f"Unregistered executor: {name}")

    def has(self, name: str) -> bool:
        return name in self._executors

    def get(self, name: str) -> Executor:
        executor = self._executors.get(name)
        if executor is None:
            raise ExecutorNotFoundError(name)
        return executor

    def names(self) -> List[str]:
        return sorted(self._executors)

    def validate_graph(self, graph: WorkflowGraph):
        """校验节点图引用的执行器全部已注册"""
        missing = []
        for node in graph.iter_nodes():
            for name in node.executor_names():
                if not self.has(name):
                    missing.append((node.id, name))

        if len(missing) == 1:
            node_id, name = missing[0]
            raise ExecutorNotFoundError(name, node_id)
        if missing:
            details = ", ".join(f"{name} (node '{node_id}')" for node_id, name in missing)
            raise WorkflowValidationError(f"Executors are not registered: {details}")


async def _noop(context: ExecutionContext) -> Dict[str, Any]:
    return dict(context.input_data)


async def _items(context: ExecutionContext) -> Dict[str, Any]:
    items = context.input_data.get("items", context.config.get("items", []))
    if not isinstance(items, list):
        return ExecutionResult.fail(f"'items' must be a list, got {type(items).__name__}")
    return {"items": items}


async def _sleep(context: ExecutionContext) -> Dict[str, Any]:
    seconds = float(context.input_data.get("seconds", context.config.get("seconds", 0)))
    await asyncio.sleep(seconds)
    return {"slept": seconds}


async def _log(context: ExecutionContext) -> Dict[str, Any]:
    message = context.input_data.get("message", context.config.get("message", ""))
    context.logger.info(f"{message}")
    return {"message": message}


def register_builtin_executors(registry: Optional[ExecutorRegistry] = None) -> ExecutorRegistry:
    """注册内置执行器：noop / items / sleep / log"""
    registry = registry or ExecutorRegistry()
    for name, func in (("noop", _noop), ("items", _items), ("sleep", _sleep), ("log", _log)):
        if not registry.has(name):
            registry.register(name, func)
    return registry
