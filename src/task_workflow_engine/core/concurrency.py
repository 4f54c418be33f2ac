"""
并发限制

循环（并行模式）和并行节点的子任务需要同时占用节点级名额和可选的引擎级名额。
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional


logger = logging.getLogger(__name__)


class ConcurrencyLimiter:
    """并发限制器"""

    def __init__(self, engine_limit: Optional[int] = None, default_node_limit: int = 5):
        if engine_limit is not None and engine_limit < 1:
            raise ValueError("engine_limit must be >= 1")
        if default_node_limit < 1:
            raise ValueError("default_node_limit must be >= 1")
        self.engine_limit = engine_limit
        self.default_node_limit = default_node_limit
        self._engine_semaphore: Optional[asyncio.Semaphore] = None
        self.active = 0
        self.peak = 0

    def node_semaphore(self, limit: Optional[int] = None) -> asyncio.Semaphore:
        """为一次节点执行创建节点级信号量"""
        return asyncio.Semaphore(limit or self.default_node_limit)

    def _engine(self) -> Optional[asyncio.Semaphore]:
        # 延迟创建，保证绑定到运行中的事件循环
        if self.engine_limit is not None and self._engine_semaphore is None:
            self._engine_semaphore = asyncio.Semaphore(self.engine_limit)
        return self._engine_semaphore

    @asynccontextmanager
    async def slot(self, node_semaphore: asyncio.Semaphore):
        """占用一个并发名额"""
        async with node_semaphore:
            engine_semaphore = self._engine()
            if engine_semaphore is not None:
                await engine_semaphore.acquire()
            self.active += 1
            self.peak = max(self.peak, self.active)
            try:
                yield
            finally:
                self.active -= 1
                if engine_semaphore is not None:
                    engine_semaphore.release()

    def get_usage_stats(self) -> Dict[str, Any]:
        """获取并发使用统计"""
        return {
            "active": self.active,
            "peak": self.peak,
            "engine_limit": self.engine_limit,
            "default_node_limit": self.default_node_limit
        }
