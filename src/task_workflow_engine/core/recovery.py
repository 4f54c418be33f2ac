"""
恢复巡检

定期清理过期锁，并恢复中断的实例（心跳过期的 running 实例和 paused 实例）。
多个引擎可以同时运行巡检，实例锁保证同一实例只会被一个引擎接管。

每个被接管的实例在独立的任务中驱动，同时在途的数量不超过 recovery_batch_size。
"""
import asyncio
import logging
from typing import Dict, List, Optional

from ..config import EngineSettings
from ..models.execution import FailureReason, ServiceResult
from ..models.instance import WorkflowInstance, WorkflowStatus
from .execution_service import WorkflowExecutionService
from .lock_service import workflow_lock_key


logger = logging.getLogger(__name__)


class RecoveryWorker:
    """恢复巡检"""

    def __init__(
        self,
        execution_service: WorkflowExecutionService,
        settings: EngineSettings = None
    ):
        self.execution_service = execution_service
        self.instance_service = execution_service.instance_service
        self.lock_service = execution_service.lock_service
        self.settings = settings or execution_service.settings
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._in_flight: Dict[int, asyncio.Task] = {}

    @property
    def running(self) -> bool:
        return self._task is not None

    @property
    def in_flight(self) -> List[int]:
        """正在由本巡检驱动的实例 ID"""
        return sorted(self._in_flight)

    async def start(self):
        """启动巡检"""
        if self._task:
            return

        self._stop_event.clear()
        self._task = asyncio.create_task(self._poll_loop())
        logger.info(
            f"Recovery worker started (interval {self.settings.recovery_poll_interval_seconds}s, "
            f"batch {self.settings.recovery_batch_size})"
        )

    async def stop(self):
        """
        停止巡检

        在途的恢复任务最多等待 recovery_shutdown_grace_seconds，之后取消。
        被取消的实例保持 running，心跳过期后由其他引擎接管。
        """
        if self._task:
            self._stop_event.set()
            await self._task
            self._task = None
            logger.info("Recovery worker stopped")
        await self._drain(self.settings.recovery_shutdown_grace_seconds)

    async def _drain(self, grace_seconds: float):
        tasks = list(self._in_flight.values())
        if not tasks:
            return

        _, pending = await asyncio.wait(tasks, timeout=grace_seconds)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(f"Cancelled {len(pending)} recovered workflow drives on shutdown")
            await asyncio.gather(*pending, return_exceptions=True)

    async def _poll_loop(self):
        while not self._stop_event.is_set():
            try:
                await self.run_once(wait=False)
            except Exception as e:
                logger.error(f"Recovery sweep failed: {e}", exc_info=True)

            try:
                await asyncio.wait_for(
                    self._stop_event.wait(),
                    timeout=self.settings.recovery_poll_interval_seconds
                )
            except asyncio.TimeoutError:
                pass

    async def run_once(self, wait: bool = True) -> Dict[str, int]:
        """
        执行一轮巡检，返回各类计数

        Args:
            wait: 为 True 时等待本轮接管的实例全部驱动结束再统计结果；
                后台巡检传 False，只派发任务，结果由任务结束时记录。
        """
        cleaned = await self.lock_service.cleanup_expired_locks()

        capacity = self.settings.recovery_batch_size - len(self._in_flight)
        candidates = []
        if capacity > 0:
            candidates = [
                instance for instance in await self.instance_service.find_interrupted_instances(
                    limit=self.settings.recovery_batch_size
                )
                if instance.id not in self._in_flight
            ][:capacity]
        stats = {
            "cleaned_locks": cleaned, "found": len(candidates), "dispatched": 0,
            "resumed": 0, "skipped": 0, "failed": 0
        }
        if not candidates:
            return stats

        # 仍持有有效锁的实例说明引擎还活着，只是心跳滞后
        orphaned = []
        for instance in candidates:
            if await self.lock_service.is_locked(workflow_lock_key(instance.id)):
                stats["skipped"] += 1
            else:
                orphaned.append(instance)

        await self.instance_service.mark_interrupted(
            [instance.id for instance in orphaned if instance.status == WorkflowStatus.RUNNING]
        )

        tasks = [self._dispatch(instance) for instance in orphaned]
        stats["dispatched"] = len(tasks)

        if wait and tasks:
            for result in await asyncio.gather(*tasks):
                stats[self._classify(result)] += 1
            logger.info(
                f"Recovery sweep: {stats['found']} interrupted, {stats['resumed']} resumed, "
                f"{stats['skipped']} skipped, {stats['failed']} failed, {cleaned} locks cleaned"
            )
        else:
            logger.info(
                f"Recovery sweep: {stats['found']} interrupted, {stats['dispatched']} dispatched, "
                f"{stats['skipped']} skipped, {cleaned} locks cleaned"
            )
        return stats

    def _dispatch(self, instance: WorkflowInstance) -> asyncio.Task:
        task = asyncio.create_task(self.execution_service.resume_workflow(instance.id))
        self._in_flight[instance.id] = task
        task.add_done_callback(lambda done: self._finished(instance.id, done))
        return task

    def _finished(self, instance_id: int, task: asyncio.Task):
        self._in_flight.pop(instance_id, None)
        if task.cancelled():
            logger.info(f"Recovery of workflow instance {instance_id} was cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Recovery of workflow instance {instance_id} raised: {error}", exc_info=error)
            return
        if self._classify(task.result()) == "failed":
            logger.warning(
                f"Recovered workflow instance {instance_id} did not complete: {task.result().error}"
            )

    @staticmethod
    def _classify(result: ServiceResult) -> str:
        if result.success:
            return "resumed"
        if result.reason in (FailureReason.LOCK_CONTENTION, FailureReason.NOT_RESUMABLE):
            return "skipped"
        return "failed"
