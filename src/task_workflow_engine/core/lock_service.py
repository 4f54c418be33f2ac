"""
执行锁服务

基于租约的互斥：锁行的 expires_at 在未来时由 owner 独占，过期即视为空闲。
锁竞争是正常结果，用 False/0 表示；存储异常原样抛出。
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, Dict, List, Optional

from ..models.instance import ExecutionLock, LockType, utcnow
from ..storage.repository import ExecutionLockRepository

DEFAULT_LOCK_TTL_SECONDS = 300.0


def workflow_lock_key(instance_id: int) -> str:
    """实例级执行锁的 key"""
    return f"workflow:{instance_id}"


class ExecutionLockService:
    """执行锁服务"""

    def __init__(
        self,
        lock_repository: ExecutionLockRepository,
        default_ttl_seconds: float = DEFAULT_LOCK_TTL_SECONDS,
        logger: logging.Logger = None
    ):
        self.lock_repository = lock_repository
        self.default_ttl_seconds = default_ttl_seconds
        self.logger = logger or logging.getLogger(__name__)

    def _expires_at(self, ttl_seconds: Optional[float]):
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            raise ValueError(f"Lock ttl must be positive, got {ttl}")
        return utcnow() + timedelta(seconds=ttl)

    async def acquire(
        self,
        key: str,
        owner: str,
        ttl_seconds: float = None,
        lock_type: LockType = LockType.WORKFLOW,
        lock_data: Dict[str, Any] = None
    ) -> bool:
        """获取锁，已被他人持有且未过期时返回 False"""
        acquired = await self.lock_repository.acquire_lock(
            key, owner, self._expires_at(ttl_seconds), lock_type, lock_data
        )
        if acquired:
            self.logger.debug(f"Lock acquired: {key} by {owner}")
        else:
            self.logger.debug(f"Lock busy: {key} (requested by {owner})")
        return acquired

    async def renew(self, key: str, owner: str, ttl_seconds: float = None) -> bool:
        """续期，失败说明锁已易主或已过期，调用方必须立即放弃执行"""
        renewed = await self.lock_repository.renew_lock(key, owner, self._expires_at(ttl_seconds))
        if not renewed:
            self.logger.warning(f"Lock renewal failed: {key} is no longer held by {owner}")
        return renewed

    async def release(self, key: str, owner: str) -> bool:
        """释放锁，重复释放返回 False 而不是报错"""
        released = await self.lock_repository.release_lock(key, owner)
        if released:
            self.logger.debug(f"Lock released: {key} by {owner}")
        return released

    async def check_lock(self, key: str) -> Optional[ExecutionLock]:
        """获取当前有效的锁"""
        return await self.lock_repository.check_lock(key)

    async def is_locked(self, key: str) -> bool:
        return await self.check_lock(key) is not None

    async def cleanup_expired_locks(self) -> int:
        """清理过期锁"""
        count = await self.lock_repository.cleanup_expired_locks()
        if count:
            self.logger.info(f"Cleaned up {count} expired locks")
        return count

    async def force_release_lock(self, key: str) -> bool:
        """强制释放锁，用于运维处理崩溃遗留的锁"""
        released = await self.lock_repository.force_release_lock(key)
        if released:
            self.logger.warning(f"Lock force released: {key}")
        return released

    async def get_locks_by_owner(self, owner: str) -> List[ExecutionLock]:
        """获取 owner 持有的有效锁，引擎 ID 同时匹配它每次驱动使用的 owner"""
        return await self.lock_repository.get_locks_by_owner(owner)

    async def release_all_locks_by_owner(self, owner: str) -> int:
        """释放 owner 持有的全部锁，用于引擎退出"""
        self.logger.info(f"Releasing all locks by owner {owner}")
        count = await self.lock_repository.release_all_locks_by_owner(owner)
        if count:
            self.logger.info(f"Released {count} locks held by {owner}")
        return count

    async def is_lock_owned_by(self, key: str, owner: str) -> bool:
        return await self.lock_repository.is_lock_owned_by(key, owner)

    async def is_workflow_lock_owned_by(self, instance_id: int, owner: str) -> bool:
        return await self.is_lock_owned_by(workflow_lock_key(instance_id), owner)

    async def get_lock_statistics(self) -> Dict[str, int]:
        """按锁类型统计有效锁"""
        locks = await self.lock_repository.get_active_locks()
        stats = {"total_locks": len(locks)}
        for lock_type in LockType:
            stats[f"{lock_type.value}_locks"] = sum(
                1 for lock in locks if lock.lock_type == lock_type
            )
        return stats

    @asynccontextmanager
    async def hold(
        self,
        key: str,
        owner: str,
        ttl_seconds: float = None,
        attempts: int = 1,
        wait_seconds: float = 0.05,
        lock_type: LockType = LockType.RESOURCE
    ):
        """
        在代码块内持有锁

        产出是否获取成功；获取成功时退出代码块会释放锁。
        """
        acquired = False
        for attempt in range(max(attempts, 1)):
            acquired = await self.acquire(key, owner, ttl_seconds, lock_type)
            if acquired:
                break
            if attempt + 1 < attempts:
                await asyncio.sleep(wait_seconds)
        try:
            yield acquired
        finally:
            if acquired:
                await self.release(key, owner)
