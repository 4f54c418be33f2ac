"""
执行锁测试
"""
import asyncio

import pytest

from task_workflow_engine.core.lock_service import ExecutionLockService, workflow_lock_key
from task_workflow_engine.models.instance import LockType
from task_workflow_engine.storage.memory import InMemoryExecutionLockRepository


@pytest.fixture
def lock_service() -> ExecutionLockService:
    return ExecutionLockService(InMemoryExecutionLockRepository(), default_ttl_seconds=30)


class TestExecutionLockService:
    """执行锁服务测试"""

    @pytest.mark.asyncio
    async def test_acquire_is_exclusive_until_expiry(self, lock_service):
        """租约未过期时他人无法获取，过期后可以接管"""
        assert await lock_service.acquire("K", "A", ttl_seconds=0.1)
        assert not await lock_service.acquire("K", "B", ttl_seconds=0.1)

        await asyncio.sleep(0.15)

        assert await lock_service.acquire("K", "B", ttl_seconds=0.1)
        lock = await lock_service.check_lock("K")
        assert lock.owner == "B"

    @pytest.mark.asyncio
    async def test_same_owner_reacquires(self, lock_service):
        """同一 owner 重复获取视为续期"""
        assert await lock_service.acquire("K", "A")
        assert await lock_service.acquire("K", "A")

    @pytest.mark.asyncio
    async def test_renew_only_by_owner(self, lock_service):
        """只有持有者可以续期，过期后续期失败"""
        await lock_service.acquire("K", "A", ttl_seconds=0.1)
        assert not await lock_service.renew("K", "B")
        assert await lock_service.renew("K", "A", ttl_seconds=0.1)

        await asyncio.sleep(0.15)
        assert not await lock_service.renew("K", "A")

    @pytest.mark.asyncio
    async def test_release(self, lock_service):
        """释放后他人可以获取，重复释放返回 False"""
        await lock_service.acquire("K", "A")
        assert not await lock_service.release("K", "B")
        assert await lock_service.release("K", "A")
        assert not await lock_service.release("K", "A")
        assert await lock_service.acquire("K", "B")

    @pytest.mark.asyncio
    async def test_cleanup_expired_locks(self, lock_service):
        """清理只删除过期锁"""
        await lock_service.acquire("short", "A", ttl_seconds=0.05)
        await lock_service.acquire("long", "A", ttl_seconds=30)
        await asyncio.sleep(0.1)

        assert await lock_service.cleanup_expired_locks() == 1
        assert await lock_service.check_lock("short") is None
        assert await lock_service.is_locked("long")

    @pytest.mark.asyncio
    async def test_force_release(self, lock_service):
        """强制释放不校验 owner"""
        await lock_service.acquire("K", "A")
        assert await lock_service.force_release_lock("K")
        assert not await lock_service.is_locked("K")

    @pytest.mark.asyncio
    async def test_invalid_ttl(self, lock_service):
        with pytest.raises(ValueError):
            await lock_service.acquire("K", "A", ttl_seconds=0)

    @pytest.mark.asyncio
    async def test_hold_waits_and_releases(self, lock_service):
        """hold 在重试次数内等待锁释放，退出代码块时释放"""
        await lock_service.acquire("K", "A", ttl_seconds=0.05)

        async with lock_service.hold("K", "B", attempts=20, wait_seconds=0.01) as acquired:
            assert acquired
            assert (await lock_service.check_lock("K")).owner == "B"

        assert not await lock_service.is_locked("K")

    @pytest.mark.asyncio
    async def test_hold_gives_up(self, lock_service):
        await lock_service.acquire("K", "A")

        async with lock_service.hold("K", "B", attempts=2, wait_seconds=0.01) as acquired:
            assert not acquired

        assert (await lock_service.check_lock("K")).owner == "A"

    @pytest.mark.asyncio
    async def test_locks_by_owner_match_engine_prefix(self, lock_service):
        """引擎 ID 匹配它每次驱动使用的 owner，但不匹配同前缀的其他引擎"""
        await lock_service.acquire("workflow:1", "engine-1:aaaa")
        await lock_service.acquire("workflow:2", "engine-1:bbbb")
        await lock_service.acquire("workflow:3", "engine-10:cccc")
        await lock_service.acquire("short", "engine-1", ttl_seconds=0.05)
        await asyncio.sleep(0.1)

        owned = await lock_service.get_locks_by_owner("engine-1")

        assert sorted(lock.lock_key for lock in owned) == ["workflow:1", "workflow:2"]
        assert await lock_service.release_all_locks_by_owner("engine-1") == 3
        assert not await lock_service.is_locked("workflow:1")
        assert (await lock_service.check_lock("workflow:3")).owner == "engine-10:cccc"

    @pytest.mark.asyncio
    async def test_is_workflow_lock_owned_by(self, lock_service):
        await lock_service.acquire(workflow_lock_key(7), "engine-1:aaaa", ttl_seconds=0.05)

        assert await lock_service.is_workflow_lock_owned_by(7, "engine-1:aaaa")
        assert not await lock_service.is_workflow_lock_owned_by(7, "engine-1")
        assert not await lock_service.is_workflow_lock_owned_by(8, "engine-1:aaaa")

        await asyncio.sleep(0.1)
        assert not await lock_service.is_workflow_lock_owned_by(7, "engine-1:aaaa")

    @pytest.mark.asyncio
    async def test_lock_statistics(self, lock_service):
        """只统计未过期的锁，按类型计数"""
        await lock_service.acquire("workflow:1", "A", lock_type=LockType.WORKFLOW)
        await lock_service.acquire("workflow:2", "A", lock_type=LockType.WORKFLOW)
        await lock_service.acquire("mutex:m", "A", lock_type=LockType.INSTANCE)
        await lock_service.acquire("expired", "A", ttl_seconds=0.05, lock_type=LockType.INSTANCE)
        await asyncio.sleep(0.1)

        stats = await lock_service.get_lock_statistics()

        assert stats["total_locks"] == 3
        assert stats["workflow_locks"] == 2
        assert stats["instance_locks"] == 1
        assert stats["resource_locks"] == 0

    def test_workflow_lock_key(self):
        assert workflow_lock_key(42) == "workflow:42"


class TestSQLAlchemyLock:
    """SQL 锁仓库测试"""

    @pytest.mark.asyncio
    async def test_lease_semantics(self, sql_engine):
        """条件 UPDATE + 主键 INSERT 实现租约"""
        locks = sql_engine.lock_service

        assert await locks.acquire("K", "A", ttl_seconds=0.2)
        assert not await locks.acquire("K", "B", ttl_seconds=0.2)
        assert await locks.acquire("K", "A", ttl_seconds=0.2)

        await asyncio.sleep(0.3)

        assert await locks.acquire("K", "B", ttl_seconds=30)
        assert not await locks.renew("K", "A")
        assert await locks.renew("K", "B")
        assert (await locks.check_lock("K")).owner == "B"

    @pytest.mark.asyncio
    async def test_concurrent_acquire_single_winner(self, sql_engine):
        """并发获取同一把锁只有一个成功"""
        locks = sql_engine.lock_service

        results = await asyncio.gather(*(
            locks.acquire("shared", f"owner-{i}") for i in range(5)
        ))

        assert sum(results) == 1

    @pytest.mark.asyncio
    async def test_release_and_cleanup(self, sql_engine):
        locks = sql_engine.lock_service
        await locks.acquire("a", "A", ttl_seconds=0.1)
        await locks.acquire("b", "A", ttl_seconds=30)
        await asyncio.sleep(0.2)

        assert await locks.cleanup_expired_locks() == 1
        assert await locks.release("b", "A")
        assert not await locks.is_locked("b")

    @pytest.mark.asyncio
    async def test_owner_operations(self, sql_engine):
        """按 owner 查询与释放，owner 中的通配字符按字面匹配"""
        locks = sql_engine.lock_service
        await locks.acquire("workflow:1", "engine_1:aaaa", lock_type=LockType.WORKFLOW)
        await locks.acquire("mutex:m", "engine_1:bbbb", lock_type=LockType.INSTANCE)
        await locks.acquire("workflow:2", "engineX1:cccc", lock_type=LockType.WORKFLOW)

        owned = await locks.get_locks_by_owner("engine_1")
        assert [lock.lock_key for lock in owned] == ["mutex:m", "workflow:1"]
        assert await locks.is_lock_owned_by("workflow:1", "engine_1:aaaa")

        stats = await locks.get_lock_statistics()
        assert stats["total_locks"] == 3
        assert stats["workflow_locks"] == 2
        assert stats["instance_locks"] == 1

        assert await locks.release_all_locks_by_owner("engine_1") == 2
        assert (await locks.get_lock_statistics())["total_locks"] == 1
        assert await locks.is_locked("workflow:2")


class TestEngineShutdown:
    """引擎关闭"""

    @pytest.mark.asyncio
    async def test_close_releases_engine_locks(self, engine):
        """引擎关闭时释放自己的锁，其他引擎的锁保留"""
        locks = engine.lock_service
        await locks.acquire("workflow:1", f"{engine.settings.engine_id}:aaaa")
        await locks.acquire("workflow:2", "other-engine:bbbb")

        await engine.close()

        assert not await locks.is_locked("workflow:1")
        assert await locks.is_workflow_lock_owned_by(2, "other-engine:bbbb")
