"""
实例创建、互斥规则与定义管理测试
"""
import asyncio
from datetime import timedelta

import pytest

from task_workflow_engine.exceptions import WorkflowValidationError
from task_workflow_engine.models.definition import DefinitionStatus
from task_workflow_engine.models.execution import FailureReason, WorkflowOptions
from task_workflow_engine.models.instance import WorkflowStatus, utcnow


async def register(engine, definition, activate=True):
    return await engine.definition_service.register_definition(definition, activate=activate)


class TestMutualExclusion:
    """互斥规则测试"""

    @pytest.mark.asyncio
    async def test_instance_type_lock(self, engine, make_simple_definition):
        """同类型存在非终态实例时拒绝创建"""
        definition = await register(engine, make_simple_definition("typed", "noop"))
        service = engine.instance_service

        first = await service.get_or_create_workflow_instance(definition.id)
        second = await service.get_or_create_workflow_instance(definition.id)

        assert first.success
        assert first.data.status == WorkflowStatus.PENDING
        assert first.data.instance_type == "typed"
        assert not second.success
        assert second.reason == FailureReason.CONFLICT
        assert second.conflicting_instance.id == first.data.id

    @pytest.mark.asyncio
    async def test_instance_type_lock_exclude_statuses(self, engine, make_simple_definition):
        definition = await register(engine, make_simple_definition("typed", "noop"))
        service = engine.instance_service

        await service.get_or_create_workflow_instance(definition.id)
        result = await service.get_or_create_workflow_instance(
            definition.id, WorkflowOptions(exclude_statuses=[WorkflowStatus.PENDING])
        )

        assert result.success

    @pytest.mark.asyncio
    async def test_terminal_instances_do_not_block_type(self, engine, make_simple_definition):
        definition = await register(engine, make_simple_definition("typed", "noop"))
        service = engine.instance_service

        first = await service.get_or_create_workflow_instance(definition.id)
        await service.update_status(first.data.id, WorkflowStatus.FAILED)

        assert (await service.get_or_create_workflow_instance(definition.id)).success

    @pytest.mark.asyncio
    async def test_non_exclusive_definition(self, engine, make_simple_definition):
        definition = await register(
            engine, make_simple_definition("shared", "noop", config={"exclusive": False})
        )
        service = engine.instance_service

        assert (await service.get_or_create_workflow_instance(definition.id)).success
        assert (await service.get_or_create_workflow_instance(definition.id)).success

    @pytest.mark.asyncio
    async def test_mutex_key(self, engine, make_simple_definition):
        """互斥键只在非终态实例之间生效"""
        definition = await register(engine, make_simple_definition("mutex", "noop"))
        service = engine.instance_service

        def opts(key):
            return WorkflowOptions(mutex_key=key, exclusive=False)

        first = await service.get_or_create_workflow_instance(definition.id, opts("m1"))
        conflict = await service.get_or_create_workflow_instance(definition.id, opts("m1"))
        other = await service.get_or_create_workflow_instance(definition.id, opts("m2"))

        assert first.success and other.success
        assert conflict.reason == FailureReason.CONFLICT
        assert conflict.conflicting_instance.id == first.data.id

        await service.update_status(first.data.id, WorkflowStatus.COMPLETED)
        assert (await service.get_or_create_workflow_instance(definition.id, opts("m1"))).success

    @pytest.mark.asyncio
    async def test_business_key_blocks_any_status(self, engine, make_simple_definition):
        """业务键一旦执行过，即使已完成也不能再次创建"""
        definition = await register(engine, make_simple_definition("biz", "noop"))
        service = engine.instance_service

        def opts():
            return WorkflowOptions(business_key="order:1", exclusive=False)

        first = await service.get_or_create_workflow_instance(definition.id, opts())
        await service.update_status(first.data.id, WorkflowStatus.COMPLETED)

        second = await service.get_or_create_workflow_instance(definition.id, opts())

        assert not second.success
        assert second.reason == FailureReason.CONFLICT
        assert "Business instance lock" in second.error

    @pytest.mark.asyncio
    async def test_concurrent_creation_single_winner(self, engine, make_simple_definition):
        """并发创建同一互斥键只有一个成功"""
        definition = await register(engine, make_simple_definition("race", "noop"))
        service = engine.instance_service

        results = await asyncio.gather(*(
            service.get_or_create_workflow_instance(
                definition.id, WorkflowOptions(mutex_key="shared", exclusive=False)
            )
            for _ in range(5)
        ))

        winners = [r for r in results if r.success]
        assert len(winners) == 1
        assert all(r.reason == FailureReason.CONFLICT for r in results if not r.success)

    @pytest.mark.asyncio
    async def test_external_id_reuse(self, engine, make_simple_definition):
        """相同 external_id 返回已存在的实例，不触发冲突检查"""
        definition = await register(engine, make_simple_definition("ext", "noop"))
        service = engine.instance_service

        first = await service.get_or_create_workflow_instance(
            definition.id, WorkflowOptions(external_id="job-1")
        )
        again = await service.get_or_create_workflow_instance(
            definition.id, WorkflowOptions(external_id="job-1")
        )

        assert again.success
        assert again.data.id == first.data.id

    @pytest.mark.asyncio
    async def test_checkpoint_validators(self, engine, make_simple_definition):
        definition = await register(engine, make_simple_definition("check", "noop"))
        service = engine.instance_service

        async def quota_available(context):
            return context.get("quota", 0) > 0

        def broken(context):
            raise RuntimeError("quota service unavailable")

        rejected = await service.get_or_create_workflow_instance(
            definition.id,
            WorkflowOptions(context_data={"quota": 0}, checkpoint_validators={"quota": quota_available})
        )
        errored = await service.get_or_create_workflow_instance(
            definition.id, WorkflowOptions(checkpoint_validators={"broken": broken})
        )
        accepted = await service.get_or_create_workflow_instance(
            definition.id,
            WorkflowOptions(context_data={"quota": 3}, checkpoint_validators={"quota": quota_available})
        )

        assert rejected.reason == FailureReason.CHECKPOINT_REJECTED
        assert errored.reason == FailureReason.CHECKPOINT_REJECTED
        assert errored.error_details["type"] == "RuntimeError"
        assert accepted.success


class TestInstanceCreation:
    """实例创建测试"""

    @pytest.mark.asyncio
    async def test_unknown_definition(self, engine):
        result = await engine.instance_service.get_or_create_workflow_instance(999)
        assert result.reason == FailureReason.NOT_FOUND

    @pytest.mark.asyncio
    async def test_archived_definition(self, engine, make_simple_definition):
        definition = await register(engine, make_simple_definition("old", "noop"))
        await engine.definition_service.archive_definition(definition.id)

        result = await engine.instance_service.get_or_create_workflow_instance(definition.id)

        assert result.reason == FailureReason.VALIDATION

    @pytest.mark.asyncio
    async def test_input_defaults_and_schema(self, engine, make_simple_definition):
        """输入默认值与调用方输入合并后按 input_schema 校验"""
        definition = await register(engine, make_simple_definition(
            "schema", "noop",
            inputs={"limit": 10},
            input_schema={
                "type": "object",
                "required": ["term", "limit"],
                "properties": {"term": {"type": "string"}, "limit": {"type": "integer"}}
            },
            config={"exclusive": False}
        ))
        service = engine.instance_service

        rejected = await service.get_or_create_workflow_instance(
            definition.id, WorkflowOptions(input_data={"term": 2024})
        )
        accepted = await service.get_or_create_workflow_instance(
            definition.id, WorkflowOptions(input_data={"term": "2024-fall"})
        )

        assert rejected.reason == FailureReason.VALIDATION
        assert rejected.error_details["errors"]
        assert accepted.data.input_data == {"limit": 10, "term": "2024-fall"}

    @pytest.mark.asyncio
    async def test_get_next_node_is_idempotent(self, engine, make_simple_definition):
        definition = await register(engine, make_simple_definition("steps", "noop", "noop"))
        service = engine.instance_service
        instance = (await service.get_or_create_workflow_instance(definition.id)).data

        first = await service.get_first_node(instance)
        again = await service.get_first_node(instance)
        second = await service.get_next_node(first)
        last = await service.get_next_node(second)

        assert first.node_id == "step1"
        assert again.id == first.id
        assert second.node_id == "step2"
        assert last is None
        assert len(await service.get_node_instances(instance.id)) == 2

    @pytest.mark.asyncio
    async def test_resume_without_candidates(self, engine, make_simple_definition):
        definition = await register(engine, make_simple_definition("resume", "noop"))

        result = await engine.instance_service.get_or_create_workflow_instance(
            definition.id, WorkflowOptions(resume=True)
        )

        assert result.success
        assert result.data is None

    @pytest.mark.asyncio
    async def test_resume_stale_instance(self, engine, make_simple_definition):
        """心跳过期的 running 实例可以被恢复模式领取"""
        definition = await register(engine, make_simple_definition("resume", "noop"))
        service = engine.instance_service
        instance = (await service.get_or_create_workflow_instance(definition.id)).data
        await service.update_status(instance.id, WorkflowStatus.RUNNING)

        assert not service.is_interrupted(await service.get_instance(instance.id))

        engine.instance_repository._instances[instance.id].last_heartbeat = utcnow() - timedelta(hours=1)

        result = await service.get_or_create_workflow_instance(
            definition.id, WorkflowOptions(resume=True)
        )

        assert result.data.id == instance.id
        assert result.data.status == WorkflowStatus.RUNNING
        assert result.data.assigned_engine_id == "test-engine"

    @pytest.mark.asyncio
    async def test_resume_rejects_terminal_instance(self, engine, make_simple_definition):
        definition = await register(engine, make_simple_definition("done", "noop"))
        service = engine.instance_service
        instance = (await service.get_or_create_workflow_instance(definition.id)).data
        await service.update_status(instance.id, WorkflowStatus.COMPLETED)

        result = await service.resume_instance(instance.id)

        assert result.reason == FailureReason.NOT_RESUMABLE


class TestDefinitionService:
    """定义管理测试"""

    @pytest.mark.asyncio
    async def test_activation_deprecates_previous_version(self, engine, make_simple_definition):
        service = engine.definition_service
        v1 = await register(engine, make_simple_definition("versioned", "noop"))
        v2_data = make_simple_definition("versioned", "noop", "noop")
        v2_data["version"] = "2.0.0"
        v2 = await register(engine, v2_data)

        assert (await service.get_definition(v1.id)).status == DefinitionStatus.DEPRECATED
        assert (await service.get_active_definition("versioned")).id == v2.id
        assert (await service.resolve_definition("versioned", "1.0.0")).id == v1.id

    @pytest.mark.asyncio
    async def test_active_definition_is_immutable(self, engine, make_simple_definition):
        definition = await register(engine, make_simple_definition("frozen", "noop"))

        with pytest.raises(WorkflowValidationError):
            await engine.definition_service.update_definition(
                definition.id, make_simple_definition("frozen", "noop", "noop")
            )

    @pytest.mark.asyncio
    async def test_draft_can_be_updated(self, engine, make_simple_definition):
        draft = await register(engine, make_simple_definition("draft", "noop"), activate=False)

        updated = await engine.definition_service.update_definition(
            draft.id, make_simple_definition("draft", "noop", "log")
        )

        assert updated.status == DefinitionStatus.DRAFT
        assert len(updated.definition["nodes"]) == 2

    @pytest.mark.asyncio
    async def test_duplicate_version_rejected(self, engine, make_simple_definition):
        await register(engine, make_simple_definition("dup", "noop"))
        with pytest.raises(WorkflowValidationError):
            await register(engine, make_simple_definition("dup", "noop"))
