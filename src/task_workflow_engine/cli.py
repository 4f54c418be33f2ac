"""
Task Workflow Engine CLI
"""
import asyncio
import importlib
import json
import sys
from typing import Any, Dict, Optional

import click
import yaml
from dotenv import load_dotenv

from .config import EngineSettings, configure_logging
from .core.engine import WorkflowEngine
from .core.executors import ExecutorRegistry, register_builtin_executors
from .exceptions import WorkflowEngineError
from .models.execution import ServiceResult, WorkflowOptions
from .models.instance import WorkflowInstance


def _load_registry(plugins) -> ExecutorRegistry:
    """内置执行器加上插件模块中的执行器

    插件模块需要提供 register_executors(registry) 函数。
    """
    registry = register_builtin_executors()
    for module_name in plugins:
        module = importlib.import_module(module_name)
        register = getattr(module, "register_executors", None)
        if register is None:
            raise click.ClickException(f"Plugin {module_name} has no register_executors(registry)")
        register(registry)
    return registry


def _parse_json_option(value: Optional[str], name: str) -> Dict[str, Any]:
    if not value:
        return {}
    try:
        data = json.loads(value)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"Invalid JSON: {e}", param_hint=name)
    if not isinstance(data, dict):
        raise click.BadParameter("Expected a JSON object", param_hint=name)
    return data


def _instance_summary(instance: WorkflowInstance) -> Dict[str, Any]:
    return {
        "instance_id": instance.id,
        "name": instance.name,
        "status": instance.status.value,
        "current_node_id": instance.current_node_id,
        "error_message": instance.error_message,
        "error_node_id": instance.error_node_id,
        "output": instance.output_data,
    }


def _echo_json(data: Any):
    click.echo(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def _echo_result(result: ServiceResult):
    payload: Dict[str, Any] = {"success": result.success}
    if isinstance(result.data, WorkflowInstance):
        payload["instance"] = _instance_summary(result.data)
    if not result.success:
        payload["reason"] = result.reason.value if result.reason else None
        payload["error"] = result.error
        if result.conflicting_instance is not None:
            payload["conflicting_instance_id"] = result.conflicting_instance.id
    _echo_json(payload)
    if not result.success:
        sys.exit(1)


def _run(ctx: click.Context, operation):
    """打开引擎执行一个异步操作"""
    settings: EngineSettings = ctx.obj["settings"]
    registry = _load_registry(ctx.obj["plugins"])

    async def _main():
        engine = await WorkflowEngine.from_settings(settings, executor_registry=registry)
        try:
            return await operation(engine)
        finally:
            await engine.close()

    try:
        return asyncio.run(_main())
    except WorkflowEngineError as e:
        raise click.ClickException(str(e))


@click.group()
@click.option('--database-url', envvar='DATABASE_URL', help='SQLAlchemy async database URL')
@click.option('--plugin', 'plugins', multiple=True, help='Module providing register_executors(registry)')
@click.option('--log-level', envvar='LOG_LEVEL', default='INFO', help='Logging level')
@click.pass_context
def cli(ctx, database_url, plugins, log_level):
    """Task Workflow Engine CLI"""
    configure_logging(log_level)
    settings = EngineSettings.from_env()
    if database_url:
        settings.database_url = database_url
    ctx.obj = {"settings": settings, "plugins": plugins}


@cli.command('init-db')
@click.pass_context
def init_db(ctx):
    """Create database tables"""
    async def _init(engine: WorkflowEngine):
        click.echo(f"Database initialized: {engine.settings.database_url}")

    _run(ctx, _init)


@cli.command()
@click.argument('workflow_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--activate', is_flag=True, help='Activate the definition after registering')
@click.pass_context
def register(ctx, workflow_file, activate):
    """Register a workflow definition from a YAML/JSON file"""
    async def _register(engine: WorkflowEngine):
        definition = await engine.definition_service.register_definition(workflow_file, activate=activate)
        _echo_json({
            "definition_id": definition.id,
            "name": definition.name,
            "version": definition.version,
            "status": definition.status.value
        })

    _run(ctx, _register)


@cli.command()
@click.argument('definition_id', type=int)
@click.pass_context
def activate(ctx, definition_id):
    """Activate a workflow definition"""
    async def _activate(engine: WorkflowEngine):
        definition = await engine.definition_service.activate_definition(definition_id)
        click.echo(f"Activated {definition.name}@{definition.version}")

    _run(ctx, _activate)


@cli.command()
@click.argument('workflow_name')
@click.option('--version', 'version', default=None, help='Definition version, defaults to the active one')
@click.option('--input', 'input_json', default=None, help='Input data as a JSON object')
@click.option('--context', 'context_json', default=None, help='Context data as a JSON object')
@click.option('--external-id', default=None, help='Idempotency key')
@click.option('--business-key', default=None, help='Business uniqueness key')
@click.option('--mutex-key', default=None, help='Mutual exclusion key')
@click.option('--instance-type', default=None, help='Instance type, defaults to the workflow name')
@click.option('--resume', is_flag=True, help='Resume an interrupted instance instead of creating one')
@click.pass_context
def start(ctx, workflow_name, version, input_json, context_json, external_id,
          business_key, mutex_key, instance_type, resume):
    """Start a workflow and run it to the end"""
    opts = WorkflowOptions(
        instance_type=instance_type,
        external_id=external_id,
        business_key=business_key,
        mutex_key=mutex_key,
        input_data=_parse_json_option(input_json, '--input'),
        context_data=_parse_json_option(context_json, '--context'),
        resume=resume
    )

    async def _start(engine: WorkflowEngine):
        return await engine.execution_service.start_workflow_by_name(workflow_name, opts, version=version)

    result = _run(ctx, _start)
    if result.success and result.data is None:
        click.echo("No interrupted instance to resume")
        return
    _echo_result(result)


@cli.command()
@click.argument('instance_id', type=int)
@click.pass_context
def resume(ctx, instance_id):
    """Resume an interrupted workflow instance"""
    async def _resume(engine: WorkflowEngine):
        return await engine.execution_service.resume_workflow(instance_id)

    _echo_result(_run(ctx, _resume))


@cli.command()
@click.argument('instance_id', type=int)
@click.option('--reason', default=None, help='Reason recorded on the instance')
@click.pass_context
def stop(ctx, instance_id, reason):
    """Stop (cancel) a workflow instance"""
    async def _stop(engine: WorkflowEngine):
        return await engine.execution_service.stop_workflow(instance_id, reason)

    _echo_result(_run(ctx, _stop))


@cli.command()
@click.argument('instance_id', type=int)
@click.pass_context
def pause(ctx, instance_id):
    """Pause a workflow instance"""
    async def _pause(engine: WorkflowEngine):
        return await engine.execution_service.pause_workflow(instance_id)

    _echo_result(_run(ctx, _pause))


@cli.command()
@click.argument('instance_id', type=int)
@click.pass_context
def status(ctx, instance_id):
    """Show instance and node status"""
    async def _status(engine: WorkflowEngine):
        return await engine.execution_service.get_workflow_status(instance_id)

    _echo_json(_run(ctx, _status))


@cli.command()
@click.option('--loop', 'keep_running', is_flag=True, help='Keep polling until interrupted')
@click.pass_context
def recover(ctx, keep_running):
    """Resume interrupted workflow instances"""
    async def _recover(engine: WorkflowEngine):
        if not keep_running:
            return await engine.recovery_worker.run_once()

        await engine.recovery_worker.start()
        try:
            while True:
                await asyncio.sleep(3600)
        finally:
            await engine.recovery_worker.stop()

    try:
        stats = _run(ctx, _recover)
    except KeyboardInterrupt:
        click.echo("Recovery worker stopped")
        return
    _echo_json(stats)


@cli.command('cleanup-locks')
@click.option('--force', 'force_key', default=None, help='Force release the lock with this key')
@click.option('--owner', default=None, help='Release every lock held by this engine id')
@click.pass_context
def cleanup_locks(ctx, force_key, owner):
    """Delete expired execution locks"""
    async def _cleanup(engine: WorkflowEngine):
        if force_key:
            released = await engine.lock_service.force_release_lock(force_key)
            click.echo(f"Released {force_key}" if released else f"No lock {force_key}")
            return
        if owner:
            count = await engine.lock_service.release_all_locks_by_owner(owner)
            click.echo(f"Released {count} locks held by {owner}")
            return
        count = await engine.lock_service.cleanup_expired_locks()
        click.echo(f"Removed {count} expired locks")

    _run(ctx, _cleanup)


@cli.command()
@click.option('--owner', default=None, help='List the locks held by this engine id')
@click.pass_context
def locks(ctx, owner):
    """Show active lock statistics"""
    async def _locks(engine: WorkflowEngine):
        payload: Dict[str, Any] = {"statistics": await engine.lock_service.get_lock_statistics()}
        if owner:
            payload["locks"] = [
                {
                    "lock_key": lock.lock_key,
                    "lock_type": lock.lock_type.value,
                    "owner": lock.owner,
                    "expires_at": lock.expires_at
                }
                for lock in await engine.lock_service.get_locks_by_owner(owner)
            ]
        return payload

    _echo_json(_run(ctx, _locks))


@cli.command()
@click.argument('workflow_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--input', 'input_json', default=None, help='Input data as a JSON object')
@click.option('--validate-only', is_flag=True, help='Only validate, do not execute')
@click.pass_context
def run(ctx, workflow_file, input_json, validate_only):
    """Run a workflow file once with in-memory storage"""
    registry = _load_registry(ctx.obj["plugins"])
    inputs = _parse_json_option(input_json, '--input')

    async def _run_file():
        engine = WorkflowEngine.in_memory(executor_registry=registry, settings=ctx.obj["settings"])
        definition = await engine.definition_service.register_definition(workflow_file, activate=True)
        click.echo(f"Loaded workflow: {definition.name}@{definition.version}")
        if validate_only:
            return None
        result = await engine.execution_service.start_workflow(
            definition.id, WorkflowOptions(input_data=inputs)
        )
        if isinstance(result.data, WorkflowInstance):
            _echo_json(await engine.execution_service.get_workflow_status(result.data.id))
        return result

    try:
        result = asyncio.run(_run_file())
    except WorkflowEngineError as e:
        raise click.ClickException(str(e))
    if result is not None and not result.success:
        click.echo(f"Workflow failed: {result.error}", err=True)
        sys.exit(1)


def main():
    """Main entry point"""
    load_dotenv()
    cli()


if __name__ == '__main__':
    main()
