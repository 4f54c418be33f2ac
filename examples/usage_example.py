"""
工作流引擎使用示例

运行方式: python examples/usage_example.py
"""
import asyncio
import logging

from task_workflow_engine import WorkflowEngine, WorkflowOptions
from task_workflow_engine.config import configure_logging


configure_logging("INFO")
logger = logging.getLogger(__name__)


SYNC_WORKFLOW = """
workflow:
  name: course-sync
  version: "1.0.0"
  timeout_seconds: 600
  max_retries: 2
  retry_delay_seconds: 1

  inputs:
    term: "2024-fall"

  nodes:
    - id: fetch_term
      type: simple
      executor: fetch_term
      input_data:
        term: "${inputs.term}"

    - id: sync_courses
      type: loop
      executor: list_courses
      parallel: true
      max_concurrency: 3
      error_handling: continue
      node:
        id: sync_course
        type: simple
        executor: sync_course
        input_data:
          course: "${item}"
          position: "${index}"

    - id: notify
      type: simple
      executor: log
      input_data:
        message: "Synced ${nodes.sync_courses.completed} courses for ${inputs.term}"
"""


async def main():
    engine = WorkflowEngine.in_memory()

    @engine.executor("fetch_term")
    async def fetch_term(context):
        return {"term": context.input_data["term"], "courses": ["math", "physics", "history"]}

    @engine.executor("list_courses")
    async def list_courses(context):
        return context.node_outputs["fetch_term"]["courses"]

    @engine.executor("sync_course")
    async def sync_course(context):
        context.logger.info(f"Syncing course {context.input_data['course']}")
        await asyncio.sleep(0.1)
        return {"course": context.input_data["course"], "synced": True}

    definition = await engine.definition_service.register_definition(SYNC_WORKFLOW, activate=True)

    result = await engine.execution_service.start_workflow(
        definition.id,
        WorkflowOptions(business_key="course-sync:2024-fall", input_data={"term": "2024-fall"})
    )
    logger.info(f"Workflow finished: success={result.success} error={result.error}")

    status = await engine.execution_service.get_workflow_status(result.data.id)
    for node in status["nodes"]:
        logger.info(f"  {node['node_id']}: {node['status']}")

    # 同一业务键再次启动会被业务锁拒绝
    duplicate = await engine.execution_service.start_workflow(
        definition.id, WorkflowOptions(business_key="course-sync:2024-fall")
    )
    logger.info(f"Duplicate start: reason={duplicate.reason.value} error={duplicate.error}")


if __name__ == "__main__":
    asyncio.run(main())
