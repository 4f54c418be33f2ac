"""
Task Workflow Engine 后台进程入口

连接数据库并运行恢复巡检，接管其他引擎崩溃后遗留的实例。
"""
import asyncio
import logging
import signal

from dotenv import load_dotenv

# 加载环境变量
load_dotenv()

from task_workflow_engine.config import EngineSettings, configure_logging
from task_workflow_engine.core.engine import WorkflowEngine


logger = logging.getLogger(__name__)


async def serve(settings: EngineSettings):
    engine = await WorkflowEngine.from_settings(settings)
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows 不支持 add_signal_handler
            pass

    await engine.recovery_worker.start()
    logger.info(f"Workflow engine {settings.engine_id} running")
    try:
        await stop_event.wait()
    finally:
        await engine.close()
        logger.info(f"Workflow engine {settings.engine_id} stopped")


if __name__ == "__main__":
    settings = EngineSettings.from_env()
    configure_logging(settings.log_level)
    asyncio.run(serve(settings))
