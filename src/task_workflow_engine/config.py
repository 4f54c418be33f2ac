"""
引擎配置

从环境变量读取，入口程序负责先调用 load_dotenv()。
"""
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Optional


def default_engine_id() -> str:
    """生成引擎ID，同时作为锁的 owner"""
    return f"workflow-engine-{os.getpid()}-{int(time.time() * 1000)}"


def _optional_int(value: Optional[str]) -> Optional[int]:
    if value is None or value.strip() == "":
        return None
    return int(value)


@dataclass
class EngineSettings:
    """引擎配置"""
    database_url: str = "sqlite+aiosqlite:///./workflows.db"
    engine_id: str = field(default_factory=default_engine_id)
    lock_ttl_seconds: float = 300.0
    heartbeat_interval_seconds: float = 30.0
    stale_threshold_seconds: float = 600.0
    recovery_poll_interval_seconds: float = 60.0
    recovery_batch_size: int = 10
    # 停止巡检时等待在途恢复任务的时间，超时后取消
    recovery_shutdown_grace_seconds: float = 0.5
    creation_lock_ttl_seconds: float = 30.0
    creation_lock_attempts: int = 50
    creation_lock_wait_seconds: float = 0.05
    default_max_concurrency: int = 5
    # None 表示不启用引擎级并发上限
    engine_max_concurrency: Optional[int] = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "EngineSettings":
        """从环境变量构建配置"""
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            engine_id=os.getenv("ENGINE_ID") or default_engine_id(),
            lock_ttl_seconds=float(os.getenv("LOCK_TTL_SECONDS", "300")),
            heartbeat_interval_seconds=float(os.getenv("HEARTBEAT_INTERVAL_SECONDS", "30")),
            stale_threshold_seconds=float(os.getenv("STALE_THRESHOLD_SECONDS", "600")),
            recovery_poll_interval_seconds=float(os.getenv("RECOVERY_POLL_INTERVAL_SECONDS", "60")),
            recovery_batch_size=int(os.getenv("RECOVERY_BATCH_SIZE", "10")),
            recovery_shutdown_grace_seconds=float(os.getenv("RECOVERY_SHUTDOWN_GRACE_SECONDS", "0.5")),
            default_max_concurrency=int(os.getenv("DEFAULT_MAX_CONCURRENCY", "5")),
            engine_max_concurrency=_optional_int(os.getenv("ENGINE_MAX_CONCURRENCY")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper()
        )


def configure_logging(level: str = "INFO"):
    """配置日志"""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
