# 【入口】整个程序的启动点
import asyncio
import sys

from fastapi import FastAPI
from loguru import logger

from experiment_gate import __version__
from experiment_gate.api.deps import container
from experiment_gate.api.v1.router import api_router
from experiment_gate.core.config import settings
from experiment_gate.core.lifecycle import LifecyclePhase, LifecycleService
from experiment_gate.core.redis_client import redis_client
from experiment_gate.experiments.collaborators import (
    EmitterSaveEventSource,
    LoggerTelemetryService,
    RedisStorageService,
    StaticExtensionQuery,
    StaticWorkspaceTags,
)
from experiment_gate.experiments.engine import EnvironmentInfo, ExperimentEngine
from experiment_gate.experiments.fetcher import ExperimentConfigFetcher
from experiment_gate.experiments.models import Experiment
from experiment_gate.experiments.repository import ExperimentStateRepository
from experiment_gate.experiments.service import ExperimentService


# ========================================
# Loguru 日志配置
# ========================================
def setup_logger():
    """配置 loguru 日志系统"""
    # 移除默认的 handler
    logger.remove()

    # 添加控制台输出（彩色）
    logger.add(
        sys.stdout,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
        level=settings.LOG_LEVEL,
        colorize=True,
    )

    # 如果配置了日志文件，添加文件输出
    if settings.LOG_FILE:
        logger.add(
            settings.LOG_FILE,
            rotation="100 MB",  # 日志文件达到 100MB 时轮转
            retention="10 days",  # 保留最近 10 天的日志
            compression="zip",  # 压缩旧日志
            format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
            level=settings.LOG_LEVEL,
        )

    logger.info("Loguru 日志系统初始化完成")


# 初始化日志
setup_logger()


# ========================================
# FastAPI 应用配置
# ========================================
app = FastAPI(
    title="Experiment Gate - 实验开关服务",
    description="根据远程配置、持久化状态与文件保存行为判定实验是否生效",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
)

# 注册所有路由，统一加前缀 /api/v1
app.include_router(api_router, prefix="/api/v1")

lifecycle = LifecycleService()
_background_tasks: set[asyncio.Task] = set()


def build_experiment_service(save_events: EmitterSaveEventSource) -> ExperimentService:
    repository = ExperimentStateRepository(
        RedisStorageService(redis_client, prefix=settings.STORAGE_KEY_PREFIX)
    )
    engine = ExperimentEngine(
        repository=repository,
        fetcher=ExperimentConfigFetcher(
            settings.EXPERIMENTS_URL, timeout=settings.EXPERIMENTS_FETCH_TIMEOUT
        ),
        extensions=StaticExtensionQuery(settings.INSTALLED_EXTENSIONS),
        save_events=save_events,
        workspace_tags=StaticWorkspaceTags(settings.WORKSPACE_TAGS),
        telemetry=LoggerTelemetryService(),
        environment=EnvironmentInfo(
            app_quality=settings.APP_QUALITY,
            display_language=settings.DISPLAY_LANGUAGE,
        ),
    )
    return ExperimentService(engine, repository, lifecycle)


def _log_enabled_experiment(experiment: Experiment) -> None:
    logger.info(f"新启用的提示类实验: {experiment.id}")


async def _enter_eventually_phase() -> None:
    await asyncio.sleep(settings.EVENTUALLY_DELAY_SECONDS)
    lifecycle.set_phase(LifecyclePhase.EVENTUALLY)


@app.on_event("startup")
async def startup_event():
    """应用启动事件"""
    logger.info("=" * 60)
    logger.info("实验开关服务正在启动...")
    logger.info(f"调试模式: {settings.DEBUG}")
    logger.info(f"日志级别: {settings.LOG_LEVEL}")
    logger.info(f"实验配置地址: {settings.EXPERIMENTS_URL or '(未配置)'}")
    logger.info("=" * 60)

    await redis_client.connect()

    container.save_events = EmitterSaveEventSource()
    container.experiment_service = build_experiment_service(container.save_events)
    container.experiment_service.on_experiment_enabled(_log_enabled_experiment)
    container.experiment_service.initialize()

    lifecycle.set_phase(LifecyclePhase.READY)
    task = asyncio.ensure_future(_enter_eventually_phase())
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


@app.on_event("shutdown")
async def shutdown_event():
    """应用关闭事件"""
    logger.info("实验开关服务正在关闭...")
    if container.experiment_service is not None:
        container.experiment_service.dispose()
    if container.save_events is not None:
        container.save_events.dispose()
    for task in list(_background_tasks):
        task.cancel()
    await redis_client.close()


@app.get("/")
def health_check():
    """健康检查端点"""
    return {
        "status": "ok",
        "message": "Experiment Gate is running!",
        "version": __version__,
        "lifecycle_phase": lifecycle.phase.name,
    }
