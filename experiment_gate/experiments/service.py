from __future__ import annotations

import asyncio
from typing import Any, Optional

from loguru import logger

from experiment_gate.core.events import Emitter, Listener, Subscription, dispose_all
from experiment_gate.core.lifecycle import LifecyclePhase, LifecycleService
from experiment_gate.experiments.engine import BuildResult, ExperimentEngine
from experiment_gate.experiments.file_edits import FileEditTracker
from experiment_gate.experiments.models import (
    Experiment,
    ExperimentActionType,
    ExperimentState,
)
from experiment_gate.experiments.repository import ExperimentStateRepository


class ExperimentService:
    """
    实验注册表与查询接口

    生命周期到达 EVENTUALLY 后构建一次实验列表；所有查询都等待这次构建完成，
    即使构建降级（远程不可用/存储异常）也会正常返回。
    """

    def __init__(
        self,
        engine: ExperimentEngine,
        repository: ExperimentStateRepository,
        lifecycle: LifecycleService,
    ):
        self._engine = engine
        self._repo = repository
        self._lifecycle = lifecycle
        self._result = BuildResult()
        self._subscriptions: list[Subscription] = []
        self._notified: set[str] = set()
        self._on_experiment_enabled: Emitter[Experiment] = Emitter()
        self._load_task: Optional[asyncio.Task] = None
        self._disposed = False

    # ========================================
    # 生命周期
    # ========================================
    def initialize(self, raw_experiments: Optional[list[Any]] = None) -> asyncio.Task:
        """启动一次性构建（重复调用返回同一个任务）"""
        if self._load_task is None:
            self._load_task = asyncio.ensure_future(self._load_when_ready(raw_experiments))
        return self._load_task

    async def _load_when_ready(self, raw_experiments: Optional[list[Any]]) -> None:
        await self._lifecycle.when(LifecyclePhase.EVENTUALLY)
        try:
            await self._engine.build(self._fire_enabled, raw_experiments, self._result)
        except Exception as exc:
            logger.exception(f"实验列表构建失败: {exc}")
        finally:
            if self._disposed:
                self._dispose_trackers()

    async def _ready(self) -> None:
        task = self.initialize()
        if asyncio.current_task() is task:
            # 构建过程中的通知回调里发起的查询，按已处理的部分作答
            return
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.cancelled():
                raise

    @property
    def pending_trackers(self) -> list[FileEditTracker]:
        return [x for x in self._result.trackers if x.active]

    def dispose(self) -> None:
        """释放全部保存事件订阅与通知订阅；未完成的构建任务会被取消"""
        self._disposed = True
        if self._load_task is not None and not self._load_task.done():
            self._load_task.cancel()
        self._dispose_trackers()
        self._subscriptions = dispose_all(self._subscriptions)
        self._on_experiment_enabled.dispose()

    def _dispose_trackers(self) -> None:
        for tracker in self._result.trackers:
            tracker.dispose()

    # ========================================
    # 通知
    # ========================================
    def on_experiment_enabled(self, listener: Listener) -> Subscription:
        """订阅“实验进入 Run 且动作为 Prompt”的通知，每个实验最多通知一次"""
        subscription = self._on_experiment_enabled.event(listener)
        self._subscriptions.append(subscription)
        return subscription

    async def _fire_enabled(self, experiment: Experiment) -> None:
        key = experiment.id.lower()
        if key in self._notified:
            return
        self._notified.add(key)
        logger.info(f"实验已启用: {experiment.id}")
        await self._on_experiment_enabled.fire(experiment)

    # ========================================
    # 查询
    # ========================================
    async def get_experiment_by_id(self, experiment_id: str) -> Optional[Experiment]:
        await self._ready()
        wanted = experiment_id.lower()
        for experiment in self._result.experiments:
            if experiment.id.lower() == wanted:
                return experiment
        return None

    async def get_eligible_experiments_by_type(
        self, action_type: ExperimentActionType
    ) -> list[Experiment]:
        await self._ready()
        running = [x for x in self._result.experiments if x.enabled and x.state is ExperimentState.RUN]
        if action_type is ExperimentActionType.CUSTOM:
            return [x for x in running if x.action is None or x.action.type is action_type]
        return [x for x in running if x.action is not None and x.action.type is action_type]

    async def get_curated_extensions_list(self, curated_extensions_key: str) -> list[str]:
        await self._ready()
        for experiment in self._result.experiments:
            if not experiment.enabled or experiment.state is not ExperimentState.RUN:
                continue
            command = self._result.curated_mapping.get(experiment.id.lower())
            if command is not None and command.curated_extensions_key == curated_extensions_key:
                return list(command.curated_extensions_list or [])
        return []

    async def mark_as_completed(self, experiment_id: str) -> None:
        """与内存列表无关，任何时候可调用，幂等"""
        await self._repo.mark_completed(experiment_id)
        logger.info(f"实验已标记完成: {experiment_id}")
