"""
文件编辑条件跟踪

实验带 `fileEdits.minEditCount` 且计数未达标时进入 Evaluating，
由 FileEditTracker 订阅保存事件，每个自然日最多计 1 次，达标后做概率抽样并落定 Run/NoRun。
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Awaitable, Callable, Optional

from loguru import logger

from experiment_gate.core.events import Subscription
from experiment_gate.experiments.collaborators import (
    SaveEvent,
    SaveEventSource,
    StateChange,
    WorkspaceTagProvider,
)
from experiment_gate.experiments.conditions import check_probability, check_workspace_tags, match_glob
from experiment_gate.experiments.models import Experiment, ExperimentState, RawFileEdits
from experiment_gate.experiments.repository import ExperimentStateRepository

DecidedCallback = Callable[[Experiment], Awaitable[None]]


def today_string() -> str:
    """进程本地日历日，例如 "Mon Oct 19 2026" """
    return datetime.now().strftime("%a %b %d %Y")


class FileEditTracker:
    def __init__(
        self,
        experiment: Experiment,
        file_edits: RawFileEdits,
        *,
        probability: Optional[float],
        repository: ExperimentStateRepository,
        workspace_tags: WorkspaceTagProvider,
        on_decided: DecidedCallback,
        roll: Callable[[], float],
        today: Callable[[], str] = today_string,
    ):
        if file_edits.min_edit_count is None:
            raise ValueError("fileEdits.minEditCount 未配置")
        self._experiment = experiment
        self._file_edits = file_edits
        self._min_edit_count = file_edits.min_edit_count
        self._probability = probability
        self._repo = repository
        self._workspace_tags = workspace_tags
        self._on_decided = on_decided
        self._roll = roll
        self._today = today
        self._subscription: Optional[Subscription] = None
        # 并发到达的多批保存事件逐批处理
        self._lock = asyncio.Lock()
        self._decided = False

    @property
    def experiment(self) -> Experiment:
        return self._experiment

    @property
    def active(self) -> bool:
        return (
            not self._decided
            and self._subscription is not None
            and not self._subscription.disposed
        )

    def start(self, source: SaveEventSource) -> Subscription:
        if self._subscription is None:
            self._subscription = source.on_did_save(self._on_did_save)
        return self._subscription

    def dispose(self) -> None:
        if self._subscription is not None:
            self._subscription.dispose()

    def matches(self, event: SaveEvent) -> bool:
        """路径 glob 与工作区标签过滤"""
        pattern = self._file_edits.file_path_pattern
        if isinstance(pattern, str) and not match_glob(pattern, event.path):
            return False
        return check_workspace_tags(
            self._file_edits.workspace_includes,
            self._file_edits.workspace_excludes,
            self._workspace_tags.get_tags(),
        )

    async def _on_did_save(self, events: list[SaveEvent]) -> None:
        async with self._lock:
            if not self.active:
                return
            decided = await self._count_saves(events)
        if decided is not None:
            await self._on_decided(self._experiment)

    async def _count_saves(self, events: list[SaveEvent]) -> Optional[ExperimentState]:
        """计数并在达标时落定；返回判定结果，未达标返回 None"""
        experiment_id = self._experiment.id
        # 每批事件都以最新持久化状态为准（可能已被 mark_as_completed 等改写）
        state = await self._repo.get_state(experiment_id)
        if state.state is not ExperimentState.EVALUATING:
            logger.debug(f"实验 {experiment_id} 已不在评估中，停止跟踪保存事件")
            self.dispose()
            return None

        today = self._today()
        for event in events:
            if event.kind is not StateChange.SAVED:
                continue
            if state.last_edited_date == today:
                continue
            if (state.edit_count or 0) >= self._min_edit_count:
                continue
            if not self.matches(event):
                continue

            state.edit_count = (state.edit_count or 0) + 1
            state.last_edited_date = today
            await self._repo.save_state(experiment_id, state)
            logger.debug(f"实验 {experiment_id} 编辑计数 {state.edit_count}/{self._min_edit_count:g}")

        if (state.edit_count or 0) < self._min_edit_count:
            return None

        decided = (
            ExperimentState.RUN
            if check_probability(self._probability, self._roll)
            else ExperimentState.NO_RUN
        )
        # 落盘前先结束跟踪，保证只判定一次
        self._decided = True
        self.dispose()
        state.state = decided
        self._experiment.state = decided
        await self._repo.save_state(experiment_id, state)
        logger.info(f"实验 {experiment_id} 编辑条件达标，判定结果: {decided.name}")
        return decided
