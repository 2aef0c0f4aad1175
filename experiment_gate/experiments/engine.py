"""
实验评估引擎

按固定顺序执行条件：启用 -> 无条件 -> 版本质量 -> 显示语言 -> 已安装扩展 -> 文件编辑/概率。
立即得出 Run/NoRun，或交给 FileEditTracker 进入 Evaluating。
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from loguru import logger

from experiment_gate.experiments.collaborators import (
    ExtensionQuery,
    SaveEventSource,
    TelemetryService,
    WorkspaceTagProvider,
)
from experiment_gate.experiments.conditions import (
    check_display_language,
    check_installed_extensions,
    check_probability,
    check_quality,
)
from experiment_gate.experiments.fetcher import ExperimentConfigFetcher
from experiment_gate.experiments.file_edits import FileEditTracker, today_string
from experiment_gate.experiments.models import (
    Experiment,
    ExperimentState,
    PromptAction,
    PromptCommand,
    RawExperiment,
    build_action,
    parse_raw_experiments,
)
from experiment_gate.experiments.repository import ExperimentStateRepository

EnabledCallback = Callable[[Experiment], Awaitable[None]]


@dataclass(frozen=True)
class EnvironmentInfo:
    app_quality: str = "stable"
    display_language: str = "en"


@dataclass
class BuildResult:
    experiments: list[Experiment] = field(default_factory=list)
    curated_mapping: dict[str, PromptCommand] = field(default_factory=dict)
    trackers: list[FileEditTracker] = field(default_factory=list)
    from_remote: bool = False


class ExperimentEngine:
    def __init__(
        self,
        *,
        repository: ExperimentStateRepository,
        fetcher: ExperimentConfigFetcher,
        extensions: ExtensionQuery,
        save_events: SaveEventSource,
        workspace_tags: WorkspaceTagProvider,
        telemetry: TelemetryService,
        environment: EnvironmentInfo | None = None,
        roll: Callable[[], float] = random.random,
        today: Callable[[], str] = today_string,
    ):
        self._repo = repository
        self._fetcher = fetcher
        self._extensions = extensions
        self._save_events = save_events
        self._workspace_tags = workspace_tags
        self._telemetry = telemetry
        self._env = environment or EnvironmentInfo()
        self._roll = roll
        self._today = today

    async def build(
        self,
        on_enabled: EnabledCallback,
        raw_experiments: Optional[list[Any]] = None,
        result: BuildResult | None = None,
    ) -> BuildResult:
        """
        构建实验列表

        Args:
            on_enabled: 实验进入 Run 且动作为 Prompt 时回调（含 FileEditTracker 异步落定的情况）
            raw_experiments: 直接给定原始配置（不拉取远程）；None 时走远程拉取
            result: 构建结果容器；构建过程中逐条追加，调用方可在回调里读到已处理的实验
        """
        if result is None:
            result = BuildResult()

        if raw_experiments is None:
            raw_experiments = await self._fetch_and_prune()
        if raw_experiments is None:
            result.experiments.extend(await self._rebuild_from_storage())
            logger.info(f"远程实验配置不可用，按持久化状态恢复 {len(result.experiments)} 个实验")
            return result

        result.from_remote = True
        seen: set[str] = set()
        for raw in parse_raw_experiments(raw_experiments):
            if raw.id.lower() in seen:
                logger.warning(f"重复的实验 id，已忽略: {raw.id}")
                continue
            seen.add(raw.id.lower())
            await self._process(raw, result, on_enabled)

        self._telemetry.public_log("experiments", [x.to_dict() for x in result.experiments])
        logger.info(
            f"实验列表构建完成: total={len(result.experiments)}, "
            f"evaluating={len(result.trackers)}"
        )
        return result

    async def _fetch_and_prune(self) -> Optional[list[Any]]:
        raw_experiments = await self._fetcher.fetch()
        if raw_experiments is None:
            return None

        enabled_ids = [
            str(x["id"]).lower()
            for x in raw_experiments
            if isinstance(x, dict) and x.get("enabled") and isinstance(x.get("id"), str)
        ]
        await self._repo.prune(enabled_ids)
        return raw_experiments

    async def _rebuild_from_storage(self) -> list[Experiment]:
        experiments: list[Experiment] = []
        for experiment_id in await self._repo.get_all_ids():
            state = await self._repo.find_state(experiment_id)
            if state is None:
                continue
            experiments.append(
                Experiment(
                    id=experiment_id,
                    enabled=bool(state.enabled),
                    state=state.state if state.state is not None else ExperimentState.NO_RUN,
                )
            )
        return experiments

    async def _process(
        self,
        raw: RawExperiment,
        result: BuildResult,
        on_enabled: EnabledCallback,
    ) -> None:
        experiment = Experiment(
            id=raw.id,
            enabled=bool(raw.enabled),
            state=ExperimentState.EVALUATING,
            action=build_action(raw.action),
        )
        if isinstance(experiment.action, PromptAction):
            command = experiment.action.curated_command()
            if command is not None:
                result.curated_mapping[experiment.id.lower()] = command
        result.experiments.append(experiment)

        state = await self._repo.get_state(raw.id)
        if state.enabled is None:
            state.enabled = experiment.enabled
        if state.state is None:
            state.state = ExperimentState.EVALUATING if experiment.enabled else ExperimentState.NO_RUN
        experiment.state = state.state

        if experiment.state is not ExperimentState.EVALUATING:
            await self._repo.save_state(raw.id, state)
            return

        decided, tracker = await self.evaluate(raw, experiment, on_enabled)
        state.state = experiment.state = decided
        if tracker is not None:
            # 文件编辑计数可能已有历史进度
            state.edit_count = state.edit_count or 0
        await self._repo.save_state(raw.id, state)
        if tracker is not None:
            # 订阅必须在 Evaluating 落盘之后
            tracker.start(self._save_events)
            result.trackers.append(tracker)

        if decided is ExperimentState.RUN and experiment.is_prompt:
            await on_enabled(experiment)

    async def evaluate(
        self,
        raw: RawExperiment,
        experiment: Experiment,
        on_enabled: EnabledCallback,
    ) -> tuple[ExperimentState, Optional[FileEditTracker]]:
        """
        判定实验状态

        Returns:
            (状态, FileEditTracker)；仅当状态为 Evaluating 时 tracker 非空（尚未订阅）
        """
        if not raw.enabled:
            return ExperimentState.NO_RUN, None

        condition = raw.condition
        if condition is None:
            return ExperimentState.RUN, None

        if not check_quality(condition.insiders_only, self._env.app_quality):
            return ExperimentState.NO_RUN, None

        if not check_display_language(condition.display_language, self._env.display_language):
            return ExperimentState.NO_RUN, None

        if condition.installed_extensions is not None:
            installed = await self._extensions.query_local()
            if not check_installed_extensions(
                condition.installed_extensions.includes,
                condition.installed_extensions.excludes,
                [x.id for x in installed],
            ):
                return ExperimentState.NO_RUN, None

        file_edits = condition.file_edits
        if file_edits is not None and file_edits.min_edit_count is not None:
            persisted = await self._repo.get_state(raw.id)
            if (persisted.edit_count or 0) < file_edits.min_edit_count:
                tracker = FileEditTracker(
                    experiment,
                    file_edits,
                    probability=condition.user_probability,
                    repository=self._repo,
                    workspace_tags=self._workspace_tags,
                    on_decided=self._notify_if_enabled(on_enabled),
                    roll=self._roll,
                    today=self._today,
                )
                return ExperimentState.EVALUATING, tracker

        if check_probability(condition.user_probability, self._roll):
            return ExperimentState.RUN, None
        return ExperimentState.NO_RUN, None

    @staticmethod
    def _notify_if_enabled(on_enabled: EnabledCallback):
        async def _callback(experiment: Experiment) -> None:
            if experiment.state is ExperimentState.RUN and experiment.is_prompt:
                await on_enabled(experiment)

        return _callback
