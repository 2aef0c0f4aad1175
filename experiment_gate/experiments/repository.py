from __future__ import annotations

import json
from typing import Iterable, Optional

from loguru import logger

from experiment_gate.experiments.collaborators import StorageScope, StorageService
from experiment_gate.experiments.keys import ExperimentKeys
from experiment_gate.experiments.models import ExperimentState, ExperimentStorageState, safe_parse


class ExperimentStateRepository:
    """实验状态的读写，以及已知实验 id 列表的维护（全部为全局作用域）"""

    def __init__(self, storage: StorageService, keys: ExperimentKeys | None = None):
        self._storage = storage
        self._keys = keys or ExperimentKeys()
        self._scope = StorageScope.GLOBAL

    @property
    def keys(self) -> ExperimentKeys:
        return self._keys

    async def get_state(self, experiment_id: str) -> ExperimentStorageState:
        """读取实验状态；不存在或格式错误时返回空状态"""
        state = await self.find_state(experiment_id)
        return state if state is not None else ExperimentStorageState()

    async def find_state(self, experiment_id: str) -> Optional[ExperimentStorageState]:
        """读取实验状态；不存在或格式错误时返回 None"""
        raw = await self._storage.get(self._keys.state(experiment_id), self._scope)
        data = safe_parse(raw, None)
        if not isinstance(data, dict):
            return None
        return ExperimentStorageState.from_dict(data)

    async def save_state(self, experiment_id: str, state: ExperimentStorageState) -> None:
        await self._storage.store(self._keys.state(experiment_id), state.to_json(), self._scope)

    async def remove_state(self, experiment_id: str) -> None:
        await self._storage.remove(self._keys.state(experiment_id), self._scope)

    async def mark_completed(self, experiment_id: str) -> ExperimentStorageState:
        state = await self.get_state(experiment_id)
        state.state = ExperimentState.COMPLETE
        await self.save_state(experiment_id, state)
        return state

    async def get_all_ids(self) -> list[str]:
        raw = await self._storage.get(self._keys.all_experiments, self._scope)
        data = safe_parse(raw, [])
        if not isinstance(data, list):
            return []
        return [x for x in data if isinstance(x, str) and x]

    async def save_all_ids(self, experiment_ids: Iterable[str]) -> None:
        await self._storage.store(
            self._keys.all_experiments, json.dumps(list(experiment_ids)), self._scope
        )

    async def prune(self, enabled_ids: Iterable[str]) -> list[str]:
        """
        清理已下线实验的状态，并写入最新的已知 id 列表

        Args:
            enabled_ids: 最新远程配置中启用的实验 id（小写）

        Returns:
            被清理的 id 列表
        """
        enabled = list(dict.fromkeys(enabled_ids))
        removed: list[str] = []
        for experiment_id in await self.get_all_ids():
            if experiment_id not in enabled:
                await self.remove_state(experiment_id)
                removed.append(experiment_id)
        await self.save_all_ids(enabled)
        if removed:
            logger.info(f"已清理下线实验状态: {removed}")
        return removed
