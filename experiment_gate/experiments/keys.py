from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ExperimentKeys:
    """
    实验模块持久化 Key 集合

    - 每个实验一条状态：`experiments.<id>`（id 统一小写）
    - 全部已知实验 id：`allExperiments`
    """

    state_prefix: str = "experiments."
    all_experiments: str = "allExperiments"

    def state(self, experiment_id: str) -> str:
        return f"{self.state_prefix}{experiment_id.lower()}"
