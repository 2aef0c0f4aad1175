"""
实验模块

远程配置 + 本地持久化状态 + 文件保存事件 -> 每个实验稳定的 Run/NoRun 判定。
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from experiment_gate.experiments.engine import ExperimentEngine
    from experiment_gate.experiments.file_edits import FileEditTracker
    from experiment_gate.experiments.repository import ExperimentStateRepository
    from experiment_gate.experiments.service import ExperimentService

__all__ = [
    "ExperimentEngine",
    "ExperimentService",
    "ExperimentStateRepository",
    "FileEditTracker",
]
