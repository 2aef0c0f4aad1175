# 依赖注入（应用启动时装配实验服务与保存事件源）
from __future__ import annotations

from typing import Optional

from fastapi import HTTPException

from experiment_gate.experiments.collaborators import EmitterSaveEventSource
from experiment_gate.experiments.service import ExperimentService


class ServiceContainer:
    def __init__(self) -> None:
        self.experiment_service: Optional[ExperimentService] = None
        self.save_events: Optional[EmitterSaveEventSource] = None


container = ServiceContainer()


def get_experiment_service() -> ExperimentService:
    if container.experiment_service is None:
        raise HTTPException(status_code=503, detail="实验服务尚未初始化")
    return container.experiment_service


def get_save_event_source() -> EmitterSaveEventSource:
    if container.save_events is None:
        raise HTTPException(status_code=503, detail="保存事件源尚未初始化")
    return container.save_events
