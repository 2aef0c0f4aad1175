"""
实验服务 API Schema

定义实验查询、完成标记与保存事件上报相关请求与响应模型。
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field

from experiment_gate.experiments.collaborators import StateChange
from experiment_gate.experiments.models import Experiment, ExperimentActionType, ExperimentState


class ExperimentActionOut(BaseModel):
    type: ExperimentActionType
    properties: dict[str, Any] = Field(default_factory=dict)


class ExperimentOut(BaseModel):
    """运行期实验"""

    id: str
    enabled: bool
    state: str = Field(..., description="Evaluating / NoRun / Run / Complete")
    action: Optional[ExperimentActionOut] = None

    @classmethod
    def from_experiment(cls, experiment: Experiment) -> "ExperimentOut":
        action = None
        if experiment.action is not None:
            action = ExperimentActionOut(
                type=experiment.action.type,
                properties=experiment.action.properties_dict(),
            )
        return cls(
            id=experiment.id,
            enabled=experiment.enabled,
            state=_STATE_NAMES[experiment.state],
            action=action,
        )


_STATE_NAMES = {
    ExperimentState.EVALUATING: "Evaluating",
    ExperimentState.NO_RUN: "NoRun",
    ExperimentState.RUN: "Run",
    ExperimentState.COMPLETE: "Complete",
}


class CuratedListResponse(BaseModel):
    curated_key: str
    extensions: list[str] = Field(default_factory=list)


class SaveEventIn(BaseModel):
    kind: StateChange = Field(StateChange.SAVED, description="dirty/saving/saved/reverted")
    path: str = Field(..., min_length=1, description="被保存文件的路径")


class SaveEventsRequest(BaseModel):
    events: list[SaveEventIn] = Field(default_factory=list)


class MessageResponse(BaseModel):
    message: str
    success: bool = True
