"""
实验服务 API 端点

- 查询：按 id、按动作类型（仅返回已启用且 Run 的实验）、按精选列表 key
- 完成标记：消费方处理完实验后调用（幂等）
- 保存事件上报：驱动文件编辑条件的计数
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from loguru import logger

from experiment_gate.api.deps import get_experiment_service, get_save_event_source
from experiment_gate.experiments.collaborators import EmitterSaveEventSource, SaveEvent
from experiment_gate.experiments.models import ExperimentActionType
from experiment_gate.experiments.service import ExperimentService
from experiment_gate.schemas.experiment_schema import (
    CuratedListResponse,
    ExperimentOut,
    MessageResponse,
    SaveEventsRequest,
)

router = APIRouter()


@router.get("/eligible", response_model=list[ExperimentOut], summary="按动作类型获取生效实验")
async def get_eligible_experiments(
    type: ExperimentActionType = Query(ExperimentActionType.CUSTOM, description="Custom/Prompt/AddToRecommendations"),
    service: ExperimentService = Depends(get_experiment_service),
) -> list[ExperimentOut]:
    try:
        experiments = await service.get_eligible_experiments_by_type(type)
        return [ExperimentOut.from_experiment(x) for x in experiments]
    except Exception as exc:
        logger.error(f"获取生效实验失败: {exc}")
        raise HTTPException(status_code=500, detail=str(exc)) from exc


@router.get("/curated/{curated_key}", response_model=CuratedListResponse, summary="获取精选扩展列表")
async def get_curated_extensions_list(
    curated_key: str,
    service: ExperimentService = Depends(get_experiment_service),
) -> CuratedListResponse:
    try:
        extensions = await service.get_curated_extensions_list(curated_key)
        return CuratedListResponse(curated_key=curated_key, extensions=extensions)
    except Exception as exc:
        logger.error(f"获取精选扩展列表失败: {exc}")
        raise HTTPException(status_code=500, detail=str(exc)) from exc


# ========================================
# 保存事件上报
# ========================================
@router.post("/events/saved", response_model=MessageResponse, summary="上报文件保存事件")
async def report_save_events(
    request: SaveEventsRequest,
    source: EmitterSaveEventSource = Depends(get_save_event_source),
) -> MessageResponse:
    try:
        events = [SaveEvent(kind=x.kind, path=x.path) for x in request.events]
        await source.publish(events)
        return MessageResponse(message=f"已接收 {len(events)} 个事件", success=True)
    except Exception as exc:
        logger.error(f"保存事件处理失败: {exc}")
        raise HTTPException(status_code=500, detail=str(exc)) from exc


@router.get("/by-id/{experiment_id}", response_model=ExperimentOut, summary="按 id 获取实验")
async def get_experiment(
    experiment_id: str,
    service: ExperimentService = Depends(get_experiment_service),
) -> ExperimentOut:
    try:
        experiment = await service.get_experiment_by_id(experiment_id)
        if experiment is None:
            raise HTTPException(status_code=404, detail="experiment not found")
        return ExperimentOut.from_experiment(experiment)
    except HTTPException:
        raise
    except Exception as exc:
        logger.error(f"获取实验失败: {exc}")
        raise HTTPException(status_code=500, detail=str(exc)) from exc


@router.post("/by-id/{experiment_id}/complete", response_model=MessageResponse, summary="标记实验完成")
async def mark_experiment_completed(
    experiment_id: str,
    service: ExperimentService = Depends(get_experiment_service),
) -> MessageResponse:
    try:
        await service.mark_as_completed(experiment_id)
        return MessageResponse(message=f"{experiment_id} 已标记完成", success=True)
    except Exception as exc:
        logger.error(f"标记实验完成失败: {exc}")
        raise HTTPException(status_code=500, detail=str(exc)) from exc
