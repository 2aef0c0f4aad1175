# 路由汇总
from fastapi import APIRouter

from experiment_gate.api.v1.endpoints import experiments

api_router = APIRouter()

# 挂载实验模块 (访问地址: /api/v1/experiments/...)
api_router.include_router(experiments.router, prefix="/experiments", tags=["实验模块"])
