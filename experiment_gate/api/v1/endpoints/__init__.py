"""
API 端点模块

包含所有 v1 版本的 API 端点定义
"""

from experiment_gate.api.v1.endpoints import experiments

__all__ = ["experiments"]
