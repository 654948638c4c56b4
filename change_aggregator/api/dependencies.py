"""
依赖注入模块

提供 FastAPI 依赖项。
"""

from fastapi import Request

from ..service import ChangeAggregationService


async def get_service(request: Request) -> ChangeAggregationService:
    """获取应用持有的变更列表服务"""
    return request.app.state.service
