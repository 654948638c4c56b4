"""
健康检查 API
"""

from fastapi import APIRouter, Depends

from ...service import ChangeAggregationService
from ..dependencies import get_service

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/health")
async def health(service: ChangeAggregationService = Depends(get_service)):
    """返回数据源数量和缓存状态（不触发汇总）"""
    return {
        "status": "ok",
        "sources": len(service.aggregator.sources),
        "cached": service.has_cached_result,
    }
