"""
FastAPI 应用配置

注册变更列表（JSONP）和健康检查路由。
"""

import logging
from typing import Optional

from fastapi import FastAPI

from ..config import get_config
from ..service import ChangeAggregationService, build_service
from .routers import changes, health

logger = logging.getLogger(__name__)


def create_app(service: Optional[ChangeAggregationService] = None) -> FastAPI:
    """
    创建 FastAPI 应用实例

    Args:
        service: 变更列表服务，不指定则按全局配置创建
    """
    if service is None:
        service = build_service(get_config())

    app = FastAPI(
        title="Change Aggregator",
        description="多数据库变更汇总服务",
        version="1.0.0",
        docs_url="/api/docs",
        redoc_url=None,
        openapi_url="/api/openapi.json"
    )
    app.state.service = service

    # 注册路由
    app.include_router(changes.router)
    app.include_router(health.router)

    logger.info(f"Serving changes from {len(service.aggregator.sources)} sources")

    return app
