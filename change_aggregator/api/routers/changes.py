"""
变更列表 API

GET /changes/?hours=24&values=false&callback=fn
返回 fn([...])；不带 callback 时返回纯 JSON。
"""

import logging
import re
import time
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from ...service import ChangeAggregationService
from ..dependencies import get_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["changes"])

# JSONP 回调名：JS 标识符，可带点号路径（如 app.onChanges）
CALLBACK_PATTERN = re.compile(r"^[A-Za-z_$][\w$]*(\.[A-Za-z_$][\w$]*)*$")

JSONP_MEDIA_TYPE = "application/javascript; charset=utf-8"


@router.get("/changes/")
def get_changes(
    hours: Optional[str] = Query(None, description="回溯小时数，默认 24"),
    values: Optional[str] = Query(None, description="是否包含数值变更：true/false"),
    callback: Optional[str] = Query(None, description="JSONP 回调函数名"),
    service: ChangeAggregationService = Depends(get_service)
):
    """
    获取最近变更列表

    同步处理函数：FastAPI 在线程池中执行，汇总期间阻塞的是工作线程而不是事件循环。
    """
    started = time.perf_counter()

    if callback and not CALLBACK_PATTERN.match(callback):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid callback name"
        )

    payload = service.generate(hours, values)

    if callback:
        body = f"{callback}({payload})"
        media_type = JSONP_MEDIA_TYPE
    else:
        body = payload
        media_type = "application/json"

    content = body.encode("utf-8")
    logger.info(
        f"Response sent ({len(content)} bytes, {time.perf_counter() - started:.2f} seconds)"
    )
    return Response(content=content, media_type=media_type)
