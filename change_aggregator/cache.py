"""
结果缓存

只保存最近一次生成的结果，按 (window_hours, include_values) 和生存时间判断是否可复用。
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from .models import CacheEntry

logger = logging.getLogger(__name__)


class ResultCache:
    """单条目结果缓存（每次重新生成时整体替换）"""

    def __init__(self, ttl: timedelta = timedelta(minutes=10)):
        self.ttl = ttl
        self._entry: Optional[CacheEntry] = None

    @property
    def entry(self) -> Optional[CacheEntry]:
        return self._entry

    def is_valid_for(self, window_hours: int, include_values: bool, now: datetime) -> bool:
        """
        判断缓存是否可复用

        条件：存在结果、未超过生存时间、两个请求参数都一致。
        """
        return self.lookup(window_hours, include_values, now) is not None

    def lookup(self, window_hours: int, include_values: bool, now: datetime) -> Optional[str]:
        """返回可复用的序列化结果，不可复用时返回 None"""
        # 先取出引用，避免判断和读取之间条目被替换
        entry = self._entry
        if entry is None:
            return None
        if (
            now - entry.generated_at <= self.ttl
            and entry.window_hours == window_hours
            and entry.include_values == include_values
        ):
            return entry.serialized_result
        return None

    def store(self, entry: CacheEntry):
        self._entry = entry

    def clear(self):
        self._entry = None
