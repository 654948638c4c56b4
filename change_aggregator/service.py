"""
变更列表服务

对外唯一入口：generate(hours, values)。

- 缓存命中直接返回
- 未命中时加锁，再次检查（可能刚被其他请求重新生成），仍无效才执行汇总
- 同一时刻最多一次汇总；汇总期间的其他请求等待，然后复用新结果
"""

import logging
import re
import threading
import time
from datetime import datetime, timedelta
from typing import Callable, Optional

from .aggregator import Aggregator
from .cache import ResultCache
from .config import AppConfig
from .database import SourceConnector, SqliteConnector
from .encoder import encode_changes
from .models import CacheEntry
from .reader import SourceReader
from .users import UserDirectory, UserNameResolver, build_directory

logger = logging.getLogger(__name__)

# 默认回溯小时数
DEFAULT_CHANGE_HOURS = 24

# 默认是否包含数值变更
DEFAULT_INCLUDE_VALUES = False

# 缓存生存时间（分钟）
CACHE_LIFETIME_MINUTES = 10

# 回溯小时数的取值范围（32 位有符号整数）
INT32_MIN = -2 ** 31
INT32_MAX = 2 ** 31 - 1

_HOURS_PATTERN = re.compile(r"[+-]?[0-9]+")


def decode_window_hours(value: Optional[str], default: int = DEFAULT_CHANGE_HOURS) -> int:
    """
    解析回溯小时数

    只接受可带符号的 ASCII 十进制整数（允许首尾空白），且必须在 32 位有符号整数范围内；
    其他输入使用默认值。
    """
    if not isinstance(value, str):
        return default
    text = value.strip()
    if not _HOURS_PATTERN.fullmatch(text):
        return default
    hours = int(text)
    if not INT32_MIN <= hours <= INT32_MAX:
        return default
    return hours


def decode_include_values(value: Optional[str], default: bool = DEFAULT_INCLUDE_VALUES) -> bool:
    """解析是否包含数值变更（true/false，不区分大小写），无法解析时使用默认值"""
    if value is None:
        return default
    try:
        text = value.strip().lower()
    except AttributeError:
        return default
    if text == "true":
        return True
    if text == "false":
        return False
    return default


class ChangeAggregationService:
    """变更列表生成服务（持有结果缓存和用户名缓存）"""

    def __init__(
        self,
        aggregator: Aggregator,
        cache: Optional[ResultCache] = None,
        resolver: Optional[UserNameResolver] = None,
        default_hours: int = DEFAULT_CHANGE_HOURS,
        default_include_values: bool = DEFAULT_INCLUDE_VALUES,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.aggregator = aggregator
        self.cache = cache or ResultCache(timedelta(minutes=CACHE_LIFETIME_MINUTES))
        self.resolver = resolver or aggregator.reader.resolver
        self.default_hours = default_hours
        self.default_include_values = default_include_values
        self._clock = clock
        self._lock = threading.Lock()
        self._generation_count = 0

    @property
    def generation_count(self) -> int:
        """已执行的汇总次数"""
        return self._generation_count

    @property
    def has_cached_result(self) -> bool:
        return self.cache.entry is not None

    def generate(
        self,
        window_hours_param: Optional[str] = None,
        include_values_param: Optional[str] = None
    ) -> str:
        """
        生成变更列表

        Args:
            window_hours_param: 回溯小时数（字符串，可为空）
            include_values_param: 是否包含数值变更（字符串，可为空）

        Returns:
            JSON 数组文本（无变更时为 "[]"）
        """
        window_hours = decode_window_hours(window_hours_param, self.default_hours)
        include_values = decode_include_values(include_values_param, self.default_include_values)

        cached = self.cache.lookup(window_hours, include_values, self._clock())
        if cached is not None:
            logger.debug(f"Cache hit (hours={window_hours}, values={include_values})")
            return cached

        with self._lock:
            # 等锁期间可能已有其他请求生成了结果
            cached = self.cache.lookup(window_hours, include_values, self._clock())
            if cached is not None:
                logger.debug(f"Cache filled while waiting (hours={window_hours}, values={include_values})")
                return cached

            return self._regenerate(window_hours, include_values)

    def _regenerate(self, window_hours: int, include_values: bool) -> str:
        """执行一次汇总并替换缓存（调用方持有锁）"""
        started = time.perf_counter()

        results = self.aggregator.collect_results(window_hours, include_values)
        records = [record for result in results if result.ok for record in result.records]
        serialized = encode_changes(records)

        self.cache.store(CacheEntry(
            window_hours=window_hours,
            include_values=include_values,
            serialized_result=serialized,
            generated_at=self._clock(),
        ))
        self._generation_count += 1

        failed = [result.source for result in results if not result.ok]
        elapsed = time.perf_counter() - started
        logger.info(
            f"Change list generated: hours={window_hours}, values={include_values}, "
            f"{len(records)} changes from {len(results) - len(failed)}/{len(results)} sources "
            f"in {elapsed:.2f}s"
        )
        if failed:
            logger.warning(f"Sources without result: {', '.join(failed)}")

        return serialized

    def invalidate(self):
        """丢弃缓存结果，下次请求重新汇总"""
        with self._lock:
            self.cache.clear()
        logger.info("Change list cache invalidated")

    def purge_user_names(self):
        """清空用户名缓存"""
        self.resolver.purge()


def build_service(
    config: AppConfig,
    connector: Optional[SourceConnector] = None,
    directory: Optional[UserDirectory] = None,
    clock: Callable[[], datetime] = datetime.now
) -> ChangeAggregationService:
    """
    根据配置组装服务

    Args:
        config: 应用配置
        connector: 数据源连接器，默认使用 SQLite
        directory: 用户目录，默认按配置创建
        clock: 当前时间来源（测试时可替换）
    """
    resolver = UserNameResolver(directory or build_directory(config.directory))
    aggregator = Aggregator(
        sources=config.sources,
        schemas=config.schemas,
        connector=connector or SqliteConnector(),
        reader=SourceReader(resolver),
        clock=clock,
    )
    return ChangeAggregationService(
        aggregator=aggregator,
        cache=ResultCache(timedelta(minutes=config.cache.ttl_minutes)),
        resolver=resolver,
        default_hours=config.changes.default_hours,
        default_include_values=config.changes.default_include_values,
        clock=clock,
    )
