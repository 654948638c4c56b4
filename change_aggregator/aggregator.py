"""
多数据源变更汇总

按配置顺序逐个读取数据源：
- 每个数据源打开一次连接，按固定顺序执行各类型查询，结束后关闭连接
- 单个数据源失败只记录日志，不影响其他数据源
- 单个类型查询失败只跳过该类型
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List

from .config import SchemaConfig, SourceConfig
from .database import QueryError, SourceConnection, SourceConnector, SourceUnavailableError
from .models import ChangeRecord, ObjectType, SourceResult
from .reader import SourceReader

logger = logging.getLogger(__name__)


def compute_cutoff(now: datetime, window_hours: int) -> datetime:
    """
    截止时间 = now - window_hours

    超出 datetime 可表示范围时取边界值：窗口过大时包含全部变更，过小（负数）时不包含任何变更。
    """
    try:
        return now - timedelta(hours=window_hours)
    except OverflowError:
        return datetime.min if window_hours > 0 else datetime.max


class Aggregator:
    """变更汇总器"""

    def __init__(
        self,
        sources: List[SourceConfig],
        schemas: Dict[str, SchemaConfig],
        connector: SourceConnector,
        reader: SourceReader,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.sources = [s for s in sources if s.enabled]
        self.schemas = schemas
        self.connector = connector
        self.reader = reader
        self._clock = clock

    @property
    def source_ids(self) -> List[str]:
        return [s.id for s in self.sources]

    def collect_results(self, window_hours: int, include_values: bool) -> List[SourceResult]:
        """
        读取所有数据源

        Args:
            window_hours: 回溯小时数
            include_values: 是否包含数值变更

        Returns:
            每个数据源一个 SourceResult（与配置顺序一致）
        """
        # 截止时间每次汇总只计算一次，所有类型查询共用
        cutoff = compute_cutoff(self._clock(), window_hours)

        # 一次汇总内用户目录最多读取一次
        with self.reader.resolver.snapshot():
            results = [
                self._collect_source(source, cutoff, include_values)
                for source in self.sources
            ]

        if results and not any(r.ok for r in results):
            logger.error(f"All {len(results)} sources failed, change list is empty")

        return results

    def collect_changes(self, window_hours: int, include_values: bool) -> List[ChangeRecord]:
        """读取所有数据源并合并为一个变更列表（失败的数据源贡献 0 条）"""
        return [
            record
            for result in self.collect_results(window_hours, include_values)
            if result.ok
            for record in result.records
        ]

    def _collect_source(self, source: SourceConfig, cutoff: datetime, include_values: bool) -> SourceResult:
        """读取单个数据源"""
        schema = self.schemas[source.schema_name]
        try:
            with self.connector.open(source) as connection:
                records: List[ChangeRecord] = []
                for object_type in schema.sequence(include_values):
                    records.extend(self._query_type(connection, source, schema, object_type, cutoff))
        except SourceUnavailableError as e:
            logger.warning(f"Source {source.id} unavailable: {e}")
            return SourceResult.failed(source.id, str(e))
        except Exception as e:
            logger.error(f"Failed to read source {source.id}: {e}", exc_info=True)
            return SourceResult.failed(source.id, str(e))

        logger.debug(f"Source {source.id}: {len(records)} changes")
        return SourceResult.succeeded(source.id, records)

    def _query_type(
        self,
        connection: SourceConnection,
        source: SourceConfig,
        schema: SchemaConfig,
        object_type: ObjectType,
        cutoff: datetime
    ) -> List[ChangeRecord]:
        """执行单个类型的查询，失败时返回空列表"""
        try:
            return self.reader.query_changed_since(connection, source.id, schema, object_type, cutoff)
        except QueryError as e:
            if object_type == ObjectType.VALUE:
                optional = schema.values.optional
            else:
                mapping = schema.mapping_for(object_type)
                optional = mapping is not None and mapping.optional

            # 部分数据源本来就没有的表，不作为警告
            if optional:
                logger.debug(f"Skipped {object_type.value} for source {source.id}: {e}")
            else:
                logger.warning(f"Query {object_type.value} failed for source {source.id}: {e}")
            return []
