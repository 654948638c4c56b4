"""
单数据源变更读取

对一个已打开的数据源执行某一类对象的变更查询，把每一行转换为 ChangeRecord。
"""

import logging
from datetime import datetime
from typing import Any, List

from .config import SchemaConfig, ValuesMapping
from .database import QueryError, SourceConnection
from .models import ChangeRecord, ObjectType, parse_timestamp
from .users import UserNameResolver

logger = logging.getLogger(__name__)


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def value_type_label(mapping: ValuesMapping, period: Any) -> str:
    """数值变更的类型文本：期间编号加年份偏移，如 17 -> VALUE 2017"""
    return f"{mapping.label} {int(period) + mapping.year_offset}"


class SourceReader:
    """按对象类型查询数据源变更"""

    def __init__(self, resolver: UserNameResolver):
        self.resolver = resolver

    def query_changed_since(
        self,
        connection: SourceConnection,
        source_id: str,
        schema: SchemaConfig,
        object_type: ObjectType,
        cutoff: datetime
    ) -> List[ChangeRecord]:
        """
        查询 cutoff 之后发生变更的对象

        Args:
            connection: 已打开的数据源连接
            source_id: 数据源标识（输出为 database 字段）
            schema: 该数据源使用的表结构版本
            object_type: 对象类型
            cutoff: 本次汇总的统一截止时间

        Returns:
            变更记录列表（保持查询返回的顺序）

        Raises:
            QueryError: 查询失败或返回行无法解析
        """
        if object_type == ObjectType.VALUE:
            return self.query_values_changed_since(connection, source_id, schema.values, cutoff)

        mapping = schema.mapping_for(object_type)
        if mapping is None:
            raise QueryError(f"No table mapping for {object_type.value} in source {source_id}")

        rows = connection.query_changed(mapping, cutoff)
        records = []
        for name, object_id, user_id, changed_at in rows:
            records.append(self._to_record(
                source_id, object_type, mapping.label, name, object_id, user_id, changed_at
            ))

        logger.debug(f"{source_id}/{object_type.value}: {len(records)} changes")
        return records

    def query_values_changed_since(
        self,
        connection: SourceConnection,
        source_id: str,
        mapping: ValuesMapping,
        cutoff: datetime
    ) -> List[ChangeRecord]:
        """查询数值变更（名称和 ID 取自所属时间序列）"""
        rows = connection.query_values(mapping, cutoff)
        records = []
        for period, series_id, series_name, user_id, changed_at in rows:
            try:
                label = value_type_label(mapping, period)
            except (TypeError, ValueError) as e:
                raise QueryError(f"{source_id}: invalid period number {period!r}") from e
            records.append(self._to_record(
                source_id, ObjectType.VALUE, label, series_name, series_id, user_id, changed_at
            ))

        logger.debug(f"{source_id}/{ObjectType.VALUE.value}: {len(records)} changes")
        return records

    def _to_record(
        self,
        source_id: str,
        object_type: ObjectType,
        label: str,
        name: Any,
        object_id: Any,
        user_id: Any,
        changed_at: Any
    ) -> ChangeRecord:
        user_id = _text(user_id)
        try:
            timestamp = parse_timestamp(changed_at)
        except (TypeError, ValueError) as e:
            raise QueryError(f"{source_id}: invalid change date {changed_at!r}") from e

        return ChangeRecord(
            source=source_id,
            object_type=object_type,
            type_label=label,
            name=_text(name),
            id=_text(object_id),
            user_id=user_id,
            user_name=self.resolver.resolve(user_id),
            changed_at=timestamp,
        )
