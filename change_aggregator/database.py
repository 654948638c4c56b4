"""
数据源访问层

封装对各数据源的连接和“变更查询”，上层只关心：
- open(source): 打开连接（上下文管理器，退出时保证关闭）
- query_changed(mapping, cutoff): 查询某类对象在 cutoff 之后的变更行
- query_values(mapping, cutoff): 查询数值变更行

cutoff 始终作为绑定参数传入，不拼接到 SQL 文本中。
时间比较经 julianday() 换算后进行，"YYYY-MM-DD HH:MM:SS" 与 "YYYY-MM-DDTHH:MM:SS" 两种存储形式都能正确比较；
无法识别的时间值换算为 NULL，不会被选中。
"""

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, List, Sequence, Tuple

from .config import SourceConfig, TableMapping, ValuesMapping
from .models import format_timestamp

logger = logging.getLogger(__name__)

Row = Tuple[Any, ...]


class SourceUnavailableError(Exception):
    """数据源无法连接（文件不存在、认证失败等）"""


class QueryError(Exception):
    """查询失败（表不存在、列不匹配、返回值无法解析等）"""


def build_changed_query(mapping: TableMapping) -> str:
    """
    构建对象变更查询

    返回列顺序：name, id, user_id, changed_at
    """
    return (
        f'SELECT "{mapping.name_column}", "{mapping.id_column}", '
        f'"{mapping.user_column}", "{mapping.date_column}" '
        f'FROM "{mapping.table}" '
        f'WHERE julianday("{mapping.date_column}") > julianday(?)'
    )


def build_values_query(mapping: ValuesMapping) -> str:
    """
    构建数值变更查询（数值表 JOIN 时间序列表）

    返回列顺序：period, id, name, user_id, changed_at
    """
    return (
        f'SELECT d."{mapping.period_column}", p."{mapping.id_column}", p."{mapping.name_column}", '
        f'd."{mapping.user_column}", d."{mapping.date_column}" '
        f'FROM "{mapping.table}" d '
        f'INNER JOIN "{mapping.parent_table}" p ON d."{mapping.join_column}" = p."{mapping.join_column}" '
        f'WHERE julianday(d."{mapping.date_column}") > julianday(?)'
    )


class SourceConnection:
    """已打开的数据源连接"""

    def __init__(self, source_id: str):
        self.source_id = source_id

    def query_changed(self, mapping: TableMapping, cutoff: datetime) -> List[Row]:
        raise NotImplementedError

    def query_values(self, mapping: ValuesMapping, cutoff: datetime) -> List[Row]:
        raise NotImplementedError


class SourceConnector:
    """数据源连接工厂"""

    def open(self, source: SourceConfig):
        """
        打开数据源连接（上下文管理器）

        Raises:
            SourceUnavailableError: 无法连接
        """
        raise NotImplementedError


class SqliteSourceConnection(SourceConnection):
    """基于 sqlite3 的数据源连接"""

    def __init__(self, source_id: str, conn: sqlite3.Connection):
        super().__init__(source_id)
        self._conn = conn

    def _execute(self, sql: str, params: Sequence[Any]) -> List[Row]:
        try:
            cursor = self._conn.execute(sql, params)
            return [tuple(row) for row in cursor.fetchall()]
        except sqlite3.Error as e:
            raise QueryError(f"{self.source_id}: {e}") from e

    def query_changed(self, mapping: TableMapping, cutoff: datetime) -> List[Row]:
        return self._execute(build_changed_query(mapping), (format_timestamp(cutoff),))

    def query_values(self, mapping: ValuesMapping, cutoff: datetime) -> List[Row]:
        return self._execute(build_values_query(mapping), (format_timestamp(cutoff),))


class SqliteConnector(SourceConnector):
    """
    SQLite 数据源连接器

    以只读方式打开数据库文件，文件不存在视为数据源不可用。
    """

    @contextmanager
    def open(self, source: SourceConfig) -> Iterator[SqliteSourceConnection]:
        uri = Path(source.path).resolve().as_uri() + "?mode=ro"
        try:
            conn = sqlite3.connect(uri, uri=True, timeout=source.timeout)
        except sqlite3.Error as e:
            raise SourceUnavailableError(f"Cannot open source {source.id}: {e}") from e

        logger.debug(f"Opened source {source.id} ({source.path})")
        try:
            yield SqliteSourceConnection(source.id, conn)
        finally:
            conn.close()
            logger.debug(f"Closed source {source.id}")
