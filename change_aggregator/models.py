"""
数据模型定义

包括：
- 对象类型枚举及固定查询顺序
- 变更记录（一次汇总过程内的不可变记录）
- 对外输出的 JSON 项
- 单个数据源的查询结果、缓存条目
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# 对象类型
# =============================================================================

class ObjectType(str, Enum):
    """变更对象类型，每种类型对应数据源中的一个查询"""
    REPORT = "Report"
    CALCULATION_METHOD = "CalculationMethod"
    TREE = "Tree"
    TREE_OBJECT = "TreeObject"
    TIME_SERIES = "TimeSeries"
    TIME_SERIES_VIEW = "TimeSeriesView"
    CRF_VARIABLE = "CrfVariable"
    VALUE = "Value"


# 每个数据源内的固定查询顺序（VALUE 仅在请求包含数值时执行）
TYPE_SEQUENCE: List[ObjectType] = [
    ObjectType.REPORT,
    ObjectType.CALCULATION_METHOD,
    ObjectType.TREE,
    ObjectType.TREE_OBJECT,
    ObjectType.TIME_SERIES,
    ObjectType.TIME_SERIES_VIEW,
    ObjectType.CRF_VARIABLE,
    ObjectType.VALUE,
]


def format_timestamp(value: datetime) -> str:
    """时间戳的文本形式（YYYY-MM-DD HH:MM:SS），可被 fromisoformat 还原"""
    return value.isoformat(sep=" ")


def parse_timestamp(value) -> datetime:
    """
    将数据源返回的时间值转换为 datetime

    Raises:
        ValueError: 无法识别的时间值
    """
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        return datetime.fromisoformat(value.strip())
    raise ValueError(f"Unsupported timestamp value: {value!r}")


# =============================================================================
# Pydantic 模型
# =============================================================================

class UserRecord(BaseModel):
    """用户目录中的一个用户"""
    id: str
    name: str


class FeedItem(BaseModel):
    """变更列表中的单个 JSON 对象（所有字段均为字符串）"""
    database: str
    type: str
    name: str
    id: str
    user: str
    datetime: str


class ChangeRecord(BaseModel):
    """一条检测到的变更（仅存在于一次汇总过程中，不持久化）"""
    model_config = ConfigDict(frozen=True)

    source: str = Field(..., description="数据源标识")
    object_type: ObjectType
    type_label: str = Field(..., description="输出的类型文本，如 REPORT、VALUE 2017")
    name: str
    id: str
    user_id: str
    user_name: str
    changed_at: datetime

    def to_feed_item(self) -> FeedItem:
        return FeedItem(
            database=self.source,
            type=self.type_label,
            name=self.name,
            id=self.id,
            user=self.user_name,
            datetime=format_timestamp(self.changed_at),
        )


# =============================================================================
# 汇总过程的内部结构
# =============================================================================

@dataclass
class SourceResult:
    """单个数据源的查询结果：成功（记录列表）或失败（原因）"""
    source: str
    records: List[ChangeRecord] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def succeeded(cls, source: str, records: List[ChangeRecord]) -> "SourceResult":
        return cls(source=source, records=records)

    @classmethod
    def failed(cls, source: str, reason: str) -> "SourceResult":
        return cls(source=source, error=reason or "unknown error")


@dataclass(frozen=True)
class CacheEntry:
    """
    缓存条目

    serialized_result 始终是完整的 JSON 数组文本，
    对应 (window_hours, include_values) 在 generated_at 时刻的查询结果。
    每次重新生成时整体替换。
    """
    window_hours: int
    include_values: bool
    serialized_result: str
    generated_at: datetime
