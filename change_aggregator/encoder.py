"""
变更列表 JSON 序列化

输出为紧凑的 JSON 数组，字段：database, type, name, id, user, datetime（均为字符串）。
没有变更时输出 "[]"。
"""

from typing import Iterable, List

from pydantic import TypeAdapter

from .models import ChangeRecord, FeedItem

_feed_adapter = TypeAdapter(List[FeedItem])


def encode_changes(records: Iterable[ChangeRecord]) -> str:
    """把变更记录序列化为 JSON 数组文本"""
    items = [record.to_feed_item() for record in records]
    return _feed_adapter.dump_json(items).decode("utf-8")
