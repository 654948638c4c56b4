"""
测试公共夹具

- 临时 SQLite 数据源（表结构与默认映射一致）
- 固定时钟
- 计数连接器（统计数据源被打开的次数）
"""

import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from change_aggregator.config import AppConfig, SourceConfig
from change_aggregator.database import SqliteConnector
from change_aggregator.models import UserRecord, format_timestamp
from change_aggregator.service import build_service
from change_aggregator.users import StaticUserDirectory

NOW = datetime(2026, 10, 19, 12, 0, 0)

SOURCE_SCHEMA = """
    CREATE TABLE Report (Id TEXT, Name TEXT, ChangeName TEXT, ChangeDate TEXT);
    CREATE TABLE CalculationMethod (Id TEXT, Name TEXT, ChangeName TEXT, ChangeDate TEXT);
    CREATE TABLE Tree (Id TEXT, Name TEXT, ChangeName TEXT, ChangeDate TEXT);
    CREATE TABLE TreeObject (Id TEXT, Name TEXT, ChangeName TEXT, ChangeDate TEXT);
    CREATE TABLE TimeSeriesView (Id TEXT, Name TEXT, ChangeName TEXT, ChangeDate TEXT);
    CREATE TABLE TimeSeries (
        TsNr INTEGER PRIMARY KEY,
        Id TEXT,
        Name TEXT,
        ChangeName TEXT,
        ChangeDate TEXT
    );
    CREATE TABLE TimeSeriesData (
        TsNr INTEGER NOT NULL,
        PeriodNr INTEGER NOT NULL,
        ChangeName TEXT,
        ChangeDate TEXT
    );
"""


class SourceDb:
    """测试用数据源数据库"""

    def __init__(self, source_id: str, path: Path):
        self.source_id = source_id
        self.path = path
        self._next_ts_nr = 1
        with self.connect() as conn:
            conn.executescript(SOURCE_SCHEMA)

    @contextmanager
    def connect(self):
        conn = sqlite3.connect(str(self.path))
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def execute(self, sql: str):
        with self.connect() as conn:
            conn.execute(sql)
        return self

    def add(self, table: str, object_id: str, name: str, user: str, changed_at: datetime):
        """添加一条普通对象变更"""
        with self.connect() as conn:
            conn.execute(
                f'INSERT INTO "{table}" (Id, Name, ChangeName, ChangeDate) VALUES (?, ?, ?, ?)',
                (object_id, name, user, format_timestamp(changed_at)),
            )
        return self

    def add_series(self, object_id: str, name: str, user: str, changed_at: datetime) -> int:
        """添加时间序列，返回 TsNr"""
        ts_nr = self._next_ts_nr
        self._next_ts_nr += 1
        with self.connect() as conn:
            conn.execute(
                "INSERT INTO TimeSeries (TsNr, Id, Name, ChangeName, ChangeDate) VALUES (?, ?, ?, ?, ?)",
                (ts_nr, object_id, name, user, format_timestamp(changed_at)),
            )
        return ts_nr

    def add_value(self, ts_nr: int, period: int, user: str, changed_at: datetime):
        """添加一条数值变更"""
        with self.connect() as conn:
            conn.execute(
                "INSERT INTO TimeSeriesData (TsNr, PeriodNr, ChangeName, ChangeDate) VALUES (?, ?, ?, ?)",
                (ts_nr, period, user, format_timestamp(changed_at)),
            )
        return self

    def config(self, **kwargs) -> SourceConfig:
        return SourceConfig(id=self.source_id, path=str(self.path), **kwargs)


class FixedClock:
    """可手动推进的时钟"""

    def __init__(self, now: datetime = NOW):
        self.now = now
        self.calls = 0

    def __call__(self) -> datetime:
        self.calls += 1
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class CountingConnector(SqliteConnector):
    """记录每次打开的数据源，可选地模拟慢连接"""

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.opened = []
        self._lock = threading.Lock()

    @contextmanager
    def open(self, source):
        with self._lock:
            self.opened.append(source.id)
        if self.delay:
            time.sleep(self.delay)
        with super().open(source) as connection:
            yield connection


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def make_source(tmp_path):
    """创建测试数据源：make_source("ESz") -> SourceDb"""
    def _make(source_id: str) -> SourceDb:
        return SourceDb(source_id, tmp_path / f"{source_id}.db")

    return _make


@pytest.fixture
def directory():
    return StaticUserDirectory([
        UserRecord(id="jdoe", name="Jane Doe"),
        UserRecord(id="mmax", name="Max Mustermann"),
    ])


@pytest.fixture
def connector():
    return CountingConnector()


@pytest.fixture
def make_service(clock, directory, connector):
    """按数据源列表组装服务（使用固定时钟和计数连接器）"""
    def _make(sources, connector_override=None, **config_kwargs):
        config = AppConfig(sources=sources, **config_kwargs)
        return build_service(
            config,
            connector=connector_override or connector,
            directory=directory,
            clock=clock,
        )

    return _make
