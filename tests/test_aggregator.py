"""
测试多数据源汇总

覆盖：
- 数据源顺序和类型顺序
- 单个数据源失败、单个类型失败的隔离
- 截止时间每次汇总只计算一次
- 出错时连接仍然关闭
"""

from contextlib import contextmanager
from datetime import datetime, timedelta

import pytest

from change_aggregator.aggregator import Aggregator, compute_cutoff
from change_aggregator.config import SchemaConfig, SourceConfig
from change_aggregator.database import SourceConnection, SourceConnector
from change_aggregator.reader import SourceReader
from change_aggregator.users import UserNameResolver

from .conftest import NOW


@pytest.fixture
def make_aggregator(clock, directory, connector):
    def _make(sources, schemas=None):
        return Aggregator(
            sources=sources,
            schemas=schemas or {"default": SchemaConfig()},
            connector=connector,
            reader=SourceReader(UserNameResolver(directory)),
            clock=clock,
        )

    return _make


def _populate(source):
    """每个类型各放一条变更（插入顺序与查询顺序相反）"""
    recent = NOW - timedelta(hours=1)
    source.add("TimeSeriesView", "V1", "View", "jdoe", recent)
    source.add_series("S1", "Series", "jdoe", recent)
    source.add("TreeObject", "D1", "Descriptor", "jdoe", recent)
    source.add("Tree", "T1", "Tree", "jdoe", recent)
    source.add("CalculationMethod", "C1", "Calc", "jdoe", recent)
    source.add("Report", "R1", "Report", "jdoe", recent)
    return source


class BrokenConnection(SourceConnection):
    def query_changed(self, mapping, cutoff):
        raise RuntimeError("driver crashed")


class TrackingConnector(SourceConnector):
    """记录连接是否关闭"""

    def __init__(self):
        self.closed = []

    @contextmanager
    def open(self, source):
        try:
            yield BrokenConnection(source.id)
        finally:
            self.closed.append(source.id)


class TestComputeCutoff:
    """截止时间计算测试"""

    def test_normal_window(self):
        assert compute_cutoff(NOW, 24) == NOW - timedelta(hours=24)

    def test_negative_window(self):
        assert compute_cutoff(NOW, -2) == NOW + timedelta(hours=2)

    def test_out_of_range(self):
        """测试：超出日期范围时取边界值"""
        assert compute_cutoff(NOW, 2147483647) == datetime.min
        assert compute_cutoff(NOW, -2147483648) == datetime.max


class TestCollectChanges:
    """汇总测试"""

    def test_ordering_across_sources_and_types(self, make_source, make_aggregator):
        """测试：先按数据源配置顺序，再按固定类型顺序"""
        esz = _populate(make_source("ESz"))
        beu = make_source("BEU").add("Report", "R9", "Other", "mmax", NOW - timedelta(minutes=5))

        aggregator = make_aggregator([esz.config(), beu.config()])
        records = aggregator.collect_changes(24, False)

        assert [(r.source, r.type_label) for r in records] == [
            ("ESz", "REPORT"),
            ("ESz", "CALCULATION"),
            ("ESz", "TREE"),
            ("ESz", "DESCRIPTOR"),
            ("ESz", "SERIES"),
            ("ESz", "VIEW"),
            ("BEU", "REPORT"),
        ]

    def test_partial_failure(self, tmp_path, make_source, make_aggregator):
        """测试：中间的数据源不可用，其他数据源正常输出"""
        esz = make_source("ESz").add("Report", "R1", "A", "jdoe", NOW - timedelta(hours=1))
        missing = SourceConfig(id="PoSo", path=str(tmp_path / "missing.db"))
        beu = make_source("BEU").add("Report", "R2", "B", "jdoe", NOW - timedelta(hours=1))

        aggregator = make_aggregator([esz.config(), missing, beu.config()])
        results = aggregator.collect_results(24, False)

        assert [(r.source, r.ok) for r in results] == [("ESz", True), ("PoSo", False), ("BEU", True)]
        assert results[1].error
        assert [r.id for r in aggregator.collect_changes(24, False)] == ["R1", "R2"]

    def test_all_sources_fail(self, tmp_path, make_aggregator):
        """测试：所有数据源不可用时结果为空"""
        sources = [
            SourceConfig(id="A", path=str(tmp_path / "a.db")),
            SourceConfig(id="B", path=str(tmp_path / "b.db")),
        ]

        assert make_aggregator(sources).collect_changes(24, True) == []

    def test_missing_table_skips_only_that_type(self, make_source, make_aggregator):
        """测试：表不存在只跳过该类型"""
        esz = _populate(make_source("ESz")).execute("DROP TABLE Tree")

        records = make_aggregator([esz.config()]).collect_changes(24, False)

        assert [r.type_label for r in records] == [
            "REPORT", "CALCULATION", "DESCRIPTOR", "SERIES", "VIEW"
        ]

    def test_optional_table_missing(self, make_source, make_aggregator):
        """测试：可选类型（CRF）的表不存在时静默跳过"""
        esz = make_source("ESz").add("Report", "R1", "A", "jdoe", NOW - timedelta(hours=1))
        schema = SchemaConfig(tables=[
            {"object_type": "Report", "table": "Report", "label": "REPORT"},
            {"object_type": "CrfVariable", "table": "CrfVariable", "label": "CRF", "optional": True},
        ])

        results = make_aggregator([esz.config()], {"default": schema}).collect_results(24, False)

        assert results[0].ok
        assert [r.type_label for r in results[0].records] == ["REPORT"]

    def test_values_only_when_requested(self, make_source, make_aggregator):
        """测试：仅在请求时查询数值变更，且排在最后"""
        esz = make_source("ESz")
        ts_nr = esz.add_series("S1", "Series", "jdoe", NOW - timedelta(hours=1))
        esz.add_value(ts_nr, 17, "jdoe", NOW - timedelta(hours=1))
        aggregator = make_aggregator([esz.config()])

        assert [r.type_label for r in aggregator.collect_changes(24, False)] == ["SERIES"]
        assert [r.type_label for r in aggregator.collect_changes(24, True)] == ["SERIES", "VALUE 2017"]

    def test_window_hours(self, make_source, make_aggregator):
        """测试：回溯窗口"""
        esz = make_source("ESz")
        esz.add("Report", "R1", "Recent", "jdoe", NOW - timedelta(minutes=30))
        esz.add("Report", "R2", "Older", "jdoe", NOW - timedelta(hours=5))
        aggregator = make_aggregator([esz.config()])

        assert [r.id for r in aggregator.collect_changes(1, False)] == ["R1"]
        assert [r.id for r in aggregator.collect_changes(24, False)] == ["R1", "R2"]

    def test_clock_read_once_per_run(self, clock, make_source, make_aggregator):
        """测试：一次汇总只读取一次当前时间"""
        sources = [make_source("ESz").config(), make_source("BEU").config()]

        make_aggregator(sources).collect_results(24, True)

        assert clock.calls == 1

    def test_disabled_source_skipped(self, make_source, make_aggregator, connector):
        esz = make_source("ESz")
        beu = make_source("BEU")

        aggregator = make_aggregator([esz.config(), beu.config(enabled=False)])
        aggregator.collect_results(24, False)

        assert aggregator.source_ids == ["ESz"]
        assert connector.opened == ["ESz"]

    def test_connection_closed_on_unexpected_error(self, clock, directory):
        """测试：查询出现意外异常时，数据源记为失败且连接关闭"""
        connector = TrackingConnector()
        aggregator = Aggregator(
            sources=[SourceConfig(id="ESz", path="esz.db"), SourceConfig(id="BEU", path="beu.db")],
            schemas={"default": SchemaConfig()},
            connector=connector,
            reader=SourceReader(UserNameResolver(directory)),
            clock=clock,
        )

        results = aggregator.collect_results(24, False)

        assert [r.ok for r in results] == [False, False]
        assert "driver crashed" in results[0].error
        assert connector.closed == ["ESz", "BEU"]
