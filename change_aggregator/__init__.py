"""
Change Aggregator - 多数据库变更汇总服务

负责：
- 按需扫描所有配置的数据源，找出最近 N 小时内修改过的对象
- 统一转换为变更记录并序列化为 JSON 数组
- 按请求参数缓存结果（10 分钟有效）
- 通过 HTTP（JSONP）对外提供变更列表
"""

__version__ = "1.0.0"
__author__ = "AI-B"
