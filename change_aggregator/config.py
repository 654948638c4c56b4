"""
配置加载模块

从 config.yaml 加载配置，支持 Pydantic 验证和环境变量覆盖。
数据源的表结构映射（schema）按版本命名配置，每个数据源引用其中一个版本。
"""

import re
from pathlib import Path
from typing import Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import ObjectType, TYPE_SEQUENCE, UserRecord

DEFAULT_SCHEMA = "default"

# 表名/列名只能是普通标识符（会被拼接进 SQL，因此必须校验）
_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _check_identifier(value: str) -> str:
    if not _IDENTIFIER.match(value):
        raise ValueError(f"Invalid SQL identifier: {value!r}")
    return value


class TableMapping(BaseModel):
    """单个对象类型对应的表和列"""
    object_type: ObjectType
    table: str
    label: str
    name_column: str = "Name"
    id_column: str = "Id"
    user_column: str = "ChangeName"
    date_column: str = "ChangeDate"
    # 部分数据源中不存在的表：查询失败只记 debug 日志
    optional: bool = False

    @field_validator("table", "name_column", "id_column", "user_column", "date_column")
    @classmethod
    def validate_identifier(cls, v: str) -> str:
        return _check_identifier(v)

    @field_validator("object_type")
    @classmethod
    def validate_object_type(cls, v: ObjectType) -> ObjectType:
        if v == ObjectType.VALUE:
            raise ValueError("Value changes are configured in the 'values' section")
        return v


class ValuesMapping(BaseModel):
    """数值变更查询：数值表按期间编号索引，名称和 ID 取自所属时间序列"""
    table: str = "TimeSeriesData"
    parent_table: str = "TimeSeries"
    join_column: str = "TsNr"
    period_column: str = "PeriodNr"
    name_column: str = "Name"
    id_column: str = "Id"
    user_column: str = "ChangeName"
    date_column: str = "ChangeDate"
    year_offset: int = 2000
    label: str = "VALUE"
    optional: bool = False

    @field_validator(
        "table", "parent_table", "join_column", "period_column",
        "name_column", "id_column", "user_column", "date_column",
    )
    @classmethod
    def validate_identifier(cls, v: str) -> str:
        return _check_identifier(v)


def default_tables() -> List[TableMapping]:
    """默认表结构映射"""
    return [
        TableMapping(object_type=ObjectType.REPORT, table="Report", label="REPORT"),
        TableMapping(object_type=ObjectType.CALCULATION_METHOD, table="CalculationMethod", label="CALCULATION"),
        TableMapping(object_type=ObjectType.TREE, table="Tree", label="TREE"),
        TableMapping(object_type=ObjectType.TREE_OBJECT, table="TreeObject", label="DESCRIPTOR"),
        TableMapping(object_type=ObjectType.TIME_SERIES, table="TimeSeries", label="SERIES"),
        TableMapping(object_type=ObjectType.TIME_SERIES_VIEW, table="TimeSeriesView", label="VIEW"),
    ]


class SchemaConfig(BaseModel):
    """一个版本的数据源表结构"""
    tables: List[TableMapping] = Field(default_factory=default_tables)
    values: ValuesMapping = Field(default_factory=ValuesMapping)

    @field_validator("tables")
    @classmethod
    def order_tables(cls, v: List[TableMapping]) -> List[TableMapping]:
        seen = set()
        for mapping in v:
            if mapping.object_type in seen:
                raise ValueError(f"Duplicate mapping for {mapping.object_type.value}")
            seen.add(mapping.object_type)
        # 查询顺序固定，与配置书写顺序无关
        return sorted(v, key=lambda m: TYPE_SEQUENCE.index(m.object_type))

    def mapping_for(self, object_type: ObjectType) -> Optional[TableMapping]:
        for mapping in self.tables:
            if mapping.object_type == object_type:
                return mapping
        return None

    def sequence(self, include_values: bool) -> List[ObjectType]:
        """本版本下一个数据源要执行的查询类型（按固定顺序）"""
        types = [m.object_type for m in self.tables]
        if include_values:
            types.append(ObjectType.VALUE)
        return types


class SourceConfig(BaseModel):
    """数据源配置"""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., description="数据源标识，输出为 database 字段")
    path: str = Field(..., description="SQLite 数据库文件路径")
    schema_name: str = Field(DEFAULT_SCHEMA, alias="schema", description="使用的表结构版本")
    enabled: bool = True
    timeout: float = 30.0


class ChangesConfig(BaseModel):
    """变更列表默认参数"""
    default_hours: int = 24
    default_include_values: bool = False


class CacheConfig(BaseModel):
    """结果缓存配置"""
    ttl_minutes: int = 10


class DirectoryConfig(BaseModel):
    """用户目录配置"""
    kind: Literal["static", "database", "http"] = "static"
    users: List[UserRecord] = Field(default_factory=list)
    path: Optional[str] = None
    table: str = "InstalledUser"
    id_column: str = "Id"
    name_column: str = "Name"
    url: Optional[str] = None
    timeout: float = 5.0

    @field_validator("table", "id_column", "name_column")
    @classmethod
    def validate_identifier(cls, v: str) -> str:
        return _check_identifier(v)

    @model_validator(mode="after")
    def check_kind(self) -> "DirectoryConfig":
        if self.kind == "database" and not self.path:
            raise ValueError("directory.path is required for kind 'database'")
        if self.kind == "http" and not self.url:
            raise ValueError("directory.url is required for kind 'http'")
        return self


class APIConfig(BaseModel):
    """API 服务配置"""
    host: str = "0.0.0.0"
    port: int = 5050


class LoggingConfig(BaseModel):
    """日志配置"""
    level: str = "INFO"
    file: Optional[str] = None


class AppConfig(BaseModel):
    """应用配置（完整配置）"""
    sources: List[SourceConfig] = Field(default_factory=list)
    schemas: Dict[str, SchemaConfig] = Field(default_factory=dict)
    changes: ChangesConfig = Field(default_factory=ChangesConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    directory: DirectoryConfig = Field(default_factory=DirectoryConfig)
    api: APIConfig = Field(default_factory=APIConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def check_schemas(self) -> "AppConfig":
        self.schemas.setdefault(DEFAULT_SCHEMA, SchemaConfig())

        ids = set()
        for source in self.sources:
            if source.id in ids:
                raise ValueError(f"Duplicate source id: {source.id}")
            ids.add(source.id)
            if source.schema_name not in self.schemas:
                raise ValueError(
                    f"Source {source.id} references unknown schema '{source.schema_name}'"
                )
        return self

    def schema_for(self, source: SourceConfig) -> SchemaConfig:
        return self.schemas[source.schema_name]


class EnvSettings(BaseSettings):
    """环境变量覆盖（CHANGE_AGGREGATOR_*）"""
    model_config = SettingsConfigDict(env_prefix="CHANGE_AGGREGATOR_")

    config: str = "config.yaml"
    log_level: Optional[str] = None


def load_config(config_path: Optional[str] = None) -> AppConfig:
    """
    加载配置文件

    优先级：
    1. 参数指定的路径
    2. 环境变量 CHANGE_AGGREGATOR_CONFIG
    3. 默认路径 config.yaml

    配置文件中的相对路径（数据源、用户目录、日志文件）以配置文件所在目录为基准。
    """
    env = EnvSettings()
    if config_path is None:
        config_path = env.config

    config_file = Path(config_path)
    raw_config = {}

    if config_file.exists():
        with open(config_file, "r", encoding="utf-8") as f:
            raw_config = yaml.safe_load(f) or {}

        base_dir = config_file.resolve().parent

        def _resolve_path(value: Optional[str]) -> Optional[str]:
            if not value:
                return value
            path = Path(value)
            if path.is_absolute():
                return str(path)
            return str((base_dir / path).resolve())

        for source in raw_config.get("sources") or []:
            if isinstance(source, dict) and "path" in source:
                source["path"] = _resolve_path(source["path"])

        directory = raw_config.get("directory")
        if isinstance(directory, dict) and directory.get("path"):
            directory["path"] = _resolve_path(directory["path"])

        logging_section = raw_config.get("logging")
        if isinstance(logging_section, dict) and logging_section.get("file"):
            logging_section["file"] = _resolve_path(logging_section["file"])

    config = AppConfig(**raw_config)

    if env.log_level:
        config.logging.level = env.log_level

    return config


# 全局配置实例（延迟加载）
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """获取全局配置实例（单例模式）"""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config():
    """重置配置（主要用于测试）"""
    global _config
    _config = None
