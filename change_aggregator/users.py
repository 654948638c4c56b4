"""
用户名解析

把变更记录里的用户 ID 解析为显示名称：
- 正向缓存（只增不删，进程内有效；用户改名需重启或调用 purge）
- 缓存未命中时扫描一次用户目录；一次汇总期间（snapshot）用户目录只读取一次
- 找不到用户时直接返回原始 ID，不报错
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, List, Optional

import httpx

from .config import DirectoryConfig
from .models import UserRecord

logger = logging.getLogger(__name__)


class DirectoryError(Exception):
    """用户目录读取失败"""


class UserDirectory:
    """用户目录接口"""

    def list_known_users(self) -> List[UserRecord]:
        raise NotImplementedError


class StaticUserDirectory(UserDirectory):
    """配置文件中列出的用户"""

    def __init__(self, users: List[UserRecord]):
        self._users = list(users)

    def list_known_users(self) -> List[UserRecord]:
        return list(self._users)


class DatabaseUserDirectory(UserDirectory):
    """从 SQLite 用户表读取（默认表 InstalledUser(Id, Name)）"""

    def __init__(
        self,
        path: str,
        table: str = "InstalledUser",
        id_column: str = "Id",
        name_column: str = "Name",
        timeout: float = 5.0
    ):
        self.path = Path(path)
        self.table = table
        self.id_column = id_column
        self.name_column = name_column
        self.timeout = timeout

    def list_known_users(self) -> List[UserRecord]:
        uri = self.path.resolve().as_uri() + "?mode=ro"
        sql = f'SELECT "{self.id_column}", "{self.name_column}" FROM "{self.table}"'
        try:
            conn = sqlite3.connect(uri, uri=True, timeout=self.timeout)
        except sqlite3.Error as e:
            raise DirectoryError(f"Cannot open user directory {self.path}: {e}") from e
        try:
            rows = conn.execute(sql).fetchall()
        except sqlite3.Error as e:
            raise DirectoryError(f"Cannot read user directory {self.path}: {e}") from e
        finally:
            conn.close()

        return [UserRecord(id=str(row[0]), name=str(row[1] or "")) for row in rows]


class HttpUserDirectory(UserDirectory):
    """
    从远程用户目录服务读取

    期望 GET url 返回 [{"id": "...", "name": "..."}, ...]
    """

    def __init__(self, url: str, timeout: float = 5.0, client: Optional[httpx.Client] = None):
        self.url = url
        self.timeout = timeout
        self._client = client

    def list_known_users(self) -> List[UserRecord]:
        try:
            if self._client is not None:
                response = self._client.get(self.url)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.get(self.url)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise DirectoryError(f"Cannot fetch user directory {self.url}: {e}") from e

        if not isinstance(data, list):
            raise DirectoryError(f"Unexpected user directory payload from {self.url}")

        return [
            UserRecord(id=str(u.get("id", "")), name=str(u.get("name") or ""))
            for u in data
            if isinstance(u, dict)
        ]


def build_directory(config: DirectoryConfig) -> UserDirectory:
    """根据配置创建用户目录"""
    if config.kind == "database":
        return DatabaseUserDirectory(
            path=config.path,
            table=config.table,
            id_column=config.id_column,
            name_column=config.name_column,
            timeout=config.timeout,
        )
    if config.kind == "http":
        return HttpUserDirectory(url=config.url, timeout=config.timeout)
    return StaticUserDirectory(config.users)


class UserNameResolver:
    """用户 ID -> 显示名称（带正向缓存）"""

    def __init__(self, directory: UserDirectory):
        self._directory = directory
        # {user_id: display_name}，只增不删
        self._cache: Dict[str, str] = {}
        self._lock = threading.Lock()
        # 汇总期间的用户目录快照（首次未命中时读取，快照结束后丢弃）
        self._snapshot_depth = 0
        self._snapshot_names: Optional[Dict[str, str]] = None

    def resolve(self, user_id: str) -> str:
        """
        解析用户名

        Args:
            user_id: 用户 ID

        Returns:
            显示名称；目录中找不到、名称为空或目录不可用时返回 user_id 本身
        """
        cached = self._cache.get(user_id)
        if cached:
            return cached

        name = self._known_names().get(user_id)
        if not name:
            logger.debug(f"Unknown user id {user_id!r}")
            return user_id

        with self._lock:
            return self._cache.setdefault(user_id, name)

    @contextmanager
    def snapshot(self):
        """
        在 with 块内复用同一份用户目录

        块内第一次缓存未命中时读取目录，之后的未命中（包括未知用户）只查这份快照；
        目录不可用时快照为空，块内不再重试。
        """
        with self._lock:
            self._snapshot_depth += 1
        try:
            yield self
        finally:
            with self._lock:
                self._snapshot_depth -= 1
                if self._snapshot_depth == 0:
                    self._snapshot_names = None

    def _known_names(self) -> Dict[str, str]:
        """{user_id: name}；快照有效时直接返回快照"""
        with self._lock:
            if self._snapshot_depth and self._snapshot_names is not None:
                return self._snapshot_names

        names: Dict[str, str] = {}
        try:
            for user in self._directory.list_known_users():
                # 重复 ID 以第一条为准
                names.setdefault(user.id, user.name)
        except DirectoryError as e:
            logger.warning(f"User directory unavailable, using raw ids: {e}")

        with self._lock:
            if self._snapshot_depth:
                self._snapshot_names = names
        return names

    def purge(self):
        """清空缓存（用户改名后使用）"""
        with self._lock:
            count = len(self._cache)
            self._cache.clear()
            self._snapshot_names = None
        logger.info(f"Purged {count} cached user names")

    @property
    def cache_size(self) -> int:
        return len(self._cache)
