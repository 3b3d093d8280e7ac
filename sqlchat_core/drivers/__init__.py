"""数据库驱动适配器。

- base: 适配器接口与基于 SQLAlchemy 的公共执行逻辑。
- mysql / mariadb / postgresql: 各引擎的 URL 方言与 schema 导出方式。
"""

from typing import Mapping, Optional, Type

from sqlchat_core.config.settings import settings
from sqlchat_core.domain.exceptions import UnsupportedDriverError
from sqlchat_core.drivers.base import AffectedRows, DriverAdapter, SqlAlchemyDriver
from sqlchat_core.drivers.mariadb import MariaDBDriver
from sqlchat_core.drivers.mysql import MySQLDriver
from sqlchat_core.drivers.postgresql import PostgreSQLDriver


DRIVER_REGISTRY: Mapping[str, Type[SqlAlchemyDriver]] = {
    cls.name: cls for cls in (MySQLDriver, PostgreSQLDriver, MariaDBDriver)
}

_ALIASES = {"postgres": "postgresql", "pg": "postgresql"}


def get_driver(name: Optional[str], cfg=None) -> DriverAdapter:
    """根据连接记录里的 driver 名称创建适配器。"""

    key = (name or "").strip().lower()
    key = _ALIASES.get(key, key)
    cls = DRIVER_REGISTRY.get(key)
    if cls is None:
        raise UnsupportedDriverError(name)
    return cls(cfg or settings)


__all__ = [
    "AffectedRows",
    "DRIVER_REGISTRY",
    "DriverAdapter",
    "MariaDBDriver",
    "MySQLDriver",
    "PostgreSQLDriver",
    "get_driver",
]
