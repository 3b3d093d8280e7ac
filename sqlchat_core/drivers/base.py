"""数据库驱动适配器的抽象接口与公共实现。

每次调用都会为本次请求单独创建一个 SQLAlchemy Engine（连接池大小为 1），
执行结束后无论成功、出错还是被提前关闭（取消）都会 dispose，
不在请求之间共享连接池。

execute() 产出两种形态之一：
- 结果集语句：逐行产出 dict（列名 -> 驱动值，JSON 列已解码），顺序与数据库返回一致；
- 非结果集语句（INSERT/UPDATE/DELETE/DDL）：只产出一个 AffectedRows。
调用方按形态区分，不需要额外标志位。
"""

import json
import re
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Protocol, Union

from sqlalchemy import create_engine
from sqlalchemy.engine import CursorResult, Engine
from sqlalchemy.engine.url import URL
from sqlalchemy.exc import DBAPIError, SQLAlchemyError

from sqlchat_core.config.settings import settings as default_settings
from sqlchat_core.domain.exceptions import QueryExecutionError
from sqlchat_core.domain.models import DatabaseConnection
from sqlchat_core.infrastructure.logging.logger import logger, truncate_sql


@dataclass(frozen=True)
class AffectedRows:
    """非结果集语句的执行摘要。"""

    affected_rows: int


ExecuteItem = Union[Dict[str, Any], AffectedRows]


class DriverAdapter(Protocol):
    name: str

    def execute(self, connection: DatabaseConnection, sql: str) -> Iterator[ExecuteItem]:
        ...

    def introspect_schema(self, connection: DatabaseConnection) -> str:
        ...


_LEADING_NOISE_RE = re.compile(r"^(?:\s+|--[^\n]*(?:\n|$)|/\*.*?\*/|\()*", re.DOTALL)


def leading_keyword(sql: str) -> str:
    """返回语句的第一个关键字（小写），跳过前导空白、注释与括号。"""

    rest = _LEADING_NOISE_RE.sub("", sql or "", count=1)
    match = re.match(r"[A-Za-z]+", rest)
    return match.group(0).lower() if match else ""


def decode_json(value: Any) -> Any:
    """解码 JSON 列的文本值；None 与已解码的值原样返回。"""

    if isinstance(value, (str, bytes, bytearray)):
        return json.loads(value)
    return value


def driver_message(exc: SQLAlchemyError) -> str:
    """取底层 DBAPI 的错误信息，去掉 SQLAlchemy 附加的 SQL 与文档链接。"""

    if isinstance(exc, DBAPIError) and exc.orig is not None:
        return str(exc.orig).strip()
    return str(exc).split("\n", 1)[0]


class SqlAlchemyDriver:
    """基于 SQLAlchemy Core 的驱动基类。

    子类设置：
    - name: 连接记录里的 driver 取值（如 "mysql"）。
    - drivername: SQLAlchemy URL 的方言+DBAPI（如 "mysql+pymysql"）。
    - engine_label: schema 文本头部使用的引擎名（如 "MySQL"）。
    并实现 introspect_schema。
    """

    name = ""
    drivername = ""
    engine_label = ""

    def __init__(self, settings=default_settings):
        self._settings = settings

    def url(self, connection: DatabaseConnection) -> URL:
        return URL.create(
            self.drivername,
            username=connection.username or None,
            password=connection.secret or None,
            host=connection.host or None,
            port=int(connection.port) if connection.port else None,
            database=connection.database_name or None,
        )

    @contextmanager
    def engine_scope(self, connection: DatabaseConnection) -> Iterator[Engine]:
        """请求级连接池：进入时创建，退出时（任何路径）释放。"""

        engine = create_engine(self.url(connection), pool_size=1, max_overflow=0)
        logger.debug(
            "driver.pool.open",
            extra={"extra": {"driver": self.name, "connection_id": connection.id}},
        )
        try:
            yield engine
        finally:
            engine.dispose()
            logger.debug(
                "driver.pool.closed",
                extra={"extra": {"driver": self.name, "connection_id": connection.id}},
            )

    def streams_results(self, sql: str) -> bool:
        """该语句是否使用服务端游标逐行读取。"""

        return True

    def json_columns(self, result: CursorResult) -> List[str]:
        """驱动以文本形式返回、需要解码的 JSON 列名。"""

        return []

    def execute(self, connection: DatabaseConnection, sql: str) -> Iterator[ExecuteItem]:
        logger.info(
            "driver.execute",
            extra={"extra": {"driver": self.name, "connection_id": connection.id, "sql": truncate_sql(sql)}},
        )
        try:
            with self.engine_scope(connection) as engine:
                with engine.connect() as conn:
                    options = conn.execution_options(
                        stream_results=self.streams_results(sql),
                        no_parameters=True,
                    )
                    result = options.exec_driver_sql(sql)
                    if not result.returns_rows:
                        affected = result.rowcount if result.rowcount is not None and result.rowcount >= 0 else 0
                        result.close()
                        conn.commit()
                        yield AffectedRows(affected_rows=affected)
                        return
                    json_columns = self.json_columns(result)
                    try:
                        for row in result.mappings():
                            item = dict(row)
                            for column in json_columns:
                                item[column] = decode_json(item.get(column))
                            yield item
                    except GeneratorExit:
                        # 提前关闭（取消或客户端断开）：丢弃连接，不再读完服务端剩余的行
                        conn.invalidate()
                        logger.info(
                            "driver.execute.abandoned",
                            extra={"extra": {"driver": self.name, "connection_id": connection.id}},
                        )
                        raise
                    finally:
                        if not conn.invalidated:
                            result.close()
                    conn.commit()
        except SQLAlchemyError as e:
            raise QueryExecutionError(driver_message(e), driver=self.name, connection_id=connection.id)

    def introspect_schema(self, connection: DatabaseConnection) -> str:
        raise NotImplementedError
