"""MySQL 驱动适配器（PyMySQL）。

schema 文本格式：
    Database Type: MySQL

    <SHOW CREATE TABLE t1>;
    -- JSON Columns in t1:
    --   payload: JSON type (comment)

    <SHOW CREATE TABLE t2>;
    ...

只导出 BASE TABLE，按表名排序，保证同一数据库重复导出结果一致。
"""

from typing import List

from pymysql.constants import FIELD_TYPE
from sqlalchemy import text
from sqlalchemy.engine import Connection, CursorResult
from sqlalchemy.exc import SQLAlchemyError

from sqlchat_core.domain.exceptions import SchemaIntrospectionError
from sqlchat_core.domain.models import DatabaseConnection
from sqlchat_core.drivers.base import SqlAlchemyDriver, driver_message
from sqlchat_core.infrastructure.logging.logger import logger


_TABLES_SQL = text(
    "SELECT TABLE_NAME FROM INFORMATION_SCHEMA.TABLES "
    "WHERE TABLE_SCHEMA = :schema AND TABLE_TYPE = 'BASE TABLE' "
    "ORDER BY TABLE_NAME"
)

_JSON_COLUMNS_SQL = text(
    "SELECT COLUMN_NAME, COLUMN_COMMENT FROM INFORMATION_SCHEMA.COLUMNS "
    "WHERE TABLE_SCHEMA = :schema AND TABLE_NAME = :table AND DATA_TYPE = 'json' "
    "ORDER BY ORDINAL_POSITION"
)


def quote_identifier(name: str) -> str:
    return "`" + name.replace("`", "``") + "`"


class MySQLDriver(SqlAlchemyDriver):
    name = "mysql"
    drivername = "mysql+pymysql"
    engine_label = "MySQL"

    def json_columns(self, result: CursorResult) -> List[str]:
        # PyMySQL 把 JSON 列当作文本返回，只能按 cursor.description 的类型码识别
        description = result.cursor.description if result.cursor is not None else None
        return [column[0] for column in description or () if column[1] == FIELD_TYPE.JSON]

    def introspect_schema(self, connection: DatabaseConnection) -> str:
        try:
            with self.engine_scope(connection) as engine:
                with engine.connect() as conn:
                    tables = self._list_tables(conn, connection.database_name)
                    blocks = [self.render_table(conn, connection, table) for table in tables]
        except SQLAlchemyError as e:
            raise SchemaIntrospectionError(driver_message(e), driver=self.name, connection_id=connection.id)

        logger.info(
            "driver.schema",
            extra={"extra": {"driver": self.name, "connection_id": connection.id, "tables": len(blocks)}},
        )
        return f"Database Type: {self.engine_label}\n\n" + "".join(blocks) + "\n"

    def _list_tables(self, conn: Connection, schema: str) -> List[str]:
        return [str(name) for name in conn.execute(_TABLES_SQL, {"schema": schema}).scalars()]

    def _create_statement(self, conn: Connection, table: str) -> str:
        row = (
            conn.execution_options(no_parameters=True)
            .exec_driver_sql(f"SHOW CREATE TABLE {quote_identifier(table)}")
            .one()
        )
        return str(row[1])

    def render_table(self, conn: Connection, connection: DatabaseConnection, table: str) -> str:
        block = self._create_statement(conn, table) + ";\n"
        json_columns = conn.execute(
            _JSON_COLUMNS_SQL, {"schema": connection.database_name, "table": table}
        ).all()
        if json_columns:
            block += f"-- JSON Columns in {table}:\n"
            for column, comment in json_columns:
                block += f"--   {column}: JSON type ({comment or ''})\n"
        return block + "\n"
