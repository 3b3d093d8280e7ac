"""PostgreSQL 驱动适配器（psycopg2）。

- 查询：只有 SELECT / WITH / VALUES / TABLE 开头的语句使用服务端命名游标
  逐行读取；psycopg2 的命名游标只能承载 DECLARE CURSOR 支持的语句，
  其余语句（DML、DDL、SHOW、EXPLAIN）走普通游标。
- schema：调用 pg_dump --schema-only，密码通过 PGPASSWORD 传入子进程环境，
  不出现在命令行参数里。
"""

import os
import subprocess

from sqlchat_core.domain.exceptions import SchemaIntrospectionError
from sqlchat_core.domain.models import DatabaseConnection
from sqlchat_core.drivers.base import SqlAlchemyDriver, leading_keyword
from sqlchat_core.infrastructure.logging.logger import logger


_CURSOR_KEYWORDS = frozenset({"select", "with", "values", "table"})

# 新版 pg_dump 每次输出随机的 \restrict 密钥行
_VOLATILE_PREFIXES = ("\\restrict", "\\unrestrict")


class PostgreSQLDriver(SqlAlchemyDriver):
    name = "postgresql"
    drivername = "postgresql+psycopg2"
    engine_label = "POSTGRESQL"

    def streams_results(self, sql: str) -> bool:
        return leading_keyword(sql) in _CURSOR_KEYWORDS

    def dump_command(self, connection: DatabaseConnection) -> list:
        return [
            self._settings.pg_dump_path,
            "-h", connection.host,
            "-p", str(connection.port),
            "-U", connection.username,
            "-d", connection.database_name,
            "--schema-only",
        ]

    def introspect_schema(self, connection: DatabaseConnection) -> str:
        env = os.environ.copy()
        env["PGPASSWORD"] = connection.secret or ""
        try:
            result = subprocess.run(
                self.dump_command(connection),
                capture_output=True,
                text=True,
                env=env,
                timeout=self._settings.schema_dump_timeout,
            )
        except FileNotFoundError:
            raise SchemaIntrospectionError(
                f"pg_dump not found at {self._settings.pg_dump_path!r}",
                driver=self.name,
                connection_id=connection.id,
            )
        except subprocess.TimeoutExpired:
            raise SchemaIntrospectionError(
                f"pg_dump timed out after {self._settings.schema_dump_timeout}s",
                driver=self.name,
                connection_id=connection.id,
            )

        if result.returncode != 0:
            raise SchemaIntrospectionError(
                (result.stderr or "").strip() or f"pg_dump exited with code {result.returncode}",
                driver=self.name,
                connection_id=connection.id,
            )

        lines = [line for line in result.stdout.splitlines(keepends=True) if not line.startswith(_VOLATILE_PREFIXES)]
        logger.info(
            "driver.schema",
            extra={"extra": {"driver": self.name, "connection_id": connection.id, "bytes": len(result.stdout)}},
        )
        return f"Database Type: {self.engine_label}\n\n" + "".join(lines)
