"""MariaDB 驱动适配器。

协议与 MySQL 相同（同样走 PyMySQL），区别只在 schema 文本：
头部写 MariaDB，且不附加 JSON 列注释（MariaDB 的 JSON 是 LONGTEXT 别名）。
"""

from sqlalchemy.engine import Connection

from sqlchat_core.domain.models import DatabaseConnection
from sqlchat_core.drivers.mysql import MySQLDriver


class MariaDBDriver(MySQLDriver):
    name = "mariadb"
    drivername = "mariadb+pymysql"
    engine_label = "MariaDB"

    def render_table(self, conn: Connection, connection: DatabaseConnection, table: str) -> str:
        return self._create_statement(conn, table) + ";\n\n"
