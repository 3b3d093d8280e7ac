"""SQL 执行引擎。

一次执行的生命周期：

    Idle → Executing → {StreamingRows | Summarizing} → {Completed | Cancelled | Failed}

start() 在返回之前就拿到第一条结果（第一行、影响行数摘要或执行错误），
因此连接失败、SQL 语法错误等都会以普通异常的形式在开流之前抛出，
由 API 层映射成带状态码的 JSON 错误响应。

开流之后：
- 每行在可用时立即产出，不缓存整个结果集；
- 每次产出之前检查取消标志，被取消后不再拉取后续行并释放连接；
- 中途失败时保留已产出的行，以一个 error 事件结束；
- 无论以哪种方式结束，都恰好产出一个终止事件（done 或 error）。
"""

import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, Iterator, Optional
from uuid import uuid4

from sqlchat_core.domain.exceptions import BusinessError, ConfirmationRequiredError, ConnectionNotFoundError
from sqlchat_core.domain.models import DatabaseConnection, StreamEvent
from sqlchat_core.domain.store import PersistenceStore
from sqlchat_core.drivers import AffectedRows, DriverAdapter, get_driver
from sqlchat_core.engine.cancellation import CancellationRegistry, CancellationToken
from sqlchat_core.engine.cancellation import registry as default_registry
from sqlchat_core.engine.serialization import serialize_row
from sqlchat_core.infrastructure.logging.logger import logger, truncate_sql
from sqlchat_core.sql.classifier import MUTATING, classify


class QueryState(str, Enum):
    IDLE = "Idle"
    EXECUTING = "Executing"
    STREAMING_ROWS = "StreamingRows"
    SUMMARIZING = "Summarizing"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    FAILED = "Failed"


_END = object()


class QueryRun:
    """一次已经开始执行的查询，events() 只能迭代一次。"""

    def __init__(
        self,
        execution_id: str,
        source: Iterator[Any],
        first: Any,
        token: CancellationToken,
        cancellations: CancellationRegistry,
        log_ctx: Dict[str, Any],
    ):
        self.execution_id = execution_id
        self.state = QueryState.EXECUTING
        self.rows_emitted = 0
        self._source = source
        self._next = first
        self._token = token
        self._cancellations = cancellations
        self._log_ctx = log_ctx
        self._started_at = time.time()
        self._closed = False

    def events(self) -> Iterator[StreamEvent]:
        try:
            yield from self._drain()
        finally:
            self.close()

    def _drain(self) -> Iterator[StreamEvent]:
        item = self._next
        while item is not _END:
            if self._token.cancelled:
                self.state = QueryState.CANCELLED
                _log(logging.INFO, "Query cancelled", self._log_ctx, rows=self.rows_emitted)
                yield StreamEvent.done()
                return

            if isinstance(item, AffectedRows):
                self.state = QueryState.SUMMARIZING
                yield StreamEvent.summary(item.affected_rows)
            else:
                self.state = QueryState.STREAMING_ROWS
                self.rows_emitted += 1
                yield StreamEvent.for_row(serialize_row(item))

            try:
                item = next(self._source, _END)
            except BusinessError as e:
                self._fail(e.message)
                yield StreamEvent.error(e.message)
                return
            except Exception as e:
                logger.exception("Unexpected error while streaming rows")
                message = f"Query execution failed: {e}"
                self._fail(message)
                yield StreamEvent.error(message)
                return

        self.state = QueryState.COMPLETED
        _log(
            logging.INFO,
            "Query completed",
            self._log_ctx,
            rows=self.rows_emitted,
            elapsed_seconds=round(time.time() - self._started_at, 3),
        )
        yield StreamEvent.done()

    def _fail(self, message: str) -> None:
        self.state = QueryState.FAILED
        _log(logging.WARNING, "Query failed mid-stream", self._log_ctx, rows=self.rows_emitted, error=message)

    def close(self) -> None:
        """释放驱动连接并注销取消标志；可重复调用。"""

        if self._closed:
            return
        self._closed = True
        try:
            self._source.close()
        finally:
            self._cancellations.clear(self.execution_id, self._token)


class QueryExecutionEngine:
    def __init__(
        self,
        store: PersistenceStore,
        driver_factory: Callable[[str], DriverAdapter] = get_driver,
        cancellations: Optional[CancellationRegistry] = None,
    ):
        self._store = store
        self._driver_factory = driver_factory
        self._cancellations = cancellations if cancellations is not None else default_registry

    def _resolve(self, connection_id: str, user_id: Optional[str]) -> DatabaseConnection:
        connection = self._store.get_connection_by_id(connection_id, user_id)
        if connection is None:
            raise ConnectionNotFoundError(connection_id)
        return connection

    def start(
        self,
        sql: str,
        connection_id: str,
        execution_id: Optional[str] = None,
        user_id: Optional[str] = None,
        confirmed: bool = False,
    ) -> QueryRun:
        """开始执行 SQL，返回已经拿到首条结果的 QueryRun。

        Args:
            sql: 原样执行的 SQL 文本。
            connection_id: 连接记录 ID。
            execution_id: 取消用的关联 ID，不传时自动生成。
            user_id: 调用方身份，用于连接记录的归属过滤。
            confirmed: False 时带副作用的语句会被拒绝（ConfirmationRequiredError）。

        Raises:
            ConfirmationRequiredError / ConnectionNotFoundError /
            UnsupportedDriverError / QueryExecutionError
        """
        classification = classify(sql)
        if classification == MUTATING and not confirmed:
            raise ConfirmationRequiredError(classification)

        connection = self._resolve(connection_id, user_id)
        driver = self._driver_factory(connection.driver)
        execution_id = execution_id or f"ex-{uuid4().hex}"
        log_ctx: Dict[str, Any] = {
            "execution_id": execution_id,
            "connection_id": connection.id,
            "driver": connection.driver,
        }
        _log(logging.INFO, "Query started", log_ctx, sql=truncate_sql(sql), classification=classification)

        token = self._cancellations.register(execution_id)
        source = iter(driver.execute(connection, sql))
        try:
            first = next(source, _END)
        except BaseException as e:
            try:
                close = getattr(source, "close", None)
                if close is not None:
                    close()
            finally:
                self._cancellations.clear(execution_id, token)
            _log(logging.WARNING, "Query failed", log_ctx, error=getattr(e, "message", str(e)))
            raise
        if not hasattr(source, "close"):
            source = _closable(source)
        return QueryRun(execution_id, source, first, token, self._cancellations, log_ctx)

    def cancel(self, execution_id: str) -> bool:
        cancelled = self._cancellations.cancel(execution_id)
        logger.info("Query cancel requested", extra={"extra": {"execution_id": execution_id, "found": cancelled}})
        return cancelled

    def introspect_schema(self, connection_id: str, user_id: Optional[str] = None) -> str:
        connection = self._resolve(connection_id, user_id)
        driver = self._driver_factory(connection.driver)
        return driver.introspect_schema(connection)


def _closable(source: Iterator[Any]) -> Iterator[Any]:
    yield from source


def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
    payload = dict(log_ctx)
    payload.update(fields)
    logger.log(level, message, extra={"extra": payload})
