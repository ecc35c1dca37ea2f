"""
SQL Statement Executor

Runs exactly one statement per request against the store named by the request
parameters. The statement is forwarded verbatim; no validation or filtering is
applied here or anywhere else in the proxy.

Statements that start with SELECT (case-insensitive, leading whitespace
ignored) are row-producing: every row becomes a record keyed by column name.
Anything else is treated as mutating and, when the store reports no result
rows, yields a single ``{"count": update_count}`` record.
"""

import asyncio
import concurrent.futures
import re
import time
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import exc as sa_exc

from .store import SQLAlchemyConnector, StatementResult, StoreConnection, StoreConnector

logger = structlog.get_logger()

ResultRecord = Dict[str, Any]
ResultSet = List[ResultRecord]

_ROW_PRODUCING = re.compile(r'\s*select', re.IGNORECASE)


class ExecutionError(Exception):
    """Any failure while connecting to the store or running the statement"""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


def is_row_producing(statement: str) -> bool:
    """True when the statement literally starts with SELECT"""
    return _ROW_PRODUCING.match(statement) is not None


def describe_error(error: BaseException) -> str:
    """Human-readable message for an error reported to the peer"""
    if isinstance(error, sa_exc.DBAPIError) and error.orig is not None:
        message = str(error.orig)
    else:
        message = str(error)
    return message or type(error).__name__


def _preview(statement: str) -> str:
    return statement[:100] + "..." if len(statement) > 100 else statement


class StatementExecutor:
    """
    Statement Execution Handler

    Opens a connection per call, runs the statement, builds the ResultSet and
    closes the connection on every path. Blocking store work is kept off the
    event loop by execute_async(), which uses a dedicated thread pool.
    """

    def __init__(self, connector: Optional[StoreConnector] = None, max_workers: int = 10):
        self.connector = connector or SQLAlchemyConnector()
        self.thread_pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="sqlp_executor"
        )

    def execute(self, driver: str, locator: str, username: str, password: str,
                statement: str) -> ResultSet:
        """
        Execute one statement synchronously.

        Returns:
            Ordered list of records; empty for a SELECT without rows

        Raises:
            ExecutionError: connect failure, driver not found, statement rejected
        """
        start_time = time.perf_counter()

        try:
            connection = self.connector.connect(driver, locator, username, password)
        except Exception as e:
            logger.error("Store connection failed", driver=driver, error=describe_error(e))
            raise ExecutionError(describe_error(e)) from e

        row_producing = is_row_producing(statement)
        try:
            if row_producing:
                items = self._fetch_rows(connection, statement)
            else:
                items = self._execute_update(connection, statement)
        except Exception as e:
            logger.error("Statement execution failed",
                         driver=driver,
                         sql=_preview(statement),
                         error=describe_error(e))
            raise ExecutionError(describe_error(e)) from e
        finally:
            self._close(connection)

        logger.info("Statement executed",
                    driver=driver,
                    kind="query" if row_producing else "update",
                    records=len(items),
                    execution_time_ms=round((time.perf_counter() - start_time) * 1000, 2))
        return items

    async def execute_async(self, driver: str, locator: str, username: str, password: str,
                            statement: str) -> ResultSet:
        """Run execute() in the thread pool to avoid blocking the event loop"""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self.thread_pool, self.execute, driver, locator, username, password, statement)

    def _fetch_rows(self, connection: StoreConnection, statement: str) -> ResultSet:
        result = connection.execute(statement)
        try:
            fields: Optional[List[str]] = None
            items: ResultSet = []
            for row in result:
                if fields is None:
                    fields = result.columns
                items.append(self._build_record(fields, row))
            return items
        finally:
            result.close()

    def _execute_update(self, connection: StoreConnection, statement: str) -> ResultSet:
        result: StatementResult = connection.execute(statement)
        try:
            if result.returns_rows:
                # mutating-classified statement that produced rows: nothing to report
                return []
            return [{'count': result.update_count}]
        finally:
            result.close()

    @staticmethod
    def _build_record(fields: List[str], row) -> ResultRecord:
        record: ResultRecord = {}
        for name, value in zip(fields, row):
            # a repeated column name keeps the first column's value
            if name not in record:
                record[name] = value
        return record

    @staticmethod
    def _close(connection: StoreConnection):
        try:
            connection.close()
        except Exception as e:
            logger.warning("Error closing store connection", error=describe_error(e))

    def shutdown(self):
        """Shutdown the executor thread pool"""
        self.thread_pool.shutdown(wait=True)
        logger.info("Statement executor shutdown completed")
