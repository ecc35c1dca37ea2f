"""
Data Store Capability

The proxy never talks to a database library directly: StatementExecutor only
sees the StoreConnector / StoreConnection / StatementResult protocols below.
SQLAlchemyConnector is the production binding; tests plug in an in-memory
fake through the same seam.

Driver identifier and locator follow JDBC ``getConnection(url, user, pwd)``
semantics on top of SQLAlchemy URLs:
- driver   → SQLAlchemy drivername (``dialect[+dbapi]``), replaces the URL scheme
- locator  → SQLAlchemy URL (host, port, database, query options)
- username/password → replace any credentials embedded in the locator
"""

from typing import Any, Iterator, List, Protocol, Sequence, runtime_checkable

import structlog
from sqlalchemy import create_engine
from sqlalchemy.engine import URL, Connection, CursorResult, Engine, make_url
from sqlalchemy.pool import NullPool

logger = structlog.get_logger()


@runtime_checkable
class StatementResult(Protocol):
    """Outcome of one executed statement"""

    @property
    def returns_rows(self) -> bool: ...

    @property
    def columns(self) -> List[str]: ...

    @property
    def update_count(self) -> int: ...

    def __iter__(self) -> Iterator[Sequence[Any]]: ...

    def close(self) -> None: ...


@runtime_checkable
class StoreConnection(Protocol):
    """One open connection to the target store"""

    def execute(self, statement: str) -> StatementResult: ...

    def close(self) -> None: ...


@runtime_checkable
class StoreConnector(Protocol):
    """Factory for store connections"""

    def connect(self, driver: str, locator: str, username: str, password: str) -> StoreConnection: ...


class SQLAlchemyStatementResult:
    """StatementResult over a SQLAlchemy CursorResult"""

    def __init__(self, result: CursorResult):
        self._result = result

    @property
    def returns_rows(self) -> bool:
        return self._result.returns_rows

    @property
    def columns(self) -> List[str]:
        if not self._result.returns_rows:
            return []
        return list(self._result.keys())

    @property
    def update_count(self) -> int:
        # passed through unchanged, including the -1 "unknown" sentinel
        return self._result.rowcount

    def __iter__(self) -> Iterator[Sequence[Any]]:
        for row in self._result:
            yield tuple(row)

    def close(self) -> None:
        self._result.close()


class SQLAlchemyStoreConnection:
    """
    Single auto-commit connection owned by one request.

    The engine is created with NullPool so closing the connection really closes
    the DBAPI connection; dispose() then releases the engine itself.
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        self.connection: Connection = engine.connect()
        try:
            # verbatim execution: no bind-parameter parsing, no implicit transaction
            self.connection.execution_options(isolation_level="AUTOCOMMIT", no_parameters=True)
        except Exception:
            self.close()
            raise

    def execute(self, statement: str) -> SQLAlchemyStatementResult:
        return SQLAlchemyStatementResult(self.connection.exec_driver_sql(statement))

    def close(self) -> None:
        try:
            self.connection.close()
        finally:
            self.engine.dispose()


class SQLAlchemyConnector:
    """Opens a fresh, unpooled SQLAlchemy connection per request"""

    def build_url(self, driver: str, locator: str, username: str, password: str) -> URL:
        """
        Combine the request parameters into one SQLAlchemy URL.

        Raises:
            sqlalchemy.exc.ArgumentError: locator cannot be parsed
        """
        return make_url(locator).set(drivername=driver, username=username, password=password)

    def connect(self, driver: str, locator: str, username: str, password: str) -> SQLAlchemyStoreConnection:
        url = self.build_url(driver, locator, username, password)

        logger.debug("Opening store connection",
                     driver=url.drivername,
                     host=url.host,
                     database=url.database)

        engine = create_engine(url, poolclass=NullPool)
        try:
            return SQLAlchemyStoreConnection(engine)
        except Exception:
            engine.dispose()
            raise
