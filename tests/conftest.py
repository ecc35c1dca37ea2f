"""
Pytest configuration for SQLP proxy tests

Provides an in-memory fake store plugged in through the StoreConnector seam,
a real proxy listener on an ephemeral localhost port, and a small client that
speaks the line protocol.
"""

import asyncio
import contextlib
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import pytest
import structlog

from sqlp_proxy.config import ProxyConfig
from sqlp_proxy.server import SQLProxyServer

logger = structlog.get_logger()


class FakeStatementResult:
    def __init__(self, columns: Sequence[str] = (), rows: Sequence[Sequence[Any]] = (),
                 returns_rows: bool = True, update_count: int = -1):
        self._columns = list(columns)
        self._rows = [tuple(row) for row in rows]
        self._returns_rows = returns_rows
        self._update_count = update_count
        self.closed = False

    @property
    def returns_rows(self) -> bool:
        return self._returns_rows

    @property
    def columns(self) -> List[str]:
        return list(self._columns)

    @property
    def update_count(self) -> int:
        return self._update_count

    def __iter__(self):
        return iter(self._rows)

    def close(self):
        self.closed = True


class FakeStoreConnection:
    def __init__(self, store: "FakeStore"):
        self.store = store
        self.closed = False

    def execute(self, statement: str) -> FakeStatementResult:
        self.store.statements.append(statement)
        if self.store.execute_error is not None:
            raise self.store.execute_error
        result = self.store.results.get(statement)
        if result is None:
            result = FakeStatementResult(returns_rows=False, update_count=self.store.default_update_count)
        self.store.last_result = result
        return result

    def close(self):
        self.closed = True
        with self.store.lock:
            self.store.closed += 1


@dataclass
class FakeStore:
    """StoreConnector test double that records every interaction"""
    results: Dict[str, FakeStatementResult] = field(default_factory=dict)
    connect_error: Optional[BaseException] = None
    execute_error: Optional[BaseException] = None
    default_update_count: int = 0
    connect_calls: List[tuple] = field(default_factory=list)
    statements: List[str] = field(default_factory=list)
    opened: int = 0
    closed: int = 0
    last_result: Optional[FakeStatementResult] = None
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def add_query(self, statement: str, columns: Sequence[str], rows: Sequence[Sequence[Any]]):
        self.results[statement] = FakeStatementResult(columns, rows)

    def add_update(self, statement: str, update_count: int):
        self.results[statement] = FakeStatementResult(returns_rows=False, update_count=update_count)

    def connect(self, driver: str, locator: str, username: str, password: str) -> FakeStoreConnection:
        self.connect_calls.append((driver, locator, username, password))
        if self.connect_error is not None:
            raise self.connect_error
        with self.lock:
            self.opened += 1
        return FakeStoreConnection(self)


@dataclass
class ProxyResponse:
    """Parsed response: status line, headers and raw body"""
    raw: bytes
    status_line: str = ""
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    @classmethod
    def parse(cls, raw: bytes) -> "ProxyResponse":
        response = cls(raw=raw)
        if not raw:
            return response
        head, _, response.body = raw.partition(b"\n\n")
        lines = head.decode("utf-8").split("\n")
        response.status_line = lines[0]
        for line in lines[1:]:
            name, _, value = line.partition(":")
            response.headers[name.strip()] = value.strip()
        return response

    @property
    def status_code(self) -> int:
        return int(self.status_line.split()[1])

    @property
    def text(self) -> str:
        return self.body.decode("utf-8")


def request_lines(url="sqlite:///test.db", username="scott", password="tiger",
                  driver="sqlite", statement="SELECT id, name FROM users",
                  output_format=None) -> List[str]:
    """Build a complete parameter block; pass None to leave a field out"""
    lines = []
    for name, value in (("x-sqlp-url", url),
                        ("x-sqlp-username", username),
                        ("x-sqlp-pwd", password),
                        ("x-sqlp-driver", driver),
                        ("x-sqlp-stmt", statement),
                        ("x-sqlp-format", output_format)):
        if value is not None:
            lines.append(f"{name}:{value}")
    return lines


async def send_lines(port: int, lines: Sequence[str], terminate: bool = True,
                     line_ending: str = "\n", timeout: float = 5.0) -> ProxyResponse:
    """Send a parameter block and read until the proxy closes the connection"""
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    try:
        payload = "".join(line + line_ending for line in lines)
        if terminate:
            payload += line_ending
        writer.write(payload.encode("utf-8"))
        await writer.drain()
        if not terminate:
            writer.write_eof()
        data = await asyncio.wait_for(reader.read(), timeout=timeout)
    finally:
        writer.close()
        with contextlib.suppress(ConnectionError):
            await writer.wait_closed()
    return ProxyResponse.parse(data)


@pytest.fixture
def fake_store() -> FakeStore:
    return FakeStore()


@pytest.fixture
async def proxy_server(fake_store):
    """Real listener on an ephemeral port backed by the fake store"""
    server = SQLProxyServer(ProxyConfig(host="127.0.0.1", port=0, max_workers=4),
                            connector=fake_store)
    server_task = asyncio.create_task(server.start())
    try:
        await asyncio.wait_for(server.ready.wait(), timeout=5)
        logger.info("Proxy server ready for testing", port=server.port)
        yield server
    finally:
        server_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await server_task
        await server.stop()
