"""
SQLP Line Protocol Implementation

Drives one accepted connection through its request cycle:

    AWAITING_LINE --(name:value line)--> AWAITING_LINE
    AWAITING_LINE --(empty line)-------> EXECUTING --> DONE

Responses:
- missing mandatory parameter → 400, no headers, empty body
- execution / encoding failure → 400, text/plain body with the error message
- success                     → 200, JSON or XML body

The body is serialized completely before anything is written, so a failure
never leaves a half-written 200 response on the socket. The connection is
closed after the response (no keep-alive).
"""

import asyncio
import enum
import time

import structlog

from .encoders import (
    EncodingError,
    build_error_response,
    build_rejection_response,
    build_success_response,
    encode_result,
)
from .parameters import MissingParameterError, ParameterAccumulator, RequestParameters, validate_parameters
from .sql_executor import ExecutionError, StatementExecutor, describe_error

logger = structlog.get_logger()


class SessionState(enum.Enum):
    AWAITING_LINE = "awaiting_line"
    EXECUTING = "executing"
    DONE = "done"


class SQLProxyProtocol:
    """
    SQLP Protocol Handler

    Owns the parameter accumulator of a single client connection. Nothing is
    shared between handlers apart from the statement executor's thread pool.
    """

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                 executor: StatementExecutor, connection_id: str):
        self.reader = reader
        self.writer = writer
        self.executor = executor
        self.connection_id = connection_id

        self.state = SessionState.AWAITING_LINE
        self.accumulator = ParameterAccumulator()
        self.requests_handled = 0
        self.discarded_lines = 0

        logger.debug("Protocol handler initialized", connection_id=connection_id)

    @staticmethod
    def decode_line(raw: bytes) -> str:
        """Decode a received line and strip its \\n or \\r\\n terminator"""
        line = raw.decode('utf-8', errors='replace')
        if line.endswith('\n'):
            line = line[:-1]
            if line.endswith('\r'):
                line = line[:-1]
        return line

    async def message_loop(self):
        """
        Read lines until the terminator, answer the request, then stop.

        A peer that disconnects before the terminator gets no response and
        nothing is executed.
        """
        try:
            while self.state is SessionState.AWAITING_LINE:
                raw = await self.reader.readline()
                if not raw:
                    logger.info("Client disconnected before end of request",
                                connection_id=self.connection_id,
                                parameters_received=len(self.accumulator.parameters),
                                discarded_lines=self.accumulator.discarded_lines)
                    return

                if self.accumulator.ingest(self.decode_line(raw)):
                    await self.handle_request()

        except ValueError as e:
            # StreamReader.readline() reports an over-long line as ValueError
            logger.warning("Request line exceeds stream limit, closing connection",
                           connection_id=self.connection_id, error=str(e))
        except (ConnectionResetError, BrokenPipeError, asyncio.IncompleteReadError):
            logger.info("Client disconnected", connection_id=self.connection_id)

    async def handle_request(self):
        """Gate, execute, encode and answer the accumulated request"""
        self.state = SessionState.EXECUTING
        self.discarded_lines += self.accumulator.discarded_lines
        logger.info("Request received",
                    connection_id=self.connection_id,
                    parameters=sorted(self.accumulator.parameters),
                    discarded_lines=self.accumulator.discarded_lines)
        try:
            try:
                request = validate_parameters(self.accumulator.parameters)
            except MissingParameterError as e:
                logger.info("Request rejected",
                            connection_id=self.connection_id,
                            missing=e.missing)
                await self.send_response(build_rejection_response())
                return

            response = await self.execute_request(request)
            await self.send_response(response)
        finally:
            self.requests_handled += 1
            self.accumulator.reset()
            self.state = SessionState.DONE

    async def execute_request(self, request: RequestParameters) -> bytes:
        """Run the statement and build the full response bytes"""
        start_time = time.perf_counter()
        try:
            rows = await self.executor.execute_async(
                request.driver,
                request.url,
                request.username,
                request.password,
                request.statement,
            )
            encoded = encode_result(rows, request.output_format)

        except (ExecutionError, EncodingError) as e:
            logger.error("Request failed",
                         connection_id=self.connection_id,
                         error_type=type(e).__name__,
                         error=str(e))
            return build_error_response(describe_error(e))

        except Exception as e:
            logger.exception("Unexpected error while handling request",
                             connection_id=self.connection_id)
            return build_error_response(describe_error(e))

        logger.info("Request completed",
                    connection_id=self.connection_id,
                    content_type=encoded.content_type,
                    records=len(rows),
                    body_bytes=len(encoded.body),
                    total_time_ms=round((time.perf_counter() - start_time) * 1000, 2))
        return build_success_response(encoded)

    async def send_response(self, payload: bytes):
        """Write the response, flush it and close the sink"""
        self.writer.write(payload)
        await self.writer.drain()
        await self.close()

    async def close(self):
        if self.writer.is_closing():
            return
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionResetError, BrokenPipeError) as e:
            logger.debug("Connection closed by peer", connection_id=self.connection_id, error=str(e))
