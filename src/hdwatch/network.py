"""
Network primitives: newline-delimited stream connections over TCP or TLS.
"""

from __future__ import annotations

import asyncio
import ssl

from loguru import logger


class ConnectionError(Exception):
    pass


class LineConnection:
    """Stream connection exchanging newline-terminated messages."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        max_message_size: int = 16 * 1024 * 1024,  # 16MB, large batch replies
    ):
        self.reader = reader
        self.writer = writer
        self.max_message_size = max_message_size
        self._connected = True
        self._send_lock = asyncio.Lock()

    async def send(self, data: bytes) -> None:
        if not self._connected:
            raise ConnectionError("Connection closed")
        if len(data) > self.max_message_size:
            raise ValueError(f"Message too large: {len(data)} > {self.max_message_size}")

        async with self._send_lock:
            if not self._connected:
                raise ConnectionError("Connection closed")

            logger.trace(f"LineConnection.send: sending {len(data) + 1} bytes")
            try:
                self.writer.write(data + b"\n")
                await self.writer.drain()
            except (BrokenPipeError, ConnectionResetError, OSError) as e:
                self._connected = False
                raise ConnectionError(f"Send failed: {e}") from e

    async def receive(self) -> bytes:
        if not self._connected:
            raise ConnectionError("Connection closed")

        try:
            data = await self.reader.readuntil(b"\n")
        except asyncio.LimitOverrunError as e:
            self._connected = False
            logger.error(f"Message too large (>{self.max_message_size} bytes)")
            raise ConnectionError("Message too large") from e
        except asyncio.IncompleteReadError as e:
            self._connected = False
            logger.trace("LineConnection.receive: connection closed by peer")
            raise ConnectionError("Connection closed by peer") from e
        except (ConnectionResetError, OSError) as e:
            self._connected = False
            raise ConnectionError(f"Receive failed: {e}") from e

        stripped = data.rstrip(b"\r\n")
        logger.trace(f"LineConnection.receive: received {len(stripped)} bytes")
        return stripped

    async def close(self) -> None:
        if not self._connected:
            return
        self._connected = False
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionResetError, OSError, ssl.SSLError):
            pass

    def is_connected(self) -> bool:
        return self._connected


def make_ssl_context(validate_certificate: bool = True) -> ssl.SSLContext:
    context = ssl.create_default_context()
    if not validate_certificate:
        # Electrum servers commonly run with self-signed certificates
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


async def connect_direct(
    host: str,
    port: int,
    use_ssl: bool = False,
    validate_certificate: bool = True,
    max_message_size: int = 16 * 1024 * 1024,
    timeout: float = 30.0,
) -> LineConnection:
    """Open a TCP (optionally TLS) connection with a bounded connect timeout."""
    ssl_context = make_ssl_context(validate_certificate) if use_ssl else None
    scheme = "ssl" if use_ssl else "tcp"
    try:
        logger.info(f"Connecting to {scheme}://{host}:{port}")
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port, ssl=ssl_context, limit=max_message_size),
            timeout=timeout,
        )
        logger.info(f"Connected to {host}:{port}")
        return LineConnection(reader, writer, max_message_size)
    except asyncio.TimeoutError as e:
        logger.error(f"Timed out connecting to {host}:{port} after {timeout}s")
        raise ConnectionError(f"Connection to {host}:{port} timed out") from e
    except (OSError, ssl.SSLError) as e:
        logger.error(f"Failed to connect to {host}:{port}: {e}")
        raise ConnectionError(f"Direct connection failed: {e}") from e
