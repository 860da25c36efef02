"""
Asynchronous Electrum protocol client.

Speaks newline-delimited JSON-RPC 2.0 to an Electrum server (ElectrumX,
Fulcrum, electrs) over TCP or TLS. Requests for many scripts are sent as a
single JSON-RPC batch. A background reader task matches responses to
requests by id and queues ``blockchain.headers.subscribe`` notifications.
"""

from __future__ import annotations

import asyncio
import json
from collections import deque
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from loguru import logger
from pydantic import BaseModel, ConfigDict, ValidationError

from hdwatch.bitcoin import script_to_scripthash
from hdwatch.models import BlockHeader
from hdwatch.network import ConnectionError, LineConnection, connect_direct

CLIENT_NAME = "hdwatch"
PROTOCOL_VERSION = "1.4"

DEFAULT_CONNECT_TIMEOUT = 5.0
DEFAULT_REQUEST_TIMEOUT = 30.0

HEADERS_SUBSCRIBE = "blockchain.headers.subscribe"


class ElectrumError(Exception):
    pass


class ElectrumConnectionError(ElectrumError):
    """Transport failure: connect, send, receive or timeout."""


class ElectrumProtocolError(ElectrumError):
    """The server answered with an error or with malformed data."""

    def __init__(self, message: str, code: int | None = None):
        self.code = code
        super().__init__(message if code is None else f"{message} (code {code})")


class HistoryEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    tx_hash: str
    height: int
    fee: int | None = None


class UnspentEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    tx_hash: str
    tx_pos: int
    height: int
    value: int


@dataclass(frozen=True)
class ElectrumEndpoint:
    host: str
    port: int
    use_ssl: bool = False

    @classmethod
    def parse(cls, endpoint: str) -> ElectrumEndpoint:
        """
        Parse an Electrum server address.

        Accepted forms: ``ssl://host:port``, ``tcp://host:port``,
        ``host:port:s`` / ``host:port:t`` (Electrum style) and ``host:port``
        (plain TCP).
        """
        text = endpoint.strip()
        use_ssl = False

        if "://" in text:
            scheme, _, text = text.partition("://")
            scheme = scheme.lower()
            if scheme not in ("ssl", "tcp"):
                raise ValueError(f"Unsupported Electrum scheme: {scheme}")
            use_ssl = scheme == "ssl"
        elif text.endswith((":s", ":t")):
            use_ssl = text.endswith(":s")
            text = text[:-2]

        host, sep, port_str = text.rpartition(":")
        if not sep or not host:
            raise ValueError(f"Electrum endpoint must include a port: {endpoint}")
        host = host.strip("[]")

        try:
            port = int(port_str)
        except ValueError as e:
            raise ValueError(f"Invalid port in Electrum endpoint: {endpoint}") from e
        if not 0 < port <= 65535:
            raise ValueError(f"Port must be between 1 and 65535: {endpoint}")

        return cls(host=host, port=port, use_ssl=use_ssl)

    def __str__(self) -> str:
        return f"{'ssl' if self.use_ssl else 'tcp'}://{self.host}:{self.port}"


def _parse_header(obj: Any) -> BlockHeader:
    try:
        return BlockHeader(height=obj["height"], header_hex=obj["hex"])
    except (KeyError, TypeError, ValidationError) as e:
        raise ElectrumProtocolError(f"Malformed block header: {obj!r}") from e


class ElectrumClient:
    """
    Electrum JSON-RPC client bound to one server connection.

    Usage:
        async with ElectrumClient("ssl://electrum.blockstream.info:50002") as client:
            tip = await client.block_headers_subscribe()
            histories = await client.batch_script_get_history(scripts)
    """

    def __init__(
        self,
        endpoint: ElectrumEndpoint | str,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        validate_certificate: bool = True,
    ):
        if isinstance(endpoint, str):
            endpoint = ElectrumEndpoint.parse(endpoint)
        self.endpoint = endpoint
        self.connect_timeout = connect_timeout
        self.request_timeout = request_timeout
        self.validate_certificate = validate_certificate

        self.server_version: list[str] | None = None
        self._conn: LineConnection | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._pending: dict[int, asyncio.Future[dict[str, Any]]] = {}
        self._request_id = 0
        self._headers: deque[BlockHeader] = deque()
        self._failure: ElectrumError | None = None

    async def __aenter__(self) -> ElectrumClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def connect(self) -> None:
        """Open the connection and negotiate the protocol version."""
        try:
            self._conn = await connect_direct(
                self.endpoint.host,
                self.endpoint.port,
                use_ssl=self.endpoint.use_ssl,
                validate_certificate=self.validate_certificate,
                timeout=self.connect_timeout,
            )
        except ConnectionError as e:
            raise ElectrumConnectionError(str(e)) from e

        self._failure = None
        self._reader_task = asyncio.create_task(self._read_loop(), name="electrum-reader")

        self.server_version = await self.request("server.version", CLIENT_NAME, PROTOCOL_VERSION)
        logger.debug(f"Electrum server {self.endpoint} version: {self.server_version}")

    async def close(self) -> None:
        if self._reader_task is not None:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
            self._reader_task = None

        if self._conn is not None:
            await self._conn.close()
            self._conn = None

        self._fail(ElectrumConnectionError("Client closed"))

    @property
    def is_connected(self) -> bool:
        return self._conn is not None and self._conn.is_connected() and self._failure is None

    # -- JSON-RPC plumbing ---------------------------------------------------

    async def _read_loop(self) -> None:
        try:
            conn = self._ensure_usable()
            while True:
                line = await conn.receive()
                if not line:
                    continue
                try:
                    message = json.loads(line)
                except json.JSONDecodeError as e:
                    raise ElectrumProtocolError(f"Invalid JSON from server: {e}") from e

                for item in message if isinstance(message, list) else [message]:
                    self._dispatch(item)
        except ConnectionError as e:
            logger.warning(f"Electrum connection to {self.endpoint} lost: {e}")
            self._fail(ElectrumConnectionError(str(e)))
        except ElectrumError as e:
            logger.warning(f"Electrum protocol failure from {self.endpoint}: {e}")
            self._fail(e)

    def _dispatch(self, item: Any) -> None:
        if not isinstance(item, dict):
            raise ElectrumProtocolError(f"Unexpected message from server: {item!r}")

        if item.get("id") is not None:
            future = self._pending.pop(item["id"], None)
            if future is None:
                logger.warning(f"Response for unknown request id {item['id']}")
            elif not future.done():
                future.set_result(item)
            return

        if item.get("method") == HEADERS_SUBSCRIBE:
            params = item.get("params") or []
            if params:
                header = _parse_header(params[0])
                logger.debug(f"New block header notification at height {header.height}")
                self._headers.append(header)
            return

        logger.trace(f"Ignoring notification: {item.get('method')}")

    def _fail(self, error: ElectrumError) -> None:
        if self._failure is None:
            self._failure = error
        pending = list(self._pending.values())
        self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(error)

    def _ensure_usable(self) -> LineConnection:
        if self._failure is not None:
            raise self._failure
        if self._conn is None:
            raise ElectrumConnectionError("Not connected")
        return self._conn

    async def _call(self, calls: Sequence[tuple[str, list[Any]]], batch: bool) -> list[Any]:
        conn = self._ensure_usable()
        loop = asyncio.get_running_loop()

        payload: list[dict[str, Any]] = []
        futures: list[asyncio.Future[dict[str, Any]]] = []
        for method, params in calls:
            self._request_id += 1
            future: asyncio.Future[dict[str, Any]] = loop.create_future()
            self._pending[self._request_id] = future
            futures.append(future)
            payload.append(
                {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}
            )

        body = payload if batch else payload[0]
        try:
            await conn.send(json.dumps(body, separators=(",", ":")).encode("utf-8"))
            responses = await asyncio.wait_for(
                asyncio.gather(*futures), timeout=self.request_timeout
            )
        except ConnectionError as e:
            self._fail(ElectrumConnectionError(str(e)))
            raise ElectrumConnectionError(str(e)) from e
        except asyncio.TimeoutError as e:
            for entry in payload:
                self._pending.pop(entry["id"], None)
            method = calls[0][0]
            raise ElectrumConnectionError(
                f"Request {method} timed out after {self.request_timeout}s"
            ) from e

        results = []
        for (method, _), response in zip(calls, responses, strict=True):
            error = response.get("error")
            if error:
                if isinstance(error, dict):
                    raise ElectrumProtocolError(
                        f"{method}: {error.get('message', error)}", error.get("code")
                    )
                raise ElectrumProtocolError(f"{method}: {error}")
            results.append(response.get("result"))
        return results

    async def request(self, method: str, *params: Any) -> Any:
        logger.trace(f"Electrum request {method}")
        return (await self._call([(method, list(params))], batch=False))[0]

    async def batch_request(self, method: str, params_list: Iterable[list[Any]]) -> list[Any]:
        calls = [(method, params) for params in params_list]
        if not calls:
            return []
        logger.trace(f"Electrum batch {method} x{len(calls)}")
        return await self._call(calls, batch=True)

    # -- Protocol methods ------------------------------------------------------

    async def ping(self) -> None:
        await self.request("server.ping")

    async def block_headers_subscribe(self) -> BlockHeader:
        """Subscribe to new tips; returns the current best header."""
        return _parse_header(await self.request(HEADERS_SUBSCRIBE))

    def block_headers_pop(self) -> BlockHeader | None:
        """
        Most recent header notification received since the last call, if any.

        Older queued notifications are discarded. Raises the connection
        failure if the connection has died.
        """
        if self._failure is not None:
            raise self._failure
        latest = None
        while self._headers:
            latest = self._headers.popleft()
        return latest

    async def batch_estimate_fee(self, targets: Iterable[int]) -> list[float]:
        """Fee rates in BTC/kvB per confirmation target (-1 when unknown)."""
        results = await self.batch_request("blockchain.estimatefee", ([t] for t in targets))
        try:
            return [float(rate) for rate in results]
        except (TypeError, ValueError) as e:
            raise ElectrumProtocolError(f"Malformed fee estimate: {results!r}") from e

    async def batch_script_get_history(
        self, scripts: Iterable[bytes]
    ) -> list[list[HistoryEntry]]:
        results = await self.batch_request(
            "blockchain.scripthash.get_history",
            ([script_to_scripthash(script)] for script in scripts),
        )
        try:
            return [[HistoryEntry.model_validate(item) for item in result] for result in results]
        except (TypeError, ValidationError) as e:
            raise ElectrumProtocolError(f"Malformed history response: {e}") from e

    async def batch_script_list_unspent(
        self, scripts: Iterable[bytes]
    ) -> list[list[UnspentEntry]]:
        results = await self.batch_request(
            "blockchain.scripthash.listunspent",
            ([script_to_scripthash(script)] for script in scripts),
        )
        try:
            return [[UnspentEntry.model_validate(item) for item in result] for result in results]
        except (TypeError, ValidationError) as e:
            raise ElectrumProtocolError(f"Malformed unspent response: {e}") from e

    async def batch_transaction_get(self, txids: Iterable[str]) -> list[str]:
        """Raw transactions as hex, in the order of ``txids``."""
        results = await self.batch_request("blockchain.transaction.get", ([t] for t in txids))
        for raw in results:
            if not isinstance(raw, str):
                raise ElectrumProtocolError(f"Malformed transaction response: {raw!r}")
        return results
