from __future__ import annotations

import asyncio
import enum
import itertools
import logging
from dataclasses import dataclass
from typing import AsyncIterator, List
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import aiohttp
from aiohttp import WSMsgType

from .errors import ConnectError, ConnectionNotOpenError, FrameDecodeError, TransportError
from .protocol import ProtocolMessage, RoomId, decode_envelope, encode, frame_lines

logger = logging.getLogger(__name__)

WS_SCHEMES = {"ws", "wss", "http", "https"}
SUBPROTOCOL = "chat"

_connection_ids = itertools.count(1)


class ConnectionState(enum.Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class EventKind(enum.Enum):
    MESSAGE = "message"
    DECODE_ERROR = "decode_error"
    ERROR = "error"
    CLOSED = "closed"


@dataclass(frozen=True)
class ConnectionEvent:
    kind: EventKind
    message: ProtocolMessage | None = None
    error: Exception | None = None
    close_code: int | None = None


def build_url(endpoint: str, token: str, room_id: RoomId | None = None) -> str:
    """Append the session token and target room to ``endpoint`` as query parameters."""

    parts = urlsplit(endpoint)
    if parts.scheme not in WS_SCHEMES or not parts.netloc:
        raise ValueError(f"malformed websocket endpoint: {endpoint!r}")
    query = [(key, value) for key, value in parse_qsl(parts.query) if key not in {"token", "room_id"}]
    query.append(("token", token))
    if room_id is not None:
        query.append(("room_id", str(room_id)))
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


class Connection:
    """One persistent websocket session to the chat server.

    The connection moves through ``connecting -> open -> closing -> closed``.
    Inbound traffic is exposed through :meth:`events`, which has a single
    consumer and always ends with a ``closed`` event.
    """

    def __init__(
        self,
        endpoint: str,
        token: str,
        room_id: RoomId | None = None,
        *,
        session: aiohttp.ClientSession | None = None,
        connect_timeout: float = 10.0,
        close_timeout: float = 1.0,
        label: str | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.token = token
        self.room_id = room_id
        self.connection_id = next(_connection_ids)
        self.label = label or f"conn-{self.connection_id}"
        self.state = ConnectionState.CONNECTING
        self.close_code: int | None = None
        self.connect_timeout = connect_timeout
        self.close_timeout = close_timeout
        self._session = session
        self._owns_session = session is None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._connect_attempted = False
        self._stream_started = False
        self._closed = asyncio.Event()

    @classmethod
    async def open(cls, endpoint: str, token: str, room_id: RoomId | None = None, **kwargs) -> "Connection":
        connection = cls(endpoint, token, room_id, **kwargs)
        await connection.connect()
        return connection

    @property
    def is_open(self) -> bool:
        return self.state is ConnectionState.OPEN

    async def connect(self) -> None:
        if self._connect_attempted:
            raise RuntimeError(f"{self.label}: connect already attempted")
        self._connect_attempted = True

        try:
            url = build_url(self.endpoint, self.token, self.room_id)
        except ValueError as exc:
            await self._finish()
            raise ConnectError(self.endpoint, str(exc)) from exc

        if self._session is None:
            self._session = aiohttp.ClientSession()
        logger.debug("[%s] connecting to %s", self.label, self.endpoint)
        try:
            self._ws = await asyncio.wait_for(
                self._session.ws_connect(url, protocols=(SUBPROTOCOL,), autoping=True),
                timeout=self.connect_timeout,
            )
        except aiohttp.WSServerHandshakeError as exc:
            await self._finish()
            raise ConnectError(self.endpoint, "handshake rejected", status=exc.status) from exc
        except asyncio.TimeoutError as exc:
            await self._finish()
            raise ConnectError(self.endpoint, f"no handshake within {self.connect_timeout}s") from exc
        except (aiohttp.ClientError, OSError, ValueError) as exc:
            await self._finish()
            raise ConnectError(self.endpoint, str(exc) or type(exc).__name__) from exc
        except asyncio.CancelledError:
            await self._finish()
            raise

        self.state = ConnectionState.OPEN
        logger.info("[%s] connected", self.label)

    async def send(self, message: ProtocolMessage) -> None:
        if self.state is not ConnectionState.OPEN or self._ws is None:
            raise ConnectionNotOpenError(f"{self.label}: cannot send {message.type} while {self.state.value}")
        try:
            await self._ws.send_str(encode(message))
        except (ConnectionError, aiohttp.ClientError, RuntimeError) as exc:
            raise TransportError(f"{self.label}: send failed: {exc}") from exc
        logger.debug("[%s] sent %s", self.label, message.type)

    async def events(self) -> AsyncIterator[ConnectionEvent]:
        if self._stream_started:
            raise RuntimeError(f"{self.label}: event stream already consumed")
        self._stream_started = True
        if self._ws is None:
            raise ConnectionNotOpenError(f"{self.label}: no session to read from")

        ws = self._ws
        async for msg in ws:
            if self.state is not ConnectionState.OPEN:
                break
            if msg.type in (WSMsgType.TEXT, WSMsgType.BINARY):
                for event in self._decode(msg.data):
                    yield event
            elif msg.type == WSMsgType.ERROR:
                error = TransportError(f"{self.label}: {ws.exception() or 'websocket error'}")
                logger.warning("%s", error)
                yield ConnectionEvent(EventKind.ERROR, error=error)
                break

        if self.state is ConnectionState.OPEN:
            # Remote side went away without us asking.
            await self.close()
        else:
            await self._closed.wait()
        yield ConnectionEvent(EventKind.CLOSED, close_code=self.close_code)

    def _decode(self, data: str | bytes) -> List[ConnectionEvent]:
        # A bad line only costs that line; the rest of a coalesced frame still counts.
        try:
            lines = frame_lines(data)
        except FrameDecodeError as exc:
            logger.warning("[%s] undecodable frame: %s", self.label, exc)
            return [ConnectionEvent(EventKind.DECODE_ERROR, error=exc)]
        events = []
        for line in lines:
            try:
                events.append(ConnectionEvent(EventKind.MESSAGE, message=decode_envelope(line)))
            except FrameDecodeError as exc:
                logger.warning("[%s] undecodable envelope: %s", self.label, exc)
                events.append(ConnectionEvent(EventKind.DECODE_ERROR, error=exc))
        return events

    async def close(self) -> None:
        if self._closed.is_set():
            return
        if self.state is ConnectionState.CLOSING:
            await self._closed.wait()
            return
        self.state = ConnectionState.CLOSING
        try:
            if self._ws is not None and not self._ws.closed:
                try:
                    await asyncio.wait_for(self._ws.close(), timeout=self.close_timeout)
                except asyncio.TimeoutError:
                    # Cancelling aiohttp's close drops the underlying transport.
                    logger.warning("[%s] close handshake timed out after %ss", self.label, self.close_timeout)
        finally:
            if self._ws is not None:
                self.close_code = self._ws.close_code
            await self._finish()
        logger.info("[%s] closed (code=%s)", self.label, self.close_code)

    async def _finish(self) -> None:
        self.state = ConnectionState.CLOSED
        if self._owns_session and self._session is not None:
            await self._session.close()
        self._closed.set()
