from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Iterable, List, Tuple

import aiohttp

from . import protocol
from .connection import Connection, ConnectionEvent, EventKind
from .errors import ConnectionNotOpenError, TransportError
from .protocol import ProtocolMessage, RoomId

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReceivedEvent:
    """A protocol message as observed by one user, in arrival order."""

    index: int
    connection_id: int | None
    received_at: float
    message: ProtocolMessage


class SendBatch:
    """Sends submitted back-to-back without awaiting each other."""

    def __init__(self, tasks: List[asyncio.Task]) -> None:
        self._tasks = tasks

    def __len__(self) -> int:
        return len(self._tasks)

    async def wait(self) -> List[BaseException | None]:
        """Wait for every submission; return one error (or ``None``) per send."""

        results = await asyncio.gather(*self._tasks, return_exceptions=True)
        return [result if isinstance(result, BaseException) else None for result in results]


class SimulatedUser:
    def __init__(
        self,
        name: str,
        token: str,
        *,
        session: aiohttp.ClientSession | None = None,
        connect_timeout: float = 10.0,
        close_timeout: float = 1.0,
    ) -> None:
        self.name = name
        self.token = token
        self.connections: List[Connection] = []
        self.errors: List[TransportError] = []
        self.current_room: RoomId | None = None
        self._session = session
        self._connect_timeout = connect_timeout
        self._close_timeout = close_timeout
        self._log: List[ReceivedEvent] = []
        self._delivery_count = 0
        self._consumers: dict[int, asyncio.Task] = {}
        self._faulted = False

    def __repr__(self) -> str:
        return f"SimulatedUser({self.name!r}, connections={len(self.connections)})"

    @property
    def active(self) -> Connection | None:
        return self.connections[-1] if self.connections else None

    @property
    def is_open(self) -> bool:
        return self.active is not None and self.active.is_open

    @property
    def faulted(self) -> bool:
        return self._faulted

    @property
    def events(self) -> Tuple[ReceivedEvent, ...]:
        return tuple(self._log)

    @property
    def delivery_count(self) -> int:
        return self._delivery_count

    async def connect(self, endpoint: str, room_id: RoomId | None = None, **kwargs) -> Connection:
        kwargs.setdefault("session", self._session)
        kwargs.setdefault("connect_timeout", self._connect_timeout)
        kwargs.setdefault("close_timeout", self._close_timeout)
        connection = Connection(
            endpoint,
            self.token,
            room_id,
            label=f"{self.name}#{len(self.connections) + 1}",
            **kwargs,
        )
        self.connections.append(connection)
        try:
            await connection.connect()
        except TransportError as exc:
            self._record_error(exc)
            raise
        self._consumers[connection.connection_id] = asyncio.create_task(self._consume(connection))
        if room_id is not None:
            self.current_room = room_id
        return connection

    async def reconnect(self, endpoint: str, room_id: RoomId | None = None, **kwargs) -> Connection:
        previous = self.active
        if previous is not None:
            await self._close_connection(previous)
        self.current_room = None
        connection = await self.connect(endpoint, room_id, **kwargs)
        self._faulted = False
        return connection

    async def join_room(self, room_id: RoomId) -> None:
        await self._send(protocol.join_room(room_id))
        self.current_room = room_id
        logger.info("[%s] joined room %s", self.name, room_id)

    async def leave_room(self, room_id: RoomId) -> None:
        await self._send(protocol.leave_room(room_id))
        if protocol.room_key(self.current_room) == protocol.room_key(room_id):
            self.current_room = None
        logger.info("[%s] left room %s", self.name, room_id)

    async def send_message(self, content: str, room_id: RoomId | None = None) -> ProtocolMessage:
        self.require_open()
        message = protocol.send_message(self.resolve_room(room_id), content)
        await self._send(message)
        logger.debug("[%s] sent %r", self.name, content)
        return message

    def submit_batch(self, contents: Iterable[str], room_id: RoomId | None = None) -> SendBatch:
        """Submit every message at once and return without awaiting delivery."""

        connection = self.require_open()
        room = self.resolve_room(room_id)
        tasks = [
            asyncio.create_task(self._send_on(connection, protocol.send_message(room, content)))
            for content in contents
        ]
        return SendBatch(tasks)

    def resolve_room(self, room_id: RoomId | None = None) -> RoomId:
        if room_id is not None:
            return room_id
        if self.current_room is not None:
            return self.current_room
        active = self.active
        if active is not None and active.room_id is not None:
            return active.room_id
        raise ValueError(f"{self.name}: no room to send to")

    def on_event(self, message: ProtocolMessage, connection_id: int | None = None) -> None:
        self._log.append(
            ReceivedEvent(
                index=len(self._log),
                connection_id=connection_id,
                received_at=time.monotonic(),
                message=message,
            )
        )
        if message.type == protocol.NEW_MESSAGE:
            self._delivery_count += 1

    async def close(self) -> None:
        await asyncio.gather(
            *(self._close_connection(connection) for connection in self.connections),
            return_exceptions=True,
        )

    async def _close_connection(self, connection: Connection) -> None:
        await connection.close()
        consumer = self._consumers.pop(connection.connection_id, None)
        if consumer is None:
            return
        done, _ = await asyncio.wait({consumer}, timeout=self._close_timeout)
        if not done:
            logger.warning("[%s] %s reader still running after close, cancelling", self.name, connection.label)
            consumer.cancel()
        await asyncio.gather(consumer, return_exceptions=True)

    def require_open(self) -> Connection:
        connection = self.active
        if connection is None or not connection.is_open:
            state = "no connection" if connection is None else connection.state.value
            raise ConnectionNotOpenError(f"{self.name}: connection not open ({state})")
        return connection

    async def _send(self, message: ProtocolMessage) -> None:
        await self._send_on(self.require_open(), message)

    async def _send_on(self, connection: Connection, message: ProtocolMessage) -> None:
        try:
            await connection.send(message)
        except TransportError as exc:
            self._record_error(exc)
            raise

    async def _consume(self, connection: Connection) -> None:
        async for event in connection.events():
            self._handle(connection, event)

    def _handle(self, connection: Connection, event: ConnectionEvent) -> None:
        if event.kind is EventKind.MESSAGE and event.message is not None:
            self.on_event(event.message, connection.connection_id)
        elif event.kind is EventKind.DECODE_ERROR:
            self.errors.append(event.error)
        elif event.kind is EventKind.ERROR:
            self._record_error(event.error)
        elif event.kind is EventKind.CLOSED:
            logger.debug("[%s] %s stream finished", self.name, connection.label)

    def _record_error(self, error: Exception | None) -> None:
        if error is None:
            return
        if not isinstance(error, TransportError):
            error = TransportError(str(error))
        self.errors.append(error)
        self._faulted = True
        logger.warning("[%s] transport error: %s", self.name, error)
