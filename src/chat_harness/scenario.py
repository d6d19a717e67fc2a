"""Scenario steps.

Every step carries its own ``settle`` window: the runner sleeps that many
seconds after executing the step so asynchronous delivery can complete before
the next step runs.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple, Union

from .config import UserConfig
from .protocol import RoomId


@dataclass(frozen=True)
class ConnectAll:
    room_id: RoomId | None = None
    settle: float = 0.0

    def describe(self) -> str:
        return "connect all users" + (f" to room {self.room_id}" if self.room_id is not None else "")


@dataclass(frozen=True)
class Join:
    user: str
    room_id: RoomId
    settle: float = 0.0

    def describe(self) -> str:
        return f"{self.user} joins room {self.room_id}"


@dataclass(frozen=True)
class Leave:
    user: str
    room_id: RoomId
    settle: float = 0.0

    def describe(self) -> str:
        return f"{self.user} leaves room {self.room_id}"


@dataclass(frozen=True)
class Send:
    user: str
    content: str
    room_id: RoomId | None = None
    settle: float = 0.0

    def describe(self) -> str:
        return f"{self.user} sends {self.content!r}"


@dataclass(frozen=True)
class SendConcurrent:
    """Sends issued back-to-back, without waiting on each other."""

    pairs: Tuple[Tuple[str, str], ...]
    room_id: RoomId | None = None
    settle: float = 0.0

    def describe(self) -> str:
        return f"{len(self.pairs)} concurrent sends"


@dataclass(frozen=True)
class Wait:
    duration: float

    @property
    def settle(self) -> float:
        return self.duration

    def describe(self) -> str:
        return f"wait {self.duration:.2f}s"


@dataclass(frozen=True)
class Reconnect:
    user: str
    room_id: RoomId | None = None
    settle: float = 0.0

    def describe(self) -> str:
        return f"{self.user} reconnects"


Step = Union[ConnectAll, Join, Leave, Send, SendConcurrent, Wait, Reconnect]


@dataclass(frozen=True)
class Expectations:
    # Whether the server echoes a sender's own message back to it.
    echo: bool = True
    # Whether the room_id query parameter joins the room at connect time.
    connect_joins_room: bool = False


@dataclass(frozen=True)
class Scenario:
    name: str
    steps: Tuple[Step, ...]
    expectations: Expectations = Expectations()
    users: Tuple[UserConfig, ...] = ()
    timeout: float | None = None
    description: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "steps", tuple(self.steps))
        object.__setattr__(self, "users", tuple(self.users))

    def user_names(self) -> Tuple[str, ...]:
        return tuple(user.name for user in self.users)
