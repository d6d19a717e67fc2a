"""The fixed scenario suite run by the CLI."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List

from .config import HarnessConfig, UserConfig
from .errors import ConfigError
from .scenario import (
    ConnectAll,
    Expectations,
    Join,
    Leave,
    Reconnect,
    Scenario,
    Send,
    SendConcurrent,
    Wait,
)

RAPID_FIRE_ROUNDS = 5
CONCURRENT_PER_USER = 3


@dataclass
class Suite:
    scenarios: List[Scenario] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)

    def select(self, names: List[str] | None) -> "Suite":
        if not names:
            return self
        known = {scenario.name for scenario in self.scenarios} | set(self.skipped)
        unknown = [name for name in names if name not in known]
        if unknown:
            raise ConfigError(f"unknown scenario(s): {', '.join(unknown)}")
        return Suite(
            scenarios=[scenario for scenario in self.scenarios if scenario.name in names],
            skipped={name: reason for name, reason in self.skipped.items() if name in names},
        )


def basic_exchange(a: UserConfig, b: UserConfig, room, settle: float, expectations: Expectations) -> Scenario:
    return Scenario(
        name="basic_exchange",
        description="two users join one room and exchange one message each",
        users=(a, b),
        expectations=expectations,
        steps=(
            ConnectAll(room, settle=settle),
            Join(a.name, room),
            Join(b.name, room, settle=settle * 2),
            Send(a.name, f"Hello from {a.name}!", settle=settle),
            Send(b.name, f"Hi {a.name}, this is {b.name}!", settle=settle * 2),
        ),
    )


def rapid_fire_ordering(a: UserConfig, b: UserConfig, room, settle: float, expectations: Expectations) -> Scenario:
    steps: list = [
        ConnectAll(room, settle=settle),
        Join(a.name, room),
        Join(b.name, room, settle=settle * 2),
    ]
    for index in range(1, RAPID_FIRE_ROUNDS + 1):
        steps.append(Send(a.name, f"{a.name} message #{index}"))
        steps.append(Send(b.name, f"{b.name} message #{index}", settle=settle / 5))
    steps.append(Wait(settle * 4))
    return Scenario(
        name="rapid_fire_ordering",
        description="interleaved sends from two users keep per-sender order",
        users=(a, b),
        expectations=expectations,
        steps=tuple(steps),
    )


def leave_and_rejoin(a: UserConfig, b: UserConfig, room, settle: float, expectations: Expectations) -> Scenario:
    return Scenario(
        name="leave_and_rejoin",
        description="a user who left misses messages until it rejoins, with no replay",
        users=(a, b),
        expectations=expectations,
        steps=(
            ConnectAll(room, settle=settle),
            Join(a.name, room),
            Join(b.name, room, settle=settle * 2),
            Leave(a.name, room, settle=settle),
            Send(b.name, f"{a.name} should not receive this", settle=settle),
            Join(a.name, room, settle=settle),
            Send(b.name, f"{a.name} should receive this after rejoining", settle=settle * 2),
        ),
    )


def concurrent_burst(a: UserConfig, b: UserConfig, room, settle: float, expectations: Expectations) -> Scenario:
    pairs = []
    for index in range(1, CONCURRENT_PER_USER + 1):
        pairs.append((a.name, f"Concurrent {a.name} #{index}"))
        pairs.append((b.name, f"Concurrent {b.name} #{index}"))
    return Scenario(
        name="concurrent_burst",
        description="back-to-back sends from two users arrive once each without loss",
        users=(a, b),
        expectations=expectations,
        steps=(
            ConnectAll(room, settle=settle),
            Join(a.name, room),
            Join(b.name, room, settle=settle * 2),
            SendConcurrent(tuple(pairs), settle=settle * 4),
        ),
    )


def multi_room_isolation(
    a: UserConfig, b: UserConfig, room, other_room, settle: float, expectations: Expectations
) -> Scenario:
    # Same identity as ``a`` on a second session, parked in another room.
    c = UserConfig(name=f"{a.name}-2", token=a.token)
    return Scenario(
        name="multi_room_isolation",
        description="messages never cross room boundaries, even for one identity",
        users=(a, b, c),
        expectations=expectations,
        steps=(
            ConnectAll(room, settle=settle * 2),
            Join(a.name, room),
            Join(b.name, room),
            Join(c.name, other_room, settle=settle * 2),
            Send(a.name, f"Message in room {room} from {a.name}"),
            Send(b.name, f"Message in room {room} from {b.name}"),
            Send(c.name, f"Message in room {other_room} from {c.name}", settle=settle * 4),
        ),
    )


def reconnect(a: UserConfig, b: UserConfig, room, settle: float, expectations: Expectations) -> Scenario:
    return Scenario(
        name="reconnect",
        description="a reconnected user only sees messages sent after it rejoins",
        users=(a, b),
        expectations=expectations,
        steps=(
            ConnectAll(room, settle=settle),
            Join(a.name, room),
            Join(b.name, room, settle=settle * 2),
            Send(b.name, f"before {a.name} reconnects", settle=settle),
            Reconnect(a.name, room, settle=settle),
            Send(b.name, f"while {a.name} is away", settle=settle),
            Join(a.name, room, settle=settle),
            Send(b.name, f"after {a.name} rejoined", settle=settle * 2),
        ),
    )


def build_suite(config: HarnessConfig) -> Suite:
    if len(config.users) < 2:
        raise ConfigError("the suite needs at least two users")
    if not config.rooms:
        raise ConfigError("the suite needs at least one room")
    a, b = config.users[0], config.users[1]
    room = config.rooms[0]
    settle = config.settle_s
    echo = True if config.expect_echo is None else config.expect_echo
    expectations = Expectations(echo=echo)

    suite = Suite()
    suite.scenarios.append(basic_exchange(a, b, room, settle, expectations))
    suite.scenarios.append(rapid_fire_ordering(a, b, room, settle, expectations))
    suite.scenarios.append(leave_and_rejoin(a, b, room, settle, expectations))
    suite.scenarios.append(concurrent_burst(a, b, room, settle, expectations))
    if len(config.rooms) >= 2:
        suite.scenarios.append(multi_room_isolation(a, b, room, config.rooms[1], settle, expectations))
    else:
        suite.skipped["multi_room_isolation"] = "needs two rooms"
    suite.scenarios.append(reconnect(a, b, room, settle, expectations))
    return suite
