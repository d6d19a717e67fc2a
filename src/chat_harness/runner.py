from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Sequence, Set, Tuple

import aiohttp

from .config import HarnessConfig, UserConfig
from .errors import (
    FAULT_SCENARIO,
    FAULT_TIMEOUT,
    FAULT_TRANSPORT,
    ConfigError,
    ConnectionNotOpenError,
    Fault,
    TransportError,
)
from .protocol import RoomId, room_key
from .scenario import ConnectAll, Join, Leave, Reconnect, Scenario, Send, SendConcurrent, Step, Wait
from .user import ReceivedEvent, SimulatedUser

logger = logging.getLogger(__name__)


@dataclass
class SentRecord:
    seq: int
    sender: str
    connection_id: int | None
    room_id: RoomId
    content: str
    sent_at: float
    members: FrozenSet[str]
    accepted: bool = True


@dataclass
class GroundTruth:
    """What the harness did: every send and who was joined where at the time."""

    sends: List[SentRecord] = field(default_factory=list)
    membership: Dict[str, Set[str]] = field(default_factory=dict)

    def joined(self, user: str, room_id: RoomId) -> None:
        self.membership.setdefault(user, set()).add(room_key(room_id))

    def left(self, user: str, room_id: RoomId) -> None:
        self.membership.get(user, set()).discard(room_key(room_id))

    def reset(self, user: str) -> None:
        self.membership.pop(user, None)

    def members_of(self, room_id: RoomId) -> FrozenSet[str]:
        key = room_key(room_id)
        return frozenset(user for user, rooms in self.membership.items() if key in rooms)

    def record_send(self, sender: str, connection_id: int | None, room_id: RoomId, content: str) -> SentRecord:
        record = SentRecord(
            seq=len(self.sends) + 1,
            sender=sender,
            connection_id=connection_id,
            room_id=room_id,
            content=content,
            sent_at=time.monotonic(),
            members=self.members_of(room_id),
        )
        self.sends.append(record)
        return record


@dataclass
class ScenarioResult:
    scenario: Scenario
    logs: Dict[str, Tuple[ReceivedEvent, ...]]
    truth: GroundTruth
    faults: List[Fault]
    timed_out: bool
    elapsed_s: float
    steps_run: int
    connection_states: Dict[str, Tuple[str, ...]] = field(default_factory=dict)


class ScenarioRunner:
    def __init__(self, config: HarnessConfig, *, session: aiohttp.ClientSession | None = None) -> None:
        self.config = config
        self._session = session

    async def run(self, scenario: Scenario) -> ScenarioResult:
        user_configs = scenario.users or tuple(self.config.users)
        users = self._build_users(user_configs)
        truth = GroundTruth()
        faults: List[Fault] = []
        progress = {"steps": 0}
        timeout = scenario.timeout if scenario.timeout is not None else self.config.timeout_s
        timed_out = False
        started = time.monotonic()

        logger.info("scenario %s: %d steps, %d users", scenario.name, len(scenario.steps), len(users))
        try:
            await asyncio.wait_for(self._execute(scenario, users, truth, faults, progress), timeout=timeout)
        except asyncio.TimeoutError:
            timed_out = True
            faults.append(
                Fault(
                    FAULT_TIMEOUT,
                    f"scenario exceeded {timeout:.2f}s deadline",
                    step=progress["steps"],
                )
            )
            logger.error("scenario %s timed out after %.2fs", scenario.name, timeout)
        finally:
            await self._shutdown(users)

        return ScenarioResult(
            scenario=scenario,
            logs={name: user.events for name, user in users.items()},
            truth=truth,
            faults=faults,
            timed_out=timed_out,
            elapsed_s=time.monotonic() - started,
            steps_run=progress["steps"],
            connection_states={
                name: tuple(connection.state.value for connection in user.connections)
                for name, user in users.items()
            },
        )

    def _build_users(self, user_configs: Sequence[UserConfig]) -> Dict[str, SimulatedUser]:
        users: Dict[str, SimulatedUser] = {}
        for user_config in user_configs:
            if not user_config.token:
                raise ConfigError(f"user {user_config.name} has no token")
            users[user_config.name] = SimulatedUser(
                user_config.name,
                user_config.token,
                session=self._session,
                connect_timeout=self.config.connect_timeout_s,
                close_timeout=self.config.close_timeout_s,
            )
        return users

    async def _execute(
        self,
        scenario: Scenario,
        users: Dict[str, SimulatedUser],
        truth: GroundTruth,
        faults: List[Fault],
        progress: Dict[str, int],
    ) -> None:
        for index, step in enumerate(scenario.steps):
            logger.debug("scenario %s step %d: %s", scenario.name, index, step.describe())
            await self._run_step(index, step, scenario, users, truth, faults)
            progress["steps"] = index + 1
            if step.settle > 0:
                await asyncio.sleep(step.settle)

    async def _run_step(
        self,
        index: int,
        step: Step,
        scenario: Scenario,
        users: Dict[str, SimulatedUser],
        truth: GroundTruth,
        faults: List[Fault],
    ) -> None:
        if isinstance(step, Wait):
            return
        if isinstance(step, ConnectAll):
            await self._connect_all(index, step, scenario, users, truth, faults)
            return
        if isinstance(step, SendConcurrent):
            await self._send_concurrent(index, step, users, truth, faults)
            return

        user = self._target(index, step.user, users, faults, allow_faulted=isinstance(step, Reconnect))
        if user is None:
            return
        try:
            if isinstance(step, Join):
                await user.join_room(step.room_id)
                truth.joined(user.name, step.room_id)
            elif isinstance(step, Leave):
                await user.leave_room(step.room_id)
                truth.left(user.name, step.room_id)
            elif isinstance(step, Send):
                connection = user.require_open()
                room_id = user.resolve_room(step.room_id)
                record = truth.record_send(user.name, connection.connection_id, room_id, step.content)
                try:
                    await user.send_message(step.content, room_id)
                except TransportError:
                    record.accepted = False
                    raise
            elif isinstance(step, Reconnect):
                truth.reset(user.name)
                room_id = step.room_id if step.room_id is not None else self._default_room()
                await user.reconnect(self.config.endpoint, room_id)
                if scenario.expectations.connect_joins_room and room_id is not None:
                    truth.joined(user.name, room_id)
        except ConnectionNotOpenError as exc:
            faults.append(Fault(FAULT_SCENARIO, str(exc), user=user.name, step=index))
        except TransportError as exc:
            faults.append(Fault(FAULT_TRANSPORT, str(exc), user=user.name, step=index))
        except ValueError as exc:
            faults.append(Fault(FAULT_SCENARIO, str(exc), user=user.name, step=index))

    def _target(
        self,
        index: int,
        name: str,
        users: Dict[str, SimulatedUser],
        faults: List[Fault],
        *,
        allow_faulted: bool = False,
    ) -> SimulatedUser | None:
        user = users.get(name)
        if user is None:
            faults.append(Fault(FAULT_SCENARIO, f"unknown user {name}", user=name, step=index))
            return None
        if user.faulted and not allow_faulted:
            faults.append(Fault(FAULT_SCENARIO, "skipped after transport error", user=name, step=index))
            return None
        return user

    def _default_room(self) -> RoomId | None:
        return self.config.rooms[0] if self.config.rooms else None

    async def _connect_all(
        self,
        index: int,
        step: ConnectAll,
        scenario: Scenario,
        users: Dict[str, SimulatedUser],
        truth: GroundTruth,
        faults: List[Fault],
    ) -> None:
        room_id = step.room_id if step.room_id is not None else self._default_room()
        pending = [user for user in users.values() if not user.is_open and not user.faulted]
        results = await asyncio.gather(
            *(user.connect(self.config.endpoint, room_id) for user in pending),
            return_exceptions=True,
        )
        for user, result in zip(pending, results):
            if isinstance(result, TransportError):
                faults.append(Fault(FAULT_TRANSPORT, str(result), user=user.name, step=index))
            elif isinstance(result, BaseException):
                raise result
            elif scenario.expectations.connect_joins_room and room_id is not None:
                truth.joined(user.name, room_id)

    async def _send_concurrent(
        self,
        index: int,
        step: SendConcurrent,
        users: Dict[str, SimulatedUser],
        truth: GroundTruth,
        faults: List[Fault],
    ) -> None:
        submitted = []
        for name, content in step.pairs:
            user = self._target(index, name, users, faults)
            if user is None:
                continue
            try:
                room_id = user.resolve_room(step.room_id)
                batch = user.submit_batch([content], room_id)
            except (ConnectionNotOpenError, ValueError) as exc:
                faults.append(Fault(FAULT_SCENARIO, str(exc), user=name, step=index))
                continue
            record = truth.record_send(name, user.active.connection_id, room_id, content)
            submitted.append((user, record, batch))

        for user, record, batch in submitted:
            for error in await batch.wait():
                if error is None:
                    continue
                record.accepted = False
                if isinstance(error, TransportError):
                    faults.append(Fault(FAULT_TRANSPORT, str(error), user=user.name, step=index))
                else:
                    faults.append(Fault(FAULT_SCENARIO, str(error), user=user.name, step=index))

    async def _shutdown(self, users: Dict[str, SimulatedUser]) -> None:
        results = await asyncio.gather(*(user.close() for user in users.values()), return_exceptions=True)
        for user, result in zip(users.values(), results):
            if isinstance(result, Exception):
                logger.warning("closing %s failed: %s", user.name, result)


async def run_suite(
    config: HarnessConfig,
    scenarios: Sequence[Scenario],
    *,
    session: aiohttp.ClientSession | None = None,
) -> List[ScenarioResult]:
    runner = ScenarioRunner(config, session=session)
    results = []
    for scenario in scenarios:
        results.append(await runner.run(scenario))
    return results
