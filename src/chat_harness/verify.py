"""Post-hoc checks of received-event logs against the runner's ground truth.

Deliveries are matched to sends by ``(room_id, content)``. When several sends
share a key they are consumed in send order, preferring sends the recipient
was expected to see. Nothing here raises on a violation; everything is
collected into a :class:`ScenarioReport`.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Dict, List, Set, Tuple

from . import protocol
from .protocol import room_key
from .report import (
    DUPLICATE,
    ISOLATION,
    LOSS,
    ORDERING,
    UNATTRIBUTED,
    UNEXPECTED_ECHO,
    ScenarioReport,
    Violation,
)
from .runner import ScenarioResult, SentRecord
from .scenario import Expectations
from .user import ReceivedEvent

MatchKey = Tuple[str | None, str | None]


def _key(room_id, content) -> MatchKey:
    return room_key(room_id), content


def _label(record: SentRecord) -> str:
    return f"#{record.seq} {record.sender}:{record.content!r}"


def expected_recipients(record: SentRecord, expectations: Expectations) -> Set[str]:
    recipients = set(record.members)
    if not expectations.echo:
        recipients.discard(record.sender)
    return recipients


class _RecipientCheck:
    """Walks one user's log and classifies every ``new_message``."""

    def __init__(
        self,
        user: str,
        sends_by_key: Dict[MatchKey, List[SentRecord]],
        expectations: Expectations,
        violations: List[Violation],
    ) -> None:
        self.user = user
        self.sends_by_key = sends_by_key
        self.expectations = expectations
        self.violations = violations
        self.delivered: Set[int] = set()
        self.deliveries = 0

    def run(self, events: Tuple[ReceivedEvent, ...]) -> None:
        by_connection: Dict[int | None, List[ReceivedEvent]] = defaultdict(list)
        for event in events:
            if event.message.type == protocol.NEW_MESSAGE:
                by_connection[event.connection_id].append(event)
        for connection_id, deliveries in by_connection.items():
            self._check_connection(connection_id, deliveries)

    def _check_connection(self, connection_id: int | None, deliveries: List[ReceivedEvent]) -> None:
        matched: Set[int] = set()
        seen_ids: Set[str] = set()
        # Order is only promised per sending connection.
        last_seq_by_origin: Dict[Tuple[str, int | None], int] = {}

        for event in deliveries:
            self.deliveries += 1
            message = event.message
            if message.message_id is not None:
                message_id = str(message.message_id)
                if message_id in seen_ids:
                    self._flag(DUPLICATE, f"id:{message_id}", f"message id {message_id} delivered again")
                    continue
                seen_ids.add(message_id)

            candidates = self.sends_by_key.get(_key(message.room_id, message.content), [])
            record = self._pick(candidates, matched)
            if record is None:
                if candidates:
                    self._flag(DUPLICATE, _label(candidates[0]), "delivered more often than it was sent")
                else:
                    self._flag(
                        UNATTRIBUTED,
                        f"room {message.room_id}:{message.content!r}",
                        "delivery matches no send",
                    )
                continue

            matched.add(record.seq)
            self.delivered.add(record.seq)
            self._check_membership(record)

            origin = (record.sender, record.connection_id)
            previous = last_seq_by_origin.get(origin)
            if previous is not None and record.seq < previous:
                self._flag(
                    ORDERING,
                    _label(record),
                    f"arrived after #{previous} from the same sending connection (received on {connection_id})",
                )
            else:
                last_seq_by_origin[origin] = record.seq

    def _pick(self, candidates: List[SentRecord], matched: Set[int]) -> SentRecord | None:
        fallback = None
        for record in candidates:
            if record.seq in matched:
                continue
            if self.user in expected_recipients(record, self.expectations):
                return record
            if fallback is None:
                fallback = record
        return fallback

    def _check_membership(self, record: SentRecord) -> None:
        if self.user in expected_recipients(record, self.expectations):
            return
        if record.sender == self.user:
            self._flag(UNEXPECTED_ECHO, _label(record), "sender received its own message")
        else:
            self._flag(
                ISOLATION,
                _label(record),
                f"not joined to room {record.room_id} when it was sent",
            )

    def _flag(self, category: str, key: str, detail: str) -> None:
        self.violations.append(Violation(category=category, user=self.user, key=key, detail=detail))


def verify(result: ScenarioResult) -> ScenarioReport:
    expectations = result.scenario.expectations
    accepted = [record for record in result.truth.sends if record.accepted]
    sends_by_key: Dict[MatchKey, List[SentRecord]] = defaultdict(list)
    for record in accepted:
        sends_by_key[_key(record.room_id, record.content)].append(record)

    violations: List[Violation] = []
    delivered_to: Dict[str, Set[int]] = {}
    deliveries_by_user: Dict[str, int] = {}
    server_errors = 0
    for user, events in result.logs.items():
        check = _RecipientCheck(user, sends_by_key, expectations, violations)
        check.run(events)
        delivered_to[user] = check.delivered
        deliveries_by_user[user] = check.deliveries
        server_errors += sum(1 for event in events if event.message.type == protocol.ERROR)

    for record in accepted:
        for recipient in sorted(expected_recipients(record, expectations)):
            if recipient not in result.logs:
                continue
            if record.seq not in delivered_to.get(recipient, set()):
                violations.append(
                    Violation(
                        category=LOSS,
                        user=recipient,
                        key=_label(record),
                        detail=f"never delivered (room {record.room_id})",
                    )
                )

    return ScenarioReport(
        name=result.scenario.name,
        sends=len(result.truth.sends),
        accepted_sends=len(accepted),
        deliveries=sum(deliveries_by_user.values()),
        deliveries_by_user=deliveries_by_user,
        violations=violations,
        faults=list(result.faults),
        timed_out=result.timed_out,
        server_errors=server_errors,
        elapsed_s=result.elapsed_s,
    )
