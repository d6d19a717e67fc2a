import unittest
from unittest import mock

from chat_harness import protocol
from chat_harness.connection import Connection
from chat_harness.errors import ConnectError, ConnectionNotOpenError, TransportError
from chat_harness.protocol import ProtocolMessage
from chat_harness.user import SimulatedUser

from tests.chat_server_util import ChatServerTestCase


def deliveries(user: SimulatedUser):
    return [event for event in user.events if event.message.type == protocol.NEW_MESSAGE]


class EventLogTests(unittest.TestCase):
    def test_on_event_keeps_arrival_order_and_counts_deliveries(self):
        user = SimulatedUser("alice", "tok-alice")
        user.on_event(ProtocolMessage(type="room_joined", room_id=1))
        user.on_event(ProtocolMessage(type="new_message", room_id=1, content="b"))
        user.on_event(ProtocolMessage(type="new_message", room_id=1, content="a"))
        user.on_event(ProtocolMessage(type="new_message", room_id=1, content="a"))

        self.assertEqual(user.delivery_count, 3)
        self.assertEqual([e.message.content for e in deliveries(user)], ["b", "a", "a"])
        self.assertEqual([e.index for e in user.events], [0, 1, 2, 3])

    def test_events_is_a_snapshot(self):
        user = SimulatedUser("alice", "tok-alice")
        snapshot = user.events
        user.on_event(ProtocolMessage(type="new_message", room_id=1, content="x"))
        self.assertEqual(snapshot, ())
        self.assertEqual(len(user.events), 1)


class SimulatedUserTests(ChatServerTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        await self.start_chat()
        self.users = []

    async def asyncTearDown(self):
        for user in self.users:
            await user.close()
        await super().asyncTearDown()

    async def _user(self, name: str, token: str, room_id=None) -> SimulatedUser:
        user = SimulatedUser(name, token)
        self.users.append(user)
        await user.connect(self.endpoint, room_id)
        return user

    async def test_commands_require_an_open_connection(self):
        user = SimulatedUser("alice", "tok-alice")
        with self.assertRaises(ConnectionNotOpenError):
            await user.join_room(1)
        with self.assertRaises(ConnectionNotOpenError):
            await user.send_message("hi", 1)
        with self.assertRaises(ConnectionNotOpenError):
            user.submit_batch(["hi"], 1)

    async def test_commands_after_close_are_reported(self):
        user = await self._user("alice", "tok-alice", 1)
        await user.close()
        with self.assertRaises(ConnectionNotOpenError):
            await user.leave_room(1)

    async def test_join_send_and_receive(self):
        alice = await self._user("alice", "tok-alice", 1)
        bob = await self._user("bob", "tok-bob", 1)
        await alice.join_room(1)
        await bob.join_room(1)
        await self.wait_until(lambda: self.chat.members(1) == 2)

        await alice.send_message("Hello")
        await self.wait_until(lambda: bob.delivery_count == 1 and alice.delivery_count == 1)

        [delivery] = deliveries(bob)
        self.assertEqual(delivery.message.content, "Hello")
        self.assertEqual(delivery.message.sender, "alice")
        self.assertEqual(delivery.connection_id, bob.active.connection_id)
        self.assertEqual([e.message.type for e in bob.events], ["room_joined", "new_message"])

    async def test_send_defaults_to_last_joined_room(self):
        alice = await self._user("alice", "tok-alice", 1)
        await alice.join_room(7)
        message = await alice.send_message("where am I")
        self.assertEqual(message.room_id, 7)
        await alice.leave_room(7)
        self.assertEqual(alice.resolve_room(), 1)

    async def test_submit_batch_returns_before_sends_complete(self):
        alice = await self._user("alice", "tok-alice", 1)
        bob = await self._user("bob", "tok-bob", 1)
        await alice.join_room(1)
        await bob.join_room(1)
        await self.wait_until(lambda: self.chat.members(1) == 2)

        batch = alice.submit_batch([f"burst {i}" for i in range(5)])
        self.assertEqual(len(batch), 5)
        self.assertEqual(await batch.wait(), [None] * 5)
        await self.wait_until(lambda: bob.delivery_count == 5)
        self.assertEqual(
            [e.message.content for e in deliveries(bob)],
            [f"burst {i}" for i in range(5)],
        )

    async def test_failed_batch_send_faults_the_user(self):
        alice = await self._user("alice", "tok-alice", 1)
        original_send = Connection.send

        async def send(connection, message):
            if message.content == "boom":
                raise TransportError(f"{connection.label}: send failed: broken pipe")
            await original_send(connection, message)

        with mock.patch.object(Connection, "send", send):
            errors = await alice.submit_batch(["fine", "boom"]).wait()

        self.assertIsNone(errors[0])
        self.assertIsInstance(errors[1], TransportError)
        self.assertTrue(alice.faulted)
        self.assertEqual(alice.errors, [errors[1]])

    async def test_decode_errors_are_recorded_without_faulting(self):

        alice = await self._user("alice", "tok-alice")
        await alice.active.send(ProtocolMessage(type="emit_garbage"))
        await self.wait_until(lambda: len(alice.events) == 1)
        self.assertEqual(alice.events[0].message.type, "after_garbage")
        self.assertEqual(len(alice.errors), 1)
        self.assertFalse(alice.faulted)
        self.assertTrue(alice.is_open)

    async def test_failed_connect_marks_user_faulted(self):
        mallory = SimulatedUser("mallory", "nope")
        self.users.append(mallory)
        with self.assertRaises(ConnectError):
            await mallory.connect(self.endpoint)
        self.assertTrue(mallory.faulted)
        self.assertFalse(mallory.is_open)

    async def test_reconnect_opens_a_fresh_session(self):
        alice = await self._user("alice", "tok-alice", 1)
        first = alice.active
        await alice.join_room(1)
        await alice.reconnect(self.endpoint, 1)

        self.assertIsNot(alice.active, first)
        self.assertFalse(first.is_open)
        self.assertTrue(alice.is_open)
        self.assertEqual(len(alice.connections), 2)
        await self.wait_until(lambda: self.chat.members(1) == 0)

    async def test_two_sessions_share_one_identity(self):
        alice = await self._user("alice", "tok-alice", 1)
        alice_two = await self._user("alice-2", "tok-alice", 2)
        await alice.join_room(1)
        await alice_two.join_room(2)
        await self.wait_until(lambda: self.chat.members(1) == 1 and self.chat.members(2) == 1)

        await alice_two.send_message("room two only")
        await self.wait_until(lambda: alice_two.delivery_count == 1)
        self.assertEqual(alice.delivery_count, 0)
        self.assertEqual(deliveries(alice_two)[0].message.type, protocol.NEW_MESSAGE)


if __name__ == "__main__":
    unittest.main()
