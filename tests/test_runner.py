import time
import unittest
from unittest import mock

from chat_harness.config import UserConfig
from chat_harness.connection import Connection
from chat_harness.errors import FAULT_SCENARIO, FAULT_TIMEOUT, FAULT_TRANSPORT, TransportError
from chat_harness.report import DUPLICATE, ISOLATION, LOSS
from chat_harness.runner import GroundTruth, ScenarioRunner, run_suite
from chat_harness.scenario import ConnectAll, Expectations, Join, Leave, Scenario, Send, SendConcurrent, Wait
from chat_harness.suite import build_suite
from chat_harness.verify import verify

from tests.chat_server_util import ChatServerTestCase


class GroundTruthTests(unittest.TestCase):
    def test_send_snapshots_membership_at_send_time(self):
        truth = GroundTruth()
        truth.joined("alice", 1)
        truth.joined("bob", "1")
        first = truth.record_send("alice", 1, 1, "one")
        truth.left("bob", 1)
        second = truth.record_send("alice", 1, 1, "two")

        self.assertEqual(first.members, frozenset({"alice", "bob"}))
        self.assertEqual(second.members, frozenset({"alice"}))
        self.assertEqual([first.seq, second.seq], [1, 2])

    def test_reset_drops_every_room(self):
        truth = GroundTruth()
        truth.joined("alice", 1)
        truth.joined("alice", 2)
        truth.reset("alice")
        self.assertEqual(truth.members_of(1), frozenset())
        self.assertEqual(truth.members_of(2), frozenset())


class ScenarioRunnerTests(ChatServerTestCase):
    async def _run_named(self, name: str, **config_overrides):
        config = self.config(**config_overrides)
        [scenario] = build_suite(config).select([name]).scenarios
        result = await ScenarioRunner(config).run(scenario)
        return result, verify(result)

    async def test_full_suite_passes_against_a_correct_server(self):
        await self.start_chat()
        config = self.config()
        suite = build_suite(config)
        results = await run_suite(config, suite.scenarios)

        reports = [verify(result) for result in results]
        for report in reports:
            with self.subTest(scenario=report.name):
                self.assertTrue(report.passed, report.render())
        self.assertEqual(len(reports), 6)

    async def _hello_hi(self, echo: bool):
        await self.start_chat(echo=echo)
        scenario = Scenario(
            name="hello hi",
            expectations=Expectations(echo=echo),
            steps=(
                ConnectAll(1),
                Join("alice", 1),
                Join("bob", 1, settle=0.1),
                Send("alice", "Hello", settle=0.05),
                Send("bob", "Hi", settle=0.1),
            ),
        )
        result = await ScenarioRunner(self.config()).run(scenario)
        received = {
            name: [event.message.content for event in events if event.message.type == "new_message"]
            for name, events in result.logs.items()
        }
        return received, verify(result)

    async def test_hello_hi_with_echo(self):
        received, report = await self._hello_hi(echo=True)
        self.assertTrue(report.passed, report.render())
        self.assertEqual(received, {"alice": ["Hello", "Hi"], "bob": ["Hello", "Hi"]})

    async def test_hello_hi_without_echo(self):
        received, report = await self._hello_hi(echo=False)
        self.assertTrue(report.passed, report.render())
        self.assertEqual(received, {"alice": ["Hi"], "bob": ["Hello"]})

    async def test_left_user_misses_x_and_gets_y(self):
        await self.start_chat()
        scenario = Scenario(
            name="x and y",
            steps=(
                ConnectAll(1),
                Join("alice", 1),
                Join("bob", 1, settle=0.1),
                Leave("alice", 1, settle=0.05),
                Send("bob", "X", settle=0.1),
                Join("alice", 1, settle=0.05),
                Send("bob", "Y", settle=0.1),
            ),
        )
        result = await ScenarioRunner(self.config()).run(scenario)
        alice = [event.message.content for event in result.logs["alice"] if event.message.type == "new_message"]

        self.assertEqual(alice, ["Y"])
        self.assertTrue(verify(result).passed)

    async def test_basic_exchange_without_echo(self):
        await self.start_chat(echo=False)
        result, report = await self._run_named("basic_exchange", expect_echo=False)

        self.assertTrue(report.passed, report.render())
        self.assertEqual(report.deliveries_by_user, {"alice": 1, "bob": 1})

    async def test_echo_expected_but_missing_is_loss(self):
        await self.start_chat(echo=False)
        _, report = await self._run_named("basic_exchange")

        self.assertFalse(report.passed)
        self.assertEqual(report.counts[LOSS], 2)
        self.assertEqual({v.user for v in report.violations}, {"alice", "bob"})

    async def test_leave_and_rejoin_skips_the_missed_message(self):
        await self.start_chat()
        result, report = await self._run_named("leave_and_rejoin")

        self.assertTrue(report.passed, report.render())
        contents = [event.message.content for event in result.logs["alice"] if event.message.type == "new_message"]
        self.assertNotIn("alice should not receive this", contents)
        self.assertIn("alice should receive this after rejoining", contents)

    async def test_concurrent_burst_delivers_every_message_once(self):
        await self.start_chat()
        result, report = await self._run_named("concurrent_burst")

        self.assertTrue(report.passed, report.render())
        self.assertEqual(report.sends, 6)
        self.assertEqual(report.deliveries_by_user, {"alice": 6, "bob": 6})

    async def test_cross_room_leak_is_an_isolation_violation(self):
        await self.start_chat(leak_rooms=True)
        _, report = await self._run_named("multi_room_isolation")

        self.assertFalse(report.passed)
        self.assertGreater(report.counts[ISOLATION], 0)
        self.assertIn("alice-2", {v.user for v in report.violations if v.category == ISOLATION})

    async def test_duplicated_frames_are_flagged(self):
        await self.start_chat(duplicate=True)
        _, report = await self._run_named("basic_exchange")

        self.assertFalse(report.passed)
        self.assertEqual(report.counts[DUPLICATE], 4)

    async def test_dropped_message_is_loss(self):
        await self.start_chat(drop_contents={"Hello from alice!"})
        _, report = await self._run_named("basic_exchange")

        self.assertEqual(report.counts[LOSS], 2)
        for key in report.violating_keys(LOSS):
            self.assertIn("Hello from alice!", key)

    async def test_global_timeout_closes_every_connection(self):
        await self.start_chat(hang_handshake=True)
        started = time.monotonic()
        result, report = await self._run_named("basic_exchange", timeout_ms=500)

        self.assertLess(time.monotonic() - started, 2.0)
        self.assertTrue(result.timed_out)
        self.assertEqual(result.steps_run, 0)
        self.assertEqual([fault.kind for fault in result.faults], [FAULT_TIMEOUT])
        for states in result.connection_states.values():
            self.assertTrue(all(state == "closed" for state in states))
        self.assertFalse(report.passed)

    async def test_global_timeout_holds_when_the_server_goes_silent(self):
        await self.start_chat(silent_after_handshake=True)
        scenario = Scenario(
            name="silent server",
            steps=(ConnectAll(1), Join("alice", 1), Send("alice", "into the void"), Wait(5.0)),
        )
        started = time.monotonic()
        result = await ScenarioRunner(self.config(timeout_ms=500, close_timeout_ms=200)).run(scenario)

        self.assertLess(time.monotonic() - started, 1.5)
        self.assertTrue(result.timed_out)
        self.assertEqual(result.steps_run, 4)
        self.assertEqual([fault.kind for fault in result.faults], [FAULT_TIMEOUT])
        self.assertEqual(result.connection_states, {"alice": ("closed",), "bob": ("closed",)})

    async def _run_with_failing_sends(self, scenario: Scenario, failing: set):
        original_send = Connection.send

        async def send(connection, message):
            if message.content in failing:
                raise TransportError(f"{connection.label}: send failed: connection reset")
            await original_send(connection, message)

        with mock.patch.object(Connection, "send", send):
            return await ScenarioRunner(self.config()).run(scenario)

    async def test_failed_burst_send_skips_the_senders_later_steps(self):
        await self.start_chat()
        scenario = Scenario(
            name="burst failure",
            steps=(
                ConnectAll(1),
                Join("alice", 1),
                Join("bob", 1, settle=0.1),
                SendConcurrent((("alice", "c1"), ("bob", "b1")), settle=0.1),
                Send("alice", "after error"),
                Send("bob", "bob carries on", settle=0.1),
            ),
        )
        result = await self._run_with_failing_sends(scenario, {"c1"})

        self.assertEqual(
            [(fault.kind, fault.user, fault.step) for fault in result.faults],
            [(FAULT_TRANSPORT, "alice", 3), (FAULT_SCENARIO, "alice", 4)],
        )
        self.assertEqual(
            [(record.sender, record.content, record.accepted) for record in result.truth.sends],
            [("alice", "c1", False), ("bob", "b1", True), ("bob", "bob carries on", True)],
        )
        report = verify(result)
        self.assertEqual(report.violations, [])
        self.assertEqual(report.deliveries_by_user, {"alice": 2, "bob": 2})

    async def test_failed_single_send_skips_the_senders_later_steps(self):
        await self.start_chat()
        scenario = Scenario(
            name="send failure",
            steps=(
                ConnectAll(1),
                Join("alice", 1),
                Join("bob", 1, settle=0.1),
                Send("alice", "lost on the wire"),
                Leave("alice", 1),
                Send("bob", "still delivered", settle=0.1),
            ),
        )
        result = await self._run_with_failing_sends(scenario, {"lost on the wire"})

        self.assertEqual(
            [(fault.kind, fault.user, fault.step) for fault in result.faults],
            [(FAULT_TRANSPORT, "alice", 3), (FAULT_SCENARIO, "alice", 4)],
        )
        self.assertFalse(result.truth.sends[0].accepted)
        self.assertEqual(verify(result).violations, [])

    async def test_failed_user_is_faulted_and_the_rest_continue(self):
        await self.start_chat()
        config = self.config(
            users=[UserConfig("alice", "tok-alice"), UserConfig("bob", "tok-bob"), UserConfig("mallory", "nope")]
        )
        scenario = Scenario(
            name="one bad token",
            steps=(
                ConnectAll(1),
                Join("alice", 1),
                Join("bob", 1),
                Join("mallory", 1, settle=0.1),
                Send("alice", "still works", settle=0.1),
                Send("mallory", "never sent"),
            ),
        )
        result = await ScenarioRunner(config).run(scenario)
        report = verify(result)

        self.assertEqual(
            [(fault.kind, fault.user) for fault in result.faults],
            [(FAULT_TRANSPORT, "mallory"), (FAULT_SCENARIO, "mallory"), (FAULT_SCENARIO, "mallory")],
        )
        self.assertEqual(report.violations, [])
        self.assertEqual(report.deliveries_by_user, {"alice": 1, "bob": 1, "mallory": 0})
        self.assertFalse(report.passed)

    async def test_commands_on_closed_connections_are_scenario_faults(self):
        await self.start_chat()
        scenario = Scenario(
            name="not connected",
            steps=(
                Send("alice", "too early", room_id=1),
                SendConcurrent((("bob", "also too early"),), room_id=1),
                Leave("nobody", 1),
            ),
        )
        result = await ScenarioRunner(self.config()).run(scenario)

        self.assertEqual(result.truth.sends, [])
        self.assertEqual([fault.kind for fault in result.faults], [FAULT_SCENARIO] * 3)
        self.assertIn("unknown user", result.faults[2].detail)
        self.assertEqual(result.steps_run, 3)


if __name__ == "__main__":
    unittest.main()
