"""Multi-client harness for verifying room-scoped chat servers."""

from .config import HarnessConfig, UserConfig, load_config
from .connection import Connection, ConnectionEvent, ConnectionState, EventKind
from .errors import (
    ConfigError,
    ConnectError,
    ConnectionNotOpenError,
    Fault,
    FixtureError,
    FrameDecodeError,
    HarnessError,
    TransportError,
)
from .protocol import ProtocolMessage
from .report import ScenarioReport, SuiteReport, Violation
from .runner import GroundTruth, ScenarioResult, ScenarioRunner, run_suite
from .scenario import ConnectAll, Expectations, Join, Leave, Reconnect, Scenario, Send, SendConcurrent, Wait
from .user import SendBatch, SimulatedUser
from .verify import verify

__all__ = [
    "ConfigError",
    "ConnectAll",
    "ConnectError",
    "Connection",
    "ConnectionEvent",
    "ConnectionNotOpenError",
    "ConnectionState",
    "EventKind",
    "Expectations",
    "Fault",
    "FixtureError",
    "FrameDecodeError",
    "GroundTruth",
    "HarnessConfig",
    "HarnessError",
    "Join",
    "Leave",
    "ProtocolMessage",
    "Reconnect",
    "Scenario",
    "ScenarioReport",
    "ScenarioResult",
    "ScenarioRunner",
    "Send",
    "SendBatch",
    "SendConcurrent",
    "SimulatedUser",
    "SuiteReport",
    "TransportError",
    "UserConfig",
    "Violation",
    "Wait",
    "load_config",
    "run_suite",
    "verify",
]
