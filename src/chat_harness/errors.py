from __future__ import annotations

from dataclasses import dataclass

FAULT_TRANSPORT = "transport"
FAULT_SCENARIO = "scenario"
FAULT_TIMEOUT = "timeout"


class HarnessError(Exception):
    """Base class for errors raised by the harness."""


class TransportError(HarnessError):
    """A connect, send or receive failure on one connection."""


class ConnectError(TransportError):
    def __init__(self, endpoint: str, reason: str, *, status: int | None = None):
        self.endpoint = endpoint
        self.reason = reason
        self.status = status
        detail = f"cannot connect to {endpoint}: {reason}"
        if status is not None:
            detail += f" (status {status})"
        super().__init__(detail)


class FrameDecodeError(TransportError):
    def __init__(self, message: str, *, raw: str | bytes | None = None):
        self.raw = raw
        super().__init__(message)


class ConnectionNotOpenError(HarnessError):
    """A command was issued on a connection that is not open."""


class ConfigError(HarnessError):
    pass


class FixtureError(HarnessError):
    def __init__(self, message: str, *, status: int | None = None):
        self.status = status
        super().__init__(message)


@dataclass(frozen=True)
class Fault:
    """A non-fatal problem recorded during a scenario run."""

    kind: str
    detail: str
    user: str | None = None
    step: int | None = None

    def describe(self) -> str:
        where = []
        if self.step is not None:
            where.append(f"step {self.step}")
        if self.user is not None:
            where.append(self.user)
        prefix = f"[{self.kind}]"
        if where:
            prefix += f" {', '.join(where)}:"
        return f"{prefix} {self.detail}"
