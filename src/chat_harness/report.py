from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List

from .errors import FAULT_TIMEOUT, Fault

ISOLATION = "isolation"
LOSS = "loss"
ORDERING = "ordering"
DUPLICATE = "duplicate"
UNEXPECTED_ECHO = "unexpected_echo"
UNATTRIBUTED = "unattributed"

CATEGORIES = (ISOLATION, LOSS, ORDERING, DUPLICATE, UNEXPECTED_ECHO, UNATTRIBUTED)


@dataclass(frozen=True)
class Violation:
    category: str
    user: str
    key: str
    detail: str

    def describe(self) -> str:
        return f"{self.category}: {self.user} {self.key} - {self.detail}"


@dataclass
class ScenarioReport:
    name: str
    sends: int = 0
    accepted_sends: int = 0
    deliveries: int = 0
    deliveries_by_user: Dict[str, int] = field(default_factory=dict)
    violations: List[Violation] = field(default_factory=list)
    faults: List[Fault] = field(default_factory=list)
    timed_out: bool = False
    server_errors: int = 0
    elapsed_s: float = 0.0

    @property
    def counts(self) -> Dict[str, int]:
        counts = {category: 0 for category in CATEGORIES}
        for violation in self.violations:
            counts[violation.category] = counts.get(violation.category, 0) + 1
        return counts

    def violating_keys(self, category: str) -> List[str]:
        return [violation.key for violation in self.violations if violation.category == category]

    @property
    def passed(self) -> bool:
        return not self.violations and not self.faults and not self.timed_out

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "passed": self.passed,
            "timed_out": self.timed_out,
            "sends": self.sends,
            "accepted_sends": self.accepted_sends,
            "deliveries": self.deliveries,
            "deliveries_by_user": dict(self.deliveries_by_user),
            "counts": self.counts,
            "violations": [
                {"category": v.category, "user": v.user, "key": v.key, "detail": v.detail}
                for v in self.violations
            ],
            "faults": [
                {"kind": f.kind, "detail": f.detail, "user": f.user, "step": f.step} for f in self.faults
            ],
            "server_errors": self.server_errors,
            "elapsed_s": round(self.elapsed_s, 3),
        }

    def render(self) -> str:
        status = "PASS" if self.passed else "FAIL"
        lines = [
            f"=== {self.name}: {status} ({self.sends} sends, {self.deliveries} deliveries, {self.elapsed_s:.2f}s)"
        ]
        if self.deliveries_by_user:
            received = ", ".join(f"{user}={count}" for user, count in sorted(self.deliveries_by_user.items()))
            lines.append(f"  received: {received}")
        lines.append("  " + " ".join(f"{category}={count}" for category, count in self.counts.items()))
        if self.server_errors:
            lines.append(f"  server error frames: {self.server_errors}")
        for violation in self.violations:
            lines.append(f"  - {violation.describe()}")
        for fault in self.faults:
            lines.append(f"  ! {fault.describe()}")
        return "\n".join(lines)


@dataclass
class SuiteReport:
    scenarios: List[ScenarioReport] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)

    @property
    def passed(self) -> bool:
        return all(report.passed for report in self.scenarios)

    @property
    def timed_out(self) -> bool:
        return any(
            fault.kind == FAULT_TIMEOUT for report in self.scenarios for fault in report.faults
        )

    def totals(self) -> Dict[str, int]:
        totals = {category: 0 for category in CATEGORIES}
        for report in self.scenarios:
            for category, count in report.counts.items():
                totals[category] = totals.get(category, 0) + count
        return totals

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed": self.passed,
            "timed_out": self.timed_out,
            "totals": self.totals(),
            "scenarios": [report.to_dict() for report in self.scenarios],
            "skipped": dict(self.skipped),
        }

    def render(self) -> str:
        lines = [report.render() for report in self.scenarios]
        for name, reason in self.skipped.items():
            lines.append(f"=== {name}: SKIPPED ({reason})")
        passed = sum(1 for report in self.scenarios if report.passed)
        lines.append("")
        lines.append(f"Scenarios passed: {passed}/{len(self.scenarios)}")
        lines.append("Result: " + ("PASS" if self.passed else "FAIL"))
        return "\n".join(lines)
