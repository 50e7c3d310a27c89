#
# src/pesterbridge/run.py
#
"""
Per-run projection of test results.

Results are never written to the tree; a TestRun holds the state of each
node only for the lifetime of one run request.
"""

import uuid
from collections import Counter
from enum import Enum, auto

import structlog
from attrs import define, field, mutable

from pesterbridge.exceptions import InconsistentResult
from pesterbridge.telemetry import StructLogger

log: StructLogger = structlog.get_logger("run")


class TestState(Enum):
    __test__ = False

    ENQUEUED = auto()
    STARTED = auto()
    PASSED = auto()
    FAILED = auto()
    SKIPPED = auto()
    ERRORED = auto()

    @property
    def is_final(self) -> bool:
        return self in _FINAL_STATES


_FINAL_STATES = frozenset({TestState.PASSED, TestState.FAILED, TestState.SKIPPED, TestState.ERRORED})


@define(frozen=True, slots=True)
class Location:
    file: str
    line: int


@define(frozen=True, slots=True)
class TestMessage:
    """A failure or explanation attached to a result."""

    __test__ = False

    message: str
    expected: str | None = field(default=None)
    actual: str | None = field(default=None)
    location: Location | None = field(default=None)

    @classmethod
    def diff(cls, message: str, expected: str, actual: str, location: Location | None = None) -> "TestMessage":
        return cls(message=message, expected=expected, actual=actual, location=location)

    @property
    def is_diff(self) -> bool:
        return self.expected is not None and self.actual is not None


@mutable(slots=True)
class TestOutcome:
    __test__ = False

    state: TestState
    duration: float | None = field(default=None)
    messages: list[TestMessage] = field(factory=list)


@define(frozen=True, slots=True)
class RunRequest:
    """
    Which nodes to run.

    include=None means every file in the tree. Excluded nodes still execute;
    their results are just not reported.
    """

    include: tuple[str, ...] | None = field(default=None, converter=lambda v: None if v is None else tuple(v))
    exclude: tuple[str, ...] = field(default=(), converter=tuple)
    debug: bool = field(default=False)


class TestRun:
    """Collects state transitions for one run request."""

    __test__ = False

    def __init__(self, request: RunRequest | None = None, name: str | None = None, logger: StructLogger | None = None):
        self.id = uuid.uuid4().hex
        self.request = request or RunRequest()
        self.name = name
        self.outcomes: dict[str, TestOutcome] = {}
        self.inconsistencies: list[InconsistentResult] = []
        self.output: list[str] = []
        self.ended = False
        self._log = (logger or log).bind(run_id=self.id)

    def __repr__(self) -> str:
        return f"TestRun(id={self.id!r}, outcomes={len(self.outcomes)}, ended={self.ended})"

    def _set(self, node_id: str, state: TestState, duration: float | None = None, message: TestMessage | None = None) -> None:
        if self.ended:
            self._log.warning("Ignoring state change after the run ended", node_id=node_id, state=state.name)
            return
        outcome = self.outcomes.get(node_id)
        if outcome is None:
            outcome = self.outcomes[node_id] = TestOutcome(state=state)
        outcome.state = state
        if duration is not None:
            outcome.duration = duration
        if message is not None:
            outcome.messages.append(message)

    def enqueued(self, node_id: str) -> None:
        self._set(node_id, TestState.ENQUEUED)

    def started(self, node_id: str) -> None:
        self._set(node_id, TestState.STARTED)

    def passed(self, node_id: str, duration: float | None = None) -> None:
        self._set(node_id, TestState.PASSED, duration)

    def failed(self, node_id: str, message: TestMessage, duration: float | None = None) -> None:
        self._set(node_id, TestState.FAILED, duration, message)

    def skipped(self, node_id: str) -> None:
        self._set(node_id, TestState.SKIPPED)

    def errored(self, node_id: str, message: TestMessage, duration: float | None = None) -> None:
        self._set(node_id, TestState.ERRORED, duration, message)

    def record_inconsistency(self, error: InconsistentResult) -> None:
        self.inconsistencies.append(error)

    def append_output(self, text: str) -> None:
        self.output.append(text)

    def end(self) -> None:
        if not self.ended:
            self.ended = True
            self._log.debug("Run ended", **{state.name.lower(): n for state, n in self.summary().items()})

    def state_of(self, node_id: str) -> TestState | None:
        outcome = self.outcomes.get(node_id)
        return outcome.state if outcome else None

    def summary(self) -> Counter[TestState]:
        return Counter(outcome.state for outcome in self.outcomes.values())

    @property
    def has_failures(self) -> bool:
        return any(o.state in (TestState.FAILED, TestState.ERRORED) for o in self.outcomes.values())


# 🔼⚙️
