#
# src/pesterbridge/records.py
#
"""
Typed decoding of the objects emitted by the Pester interface script.

The script writes two record shapes: discovery records describing the tree
and result records describing a run. Both arrive as plain JSON objects, so
each is validated here and turned into a frozen attrs variant, or rejected
with a RecordDecodeError.
"""

from enum import Enum
from typing import Any

import structlog
from attrs import define, field

from pesterbridge.exceptions import RecordDecodeError
from pesterbridge.telemetry import StructLogger

log: StructLogger = structlog.get_logger("records")


class ResultState(Enum):
    """Result states reported by Pester, plus the editor's numeric states."""

    QUEUED = "queued"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"
    ERRORED = "errored"
    NOT_RUN = "notrun"
    INCONCLUSIVE = "inconclusive"

    @property
    def is_skip(self) -> bool:
        return self in (ResultState.SKIPPED, ResultState.NOT_RUN, ResultState.INCONCLUSIVE)


# The editor test API enum, as serialized by older interface scripts.
_NUMERIC_STATES = {
    1: ResultState.QUEUED,
    2: ResultState.RUNNING,
    3: ResultState.PASSED,
    4: ResultState.FAILED,
    5: ResultState.SKIPPED,
    6: ResultState.ERRORED,
}
_STATE_ALIASES = {
    "error": ResultState.ERRORED,
    "not run": ResultState.NOT_RUN,
}


def parse_result_state(value: Any) -> ResultState:
    """
    Accepts a state name in any case or a numeric state.

    Unrecognized names map to FAILED; a result that is neither passing nor
    skipped is treated as a failure.
    """
    if isinstance(value, bool):
        raise RecordDecodeError("Result state must be a string or integer", value)
    if isinstance(value, int):
        try:
            return _NUMERIC_STATES[value]
        except KeyError:
            raise RecordDecodeError("Unknown numeric result state", value) from None
    if isinstance(value, str):
        key = value.strip().lower()
        if key in _STATE_ALIASES:
            return _STATE_ALIASES[key]
        try:
            return ResultState(key)
        except ValueError:
            log.debug("Unrecognized result state, treating as failed", state=value)
            return ResultState.FAILED
    raise RecordDecodeError("Result state must be a string or integer", value)


# --- Field helpers ---
def _require_str(obj: dict, key: str) -> str:
    value = obj.get(key)
    if not isinstance(value, str) or not value:
        raise RecordDecodeError(f"Field '{key}' must be a non-empty string", obj)
    return value


def _optional_str(obj: dict, key: str) -> str | None:
    value = obj.get(key)
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, int | float) and not isinstance(value, bool):
        return str(value)
    raise RecordDecodeError(f"Field '{key}' must be a string", obj)


def _optional_int(obj: dict, key: str) -> int | None:
    value = obj.get(key)
    if value is None:
        return None
    if isinstance(value, bool):
        raise RecordDecodeError(f"Field '{key}' must be an integer", obj)
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value)
    raise RecordDecodeError(f"Field '{key}' must be an integer", obj)


def _optional_float(obj: dict, key: str) -> float | None:
    value = obj.get(key)
    if value is None:
        return None
    if isinstance(value, int | float) and not isinstance(value, bool):
        return float(value)
    raise RecordDecodeError(f"Field '{key}' must be a number", obj)


def _optional_bool(obj: dict, key: str) -> bool | None:
    value = obj.get(key)
    if value is None or isinstance(value, bool):
        return value
    raise RecordDecodeError(f"Field '{key}' must be a boolean", obj)


def _tags(obj: dict) -> tuple[str, ...]:
    value = obj.get("tags")
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if isinstance(value, list) and all(isinstance(t, str) for t in value):
        return tuple(value)
    raise RecordDecodeError("Field 'tags' must be a list of strings", obj)


def _ensure_object(obj: Any) -> dict:
    if not isinstance(obj, dict):
        raise RecordDecodeError("Expected a JSON object", obj)
    return obj


# --- Variants ---
@define(frozen=True, slots=True)
class DiscoveryRecord:
    """One node of the test tree as reported by discovery."""

    id: str
    label: str
    parent: str | None = field(default=None)
    file: str | None = field(default=None)
    start_line: int | None = field(default=None)
    end_line: int | None = field(default=None)
    description: str | None = field(default=None)
    error: str | None = field(default=None)
    tags: tuple[str, ...] = field(default=())
    type: str | None = field(default=None)


@define(frozen=True, slots=True)
class ResultRecord:
    """The outcome of one test or block in a run."""

    id: str
    result: ResultState
    type: str = field(default="Test")
    duration: float | None = field(default=None)
    message: str | None = field(default=None)
    expected: str | None = field(default=None)
    actual: str | None = field(default=None)
    target_file: str | None = field(default=None)
    target_line: int | None = field(default=None)
    error: str | None = field(default=None)
    skip_reported: bool | None = field(default=None)

    @property
    def is_block(self) -> bool:
        return self.type == "Block"

    @property
    def is_explained_skip(self) -> bool:
        """
        Whether a skip carries a reason worth showing.

        The explicit skipReported flag decides when present. Older scripts do
        not send it; for those any message other than the default one counts.
        """
        if self.skip_reported is not None:
            return self.skip_reported
        return bool(self.message) and self.message != "is skipped"


Record = DiscoveryRecord | ResultRecord


def decode_discovery_record(obj: Any) -> DiscoveryRecord:
    obj = _ensure_object(obj)
    record_id = _require_str(obj, "id")
    return DiscoveryRecord(
        id=record_id,
        label=_optional_str(obj, "label") or record_id,
        parent=_optional_str(obj, "parent") or None,
        file=_optional_str(obj, "file"),
        start_line=_optional_int(obj, "startLine"),
        end_line=_optional_int(obj, "endLine"),
        description=_optional_str(obj, "description"),
        error=_optional_str(obj, "error"),
        tags=_tags(obj),
        type=_optional_str(obj, "type"),
    )


def decode_result_record(obj: Any) -> ResultRecord:
    obj = _ensure_object(obj)
    record_id = _require_str(obj, "id")
    if "result" not in obj:
        raise RecordDecodeError("Field 'result' is required", obj)
    return ResultRecord(
        id=record_id,
        result=parse_result_state(obj["result"]),
        type=_optional_str(obj, "type") or "Test",
        duration=_optional_float(obj, "duration"),
        message=_optional_str(obj, "message"),
        expected=_optional_str(obj, "expected"),
        actual=_optional_str(obj, "actual"),
        target_file=_optional_str(obj, "targetFile"),
        target_line=_optional_int(obj, "targetLine"),
        error=_optional_str(obj, "error"),
        skip_reported=_optional_bool(obj, "skipReported"),
    )


# 🔼⚙️
