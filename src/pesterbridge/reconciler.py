#
# src/pesterbridge/reconciler.py
#
"""
Applies discovery and result records to the test tree and a run.
"""

from collections.abc import Collection, Iterable

import structlog
from attrs import define, field

from pesterbridge.exceptions import DuplicateTestId, InconsistentResult, OrphanedTestRecord
from pesterbridge.records import (
    DiscoveryRecord,
    ResultRecord,
    ResultState,
    decode_discovery_record,
    decode_result_record,
)
from pesterbridge.run import Location, TestMessage, TestRun, TestState
from pesterbridge.telemetry import StructLogger
from pesterbridge.tree import DiscoveryStatus, NodeKind, TestNode, TestTree

log: StructLogger = structlog.get_logger("reconciler")


@define(slots=True)
class DiscoveryBatch:
    """The files covered by one discovery invocation and the nodes it created."""

    file_ids: list[str]
    created: dict[str, TestNode] = field(factory=dict)

    def lookup(self, node_id: str | None) -> TestNode | None:
        if node_id is None:
            return None
        return self.created.get(node_id)


class TestTreeReconciler:
    """Owns every mutation of the tree made from script output."""

    __test__ = False

    def __init__(
        self,
        tree: TestTree,
        hide_skipped_because_messages: bool = False,
        logger: StructLogger | None = None,
    ):
        self.tree = tree
        self.hide_skipped_because_messages = hide_skipped_because_messages
        self._log = (logger or log).bind(component="reconciler")

    # --- Discovery ---
    def begin_discovery(self, file_ids: Iterable[str]) -> DiscoveryBatch:
        """
        Marks files as discovering and clears their previous children.

        Clearing up front means a re-discovery replaces the children instead
        of adding a second copy next to the first.
        """
        batch = DiscoveryBatch(file_ids=list(dict.fromkeys(file_ids)))
        for file_id in batch.file_ids:
            node = self.tree.get(file_id)
            if node is None:
                self._log.warning("Discovery requested for an unknown file", file=file_id)
                continue
            removed = self.tree.clear_children(file_id)
            node.error = None
            node.busy = True
            node.discovery_status = DiscoveryStatus.DISCOVERING
            if removed:
                self._log.debug("Cleared previous discovery results", file=file_id, removed=removed)
        return batch

    def end_discovery(self, batch: DiscoveryBatch, failed: bool = False) -> None:
        """Settles the files of a batch; failed files may be discovered again later."""
        status = DiscoveryStatus.UNDISCOVERED if failed else DiscoveryStatus.DISCOVERED
        for file_id in batch.file_ids:
            node = self.tree.get(file_id)
            if node is not None:
                node.busy = False
                node.discovery_status = status
        self._log.debug(
            "Discovery batch settled", files=len(batch.file_ids), created=len(batch.created), failed=failed
        )

    def apply_discovery(self, batch: DiscoveryBatch, obj: object) -> TestNode | None:
        """
        Adds or updates the node described by one discovery object.

        An error record whose parent is unknown is shown on the file being
        discovered, so the next discovery of that file clears it. Returns the
        node that changed, or None when such an error matched no file.

        Raises:
            RecordDecodeError: The object is not a discovery record.
            OrphanedTestRecord: The record's parent is unknown and it has no error.
            DuplicateTestId: The record reuses the id of its parent chain or of a file.
        """
        record = obj if isinstance(obj, DiscoveryRecord) else decode_discovery_record(obj)

        # A syntax error on a known node is attached to it and nothing else happens
        if record.error is not None:
            existing = batch.lookup(record.id) or self.tree.get(record.id)
            if existing is not None:
                existing.error = record.error
                self._log.info("Discovery reported an error", node_id=record.id, error=record.error)
                return existing

        parent = batch.lookup(record.parent) or self.tree.get(record.parent)
        if parent is None:
            if record.error is None:
                self._log.critical("Discovery record has no parent", node_id=record.id, parent=record.parent)
                raise OrphanedTestRecord(record.id, record.parent)
            return self._attach_to_file(batch, record)

        node = self.tree.get(record.id)
        if (node is not None and node.is_file) or self.tree.is_ancestor_or_self(record.id, parent.id):
            self._log.critical("Discovery reused an existing test id", node_id=record.id, parent=parent.id)
            raise DuplicateTestId(record.id, record.parent)
        if node is None:
            node = TestNode(id=record.id, label=record.label)
        self._update_node(node, record, parent)
        if parent.kind is NodeKind.TEST:
            parent.kind = NodeKind.BLOCK
        self.tree.add(node, parent.id)
        self._log.debug("Adding test item", label=node.label, parent=parent.label)
        batch.created[node.id] = node
        return node

    def _attach_to_file(self, batch: DiscoveryBatch, record: DiscoveryRecord) -> TestNode | None:
        file_id = record.file if record.file in batch.file_ids else None
        if file_id is None and len(batch.file_ids) == 1:
            file_id = batch.file_ids[0]
        node = self.tree.get(file_id)
        if node is None:
            self._log.error(
                "Discovery error matches no file being discovered, dropping it", node_id=record.id, error=record.error
            )
            return None
        node.error = record.error if node.error is None else f"{node.error}\n{record.error}"
        self._log.info("Discovery error reported on the file", file=node.id, node_id=record.id, error=record.error)
        return node

    @staticmethod
    def _update_node(node: TestNode, record: DiscoveryRecord, parent: TestNode | None) -> None:
        node.label = record.label
        if record.type is not None:
            node.kind = NodeKind.BLOCK if record.type == "Block" else NodeKind.TEST
        node.file = record.file or (parent.file if parent is not None else None)
        node.start_line = record.start_line
        node.end_line = record.end_line
        node.tags = record.tags
        # Tags are shown as the description when the script sends none
        node.description = record.description or (", ".join(record.tags) if record.tags else None)
        node.error = record.error
        node.discovery_status = DiscoveryStatus.DISCOVERED

    # --- Results ---
    def apply_result(self, run: TestRun, obj: object, exclude: Collection[str] = ()) -> TestState | None:
        """
        Projects one result object onto the run.

        Returns the state applied, or None when the record was ignored.

        Raises:
            RecordDecodeError: The object is not a result record.
        """
        record = obj if isinstance(obj, ResultRecord) else decode_result_record(obj)

        if record.is_block and not record.error:
            return None

        if record.id not in self.tree:
            error = InconsistentResult(record.id)
            self._log.error(str(error), node_id=record.id)
            run.record_inconsistency(error)
            return None

        if record.id in exclude:
            self._log.warning("Test was run but is excluded from results", node_id=record.id)
            return None

        if record.is_block:
            run.errored(record.id, TestMessage(record.error or ""), record.duration)
            return TestState.ERRORED

        state = record.result
        if state is ResultState.QUEUED:
            run.enqueued(record.id)
            return TestState.ENQUEUED
        if state is ResultState.RUNNING:
            run.started(record.id)
            return TestState.STARTED
        if state is ResultState.PASSED:
            run.passed(record.id, record.duration)
            return TestState.PASSED

        message = self._build_message(record)
        if state.is_skip:
            if record.is_explained_skip and not self.hide_skipped_because_messages:
                # Skips cannot carry a message, so an explained skip is reported as errored
                run.errored(record.id, message, record.duration)
                return TestState.ERRORED
            run.skipped(record.id)
            return TestState.SKIPPED
        if state is ResultState.ERRORED:
            run.errored(record.id, message, record.duration)
            return TestState.ERRORED
        run.failed(record.id, message, record.duration)
        return TestState.FAILED

    @staticmethod
    def _build_message(record: ResultRecord) -> TestMessage:
        location = None
        if record.target_file is not None and record.target_line is not None:
            location = Location(file=record.target_file, line=record.target_line)
        text = record.message or record.error or ""
        if record.message and record.expected is not None and record.actual is not None:
            return TestMessage.diff(text, record.expected, record.actual, location)
        return TestMessage(text, location=location)


# 🔼⚙️
