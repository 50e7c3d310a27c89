# tests/unit/test_reconciler.py

"""Tests for applying discovery and result records to the tree."""

import pytest

from pesterbridge.exceptions import DuplicateTestId, OrphanedTestRecord, RecordDecodeError
from pesterbridge.reconciler import TestTreeReconciler
from pesterbridge.run import TestRun, TestState
from pesterbridge.tree import DiscoveryStatus, NodeKind, TestTree

FILE = "/src/Math.Tests.ps1"


def discovery_records() -> list[dict]:
    return [
        {"id": "block", "label": "Describe Math", "parent": FILE, "file": FILE, "startLine": 0, "endLine": 10},
        {"id": "t1", "label": "adds", "parent": "block", "file": FILE, "startLine": 1, "endLine": 3, "tags": ["fast"]},
        {"id": "t2", "label": "subtracts", "parent": "block", "file": FILE, "startLine": 4, "endLine": 6},
    ]


@pytest.fixture
def tree() -> TestTree:
    tree = TestTree()
    tree.add_file(FILE)
    return tree


@pytest.fixture
def reconciler(tree: TestTree) -> TestTreeReconciler:
    return TestTreeReconciler(tree)


def discover(reconciler: TestTreeReconciler, records: list[dict]) -> None:
    batch = reconciler.begin_discovery([FILE])
    for record in records:
        reconciler.apply_discovery(batch, record)
    reconciler.end_discovery(batch)


class TestDiscovery:
    def test_builds_hierarchy(self, reconciler: TestTreeReconciler, tree: TestTree):
        discover(reconciler, discovery_records())

        assert [n.id for n in tree.children(FILE)] == ["block"]
        assert [n.id for n in tree.children("block")] == ["t1", "t2"]
        assert tree.get("block").kind is NodeKind.BLOCK
        assert tree.get("t1").kind is NodeKind.TEST
        assert tree.get("t1").tags == ("fast",)
        assert tree.get("t1").description == "fast"
        assert tree.get(FILE).discovery_status is DiscoveryStatus.DISCOVERED
        assert not tree.get(FILE).busy

    def test_begin_marks_files_busy(self, reconciler: TestTreeReconciler, tree: TestTree):
        reconciler.begin_discovery([FILE])

        assert tree.get(FILE).busy
        assert tree.get(FILE).discovery_status is DiscoveryStatus.DISCOVERING

    def test_rediscovery_replaces_children(self, reconciler: TestTreeReconciler, tree: TestTree):
        discover(reconciler, discovery_records())
        records = discovery_records()
        records[2] = {**records[2], "id": "t3", "label": "multiplies"}

        discover(reconciler, records)

        assert [n.id for n in tree.children("block")] == ["t1", "t3"]
        assert "t2" not in tree
        assert len(tree) == 4

    def test_parent_from_same_batch_attaches_once(self, reconciler: TestTreeReconciler, tree: TestTree):
        batch = reconciler.begin_discovery([FILE])
        for record in discovery_records() + discovery_records()[1:2]:
            reconciler.apply_discovery(batch, record)

        assert [n.id for n in tree.children("block")] == ["t1", "t2"]
        assert set(batch.created) == {"block", "t1", "t2"}

    def test_error_on_existing_node_is_attached_without_children(self, reconciler: TestTreeReconciler, tree: TestTree):
        batch = reconciler.begin_discovery([FILE])
        node = reconciler.apply_discovery(batch, {"id": FILE, "label": "Math", "error": "Syntax error line 3"})
        reconciler.end_discovery(batch)

        assert node is tree.get(FILE)
        assert node.error == "Syntax error line 3"
        assert tree.children(FILE) == []

    def test_orphan_without_error_is_fatal(self, reconciler: TestTreeReconciler):
        batch = reconciler.begin_discovery([FILE])

        with pytest.raises(OrphanedTestRecord) as exc_info:
            reconciler.apply_discovery(batch, {"id": "t9", "label": "lost", "parent": "nowhere"})

        assert exc_info.value.parent_id == "nowhere"

    def test_orphan_error_is_shown_on_the_file(self, reconciler: TestTreeReconciler, tree: TestTree):
        batch = reconciler.begin_discovery([FILE])
        node = reconciler.apply_discovery(
            batch, {"id": f"{FILE}:err", "label": "broken", "parent": "nope", "error": "ParseException"}
        )
        reconciler.end_discovery(batch)

        assert node is tree.get(FILE)
        assert node.error == "ParseException"
        assert [n.id for n in tree.roots()] == [FILE]

    def test_rediscovering_a_fixed_file_clears_the_error(self, reconciler: TestTreeReconciler, tree: TestTree):
        discover(reconciler, [{"id": f"{FILE}:err", "label": "broken", "parent": "nope", "error": "ParseException"}])

        discover(reconciler, discovery_records())

        assert [(n.id, n.error) for n in tree.roots()] == [(FILE, None)]
        assert [n.id for n in tree.children(FILE)] == ["block"]

    def test_orphan_error_matching_no_file_is_dropped(self, reconciler: TestTreeReconciler, tree: TestTree):
        other = tree.add_file("/src/Other.Tests.ps1")
        batch = reconciler.begin_discovery([FILE, other.id])

        node = reconciler.apply_discovery(
            batch, {"id": "x", "label": "x", "parent": "nope", "file": "/elsewhere.ps1", "error": "boom"}
        )

        assert node is None
        assert tree.get(FILE).error is None and other.error is None
        assert "x" not in tree

    def test_record_cannot_be_its_own_parent(self, reconciler: TestTreeReconciler, tree: TestTree):
        batch = reconciler.begin_discovery([FILE])

        with pytest.raises(DuplicateTestId):
            reconciler.apply_discovery(batch, {"id": FILE, "label": "Math", "parent": FILE})

        assert [n.id for n in tree.roots()] == [FILE]
        assert tree.children(FILE) == []

    def test_record_cannot_reuse_an_ancestor_id(self, reconciler: TestTreeReconciler, tree: TestTree):
        batch = reconciler.begin_discovery([FILE])
        for record in discovery_records():
            reconciler.apply_discovery(batch, record)

        with pytest.raises(DuplicateTestId) as exc_info:
            reconciler.apply_discovery(batch, {"id": "block", "label": "again", "parent": "t1"})

        assert isinstance(exc_info.value, OrphanedTestRecord)
        assert tree.get("block").parent_id == FILE
        assert [n.id for n in tree.children(FILE)] == ["block"]
        assert tree.children("t1") == []
        assert len(list(tree.iter_descendants(FILE))) == 3

    def test_record_cannot_reuse_a_file_id(self, reconciler: TestTreeReconciler, tree: TestTree):
        other = tree.add_file("/src/Other.Tests.ps1")
        batch = reconciler.begin_discovery([FILE])
        reconciler.apply_discovery(batch, discovery_records()[0])

        with pytest.raises(DuplicateTestId):
            reconciler.apply_discovery(batch, {"id": other.id, "label": "Other", "parent": "block"})

        assert other in tree.roots()

    def test_malformed_record_is_rejected(self, reconciler: TestTreeReconciler):
        batch = reconciler.begin_discovery([FILE])
        with pytest.raises(RecordDecodeError):
            reconciler.apply_discovery(batch, {"label": "no id"})

    def test_failed_batch_can_be_retried(self, reconciler: TestTreeReconciler, tree: TestTree):
        batch = reconciler.begin_discovery([FILE])
        reconciler.end_discovery(batch, failed=True)

        assert tree.get(FILE).discovery_status is DiscoveryStatus.UNDISCOVERED
        assert not tree.get(FILE).busy


class TestResults:
    @pytest.fixture
    def run(self) -> TestRun:
        return TestRun()

    @pytest.fixture(autouse=True)
    def discovered(self, reconciler: TestTreeReconciler):
        discover(reconciler, discovery_records())

    def test_passed_records_duration(self, reconciler: TestTreeReconciler, run: TestRun):
        state = reconciler.apply_result(run, {"id": "t1", "result": "Passed", "duration": 12})

        assert state is TestState.PASSED
        assert run.outcomes["t1"].duration == 12

    def test_running_marks_started(self, reconciler: TestTreeReconciler, run: TestRun):
        reconciler.apply_result(run, {"id": "t1", "result": "Running"})
        assert run.state_of("t1") is TestState.STARTED

    def test_failure_with_expected_and_actual_is_a_diff(self, reconciler: TestTreeReconciler, run: TestRun):
        reconciler.apply_result(
            run,
            {
                "id": "t2",
                "result": "Failed",
                "duration": 3,
                "message": "Expected 2, but got 3",
                "expected": "2",
                "actual": "3",
                "targetFile": FILE,
                "targetLine": 5,
            },
        )

        outcome = run.outcomes["t2"]
        assert outcome.state is TestState.FAILED
        message = outcome.messages[0]
        assert message.is_diff
        assert (message.expected, message.actual) == ("2", "3")
        assert message.location.file == FILE
        assert message.location.line == 5

    def test_failure_without_payloads_is_plain(self, reconciler: TestTreeReconciler, run: TestRun):
        reconciler.apply_result(run, {"id": "t2", "result": 4, "message": "boom"})

        message = run.outcomes["t2"].messages[0]
        assert not message.is_diff
        assert message.location is None

    def test_excluded_result_is_dropped(self, reconciler: TestTreeReconciler, run: TestRun):
        state = reconciler.apply_result(run, {"id": "t1", "result": "Failed", "message": "x"}, exclude={"t1"})

        assert state is None
        assert run.state_of("t1") is None

    def test_unknown_id_is_recorded_and_non_fatal(self, reconciler: TestTreeReconciler, run: TestRun):
        assert reconciler.apply_result(run, {"id": "ghost", "result": "Passed"}) is None
        assert [e.test_id for e in run.inconsistencies] == ["ghost"]

        reconciler.apply_result(run, {"id": "t1", "result": "Passed"})
        assert run.state_of("t1") is TestState.PASSED

    def test_block_without_error_is_ignored(self, reconciler: TestTreeReconciler, run: TestRun):
        assert reconciler.apply_result(run, {"id": "block", "type": "Block", "result": "Failed"}) is None
        assert run.state_of("block") is None

    def test_block_with_error_is_errored(self, reconciler: TestTreeReconciler, run: TestRun):
        state = reconciler.apply_result(
            run, {"id": "block", "type": "Block", "result": "Failed", "error": "BeforeAll failed"}
        )

        assert state is TestState.ERRORED
        assert run.outcomes["block"].messages[0].message == "BeforeAll failed"

    def test_silent_skip(self, reconciler: TestTreeReconciler, run: TestRun):
        state = reconciler.apply_result(run, {"id": "t1", "result": "Skipped", "message": "is skipped"})
        assert state is TestState.SKIPPED

    @pytest.mark.parametrize("result", ["NotRun", "Inconclusive"])
    def test_other_skip_states(self, reconciler: TestTreeReconciler, run: TestRun, result: str):
        assert reconciler.apply_result(run, {"id": "t1", "result": result}) is TestState.SKIPPED

    def test_explained_skip_is_reported_as_errored(self, reconciler: TestTreeReconciler, run: TestRun):
        state = reconciler.apply_result(
            run, {"id": "t1", "result": "Skipped", "message": "Windows only", "skipReported": True}
        )

        assert state is TestState.ERRORED
        assert run.outcomes["t1"].messages[0].message == "Windows only"

    def test_explained_skip_hidden_by_configuration(self, tree: TestTree, run: TestRun):
        reconciler = TestTreeReconciler(tree, hide_skipped_because_messages=True)
        state = reconciler.apply_result(run, {"id": "t1", "result": "Skipped", "message": "Windows only"})
        assert state is TestState.SKIPPED
