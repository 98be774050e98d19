"""
Unit Tests for Benchmark Versioning

Tests version bumps on membership changes, snapshots and legacy document
normalization.
"""


class TestTestCaseIdComparison:
    """Tests for order-insensitive id comparison."""

    def test_reorder_is_not_a_change(self):
        from src.agent_health.versioning import has_test_case_ids_changed

        assert has_test_case_ids_changed(["a", "b"], ["b", "a"]) is False

    def test_added_id_is_a_change(self):
        from src.agent_health.versioning import has_test_case_ids_changed

        assert has_test_case_ids_changed(["a"], ["a", "b"]) is True
        assert has_test_case_ids_changed([], None) is False


class TestApplyBenchmarkUpdate:
    """Tests for in-place definition edits."""

    def _doc(self, ids):
        from src.agent_health.versioning import new_benchmark
        return new_benchmark("Bench", "", ids).model_dump(mode="json")

    def test_membership_change_appends_version(self):
        """Adding a test case should bump current_version and record the new set."""
        from src.agent_health.versioning import apply_benchmark_update

        doc = self._doc(["a", "b"])
        changed = apply_benchmark_update(doc, test_case_ids=["a", "b", "c"])

        assert changed is True
        assert doc["current_version"] == 2
        assert [v["version"] for v in doc["versions"]] == [1, 2]
        assert doc["versions"][-1]["test_case_ids"] == ["a", "b", "c"]
        assert doc["test_case_ids"] == ["a", "b", "c"]

    def test_rename_does_not_bump_version(self):
        """Metadata edits should leave the version alone."""
        from src.agent_health.versioning import apply_benchmark_update

        doc = self._doc(["a"])
        changed = apply_benchmark_update(doc, name="Renamed", description="New")

        assert changed is True
        assert doc["name"] == "Renamed"
        assert doc["current_version"] == 1
        assert len(doc["versions"]) == 1

    def test_reorder_changes_order_only(self):
        """Same membership in a new order changes execution order, not the version."""
        from src.agent_health.versioning import apply_benchmark_update

        doc = self._doc(["a", "b"])
        changed = apply_benchmark_update(doc, test_case_ids=["b", "a"])

        assert changed is True
        assert doc["test_case_ids"] == ["b", "a"]
        assert doc["current_version"] == 1

    def test_identical_update_reports_no_change(self):
        from src.agent_health.versioning import apply_benchmark_update

        doc = self._doc(["a"])

        assert apply_benchmark_update(doc, name="Bench", test_case_ids=["a"]) is False

    def test_runs_are_untouched(self):
        """A definition edit never rewrites existing runs."""
        from src.agent_health.versioning import apply_benchmark_update

        doc = self._doc(["a"])
        doc["runs"] = [{"id": "run_1", "name": "r", "agent_key": "k", "model_id": "m",
                        "created_at": "2026-01-01T00:00:00Z", "benchmark_version": 1,
                        "test_case_snapshots": [], "results": {}}]
        apply_benchmark_update(doc, test_case_ids=["a", "b"])

        assert doc["runs"][0]["benchmark_version"] == 1
        assert doc["runs"][0]["id"] == "run_1"


class TestSnapshots:
    """Tests for run snapshots of test case versions."""

    def test_snapshot_pins_current_version(self):
        from src.agent_health.models import TestCase
        from src.agent_health.versioning import snapshot_test_cases

        tc = TestCase(id="tc_1", version=3, name="Refund", initial_prompt="p")
        snapshots = snapshot_test_cases(["tc_1"], {"tc_1": tc})

        assert snapshots[0].id == "tc_1"
        assert snapshots[0].version == 3
        assert snapshots[0].name == "Refund"

    def test_missing_test_case_falls_back_to_id(self):
        """Unknown ids still get a snapshot at version 1, named after the id."""
        from src.agent_health.versioning import snapshot_test_cases

        snapshots = snapshot_test_cases(["tc_gone"], {})

        assert snapshots[0].version == 1
        assert snapshots[0].name == "tc_gone"


class TestNormalizeBenchmarkDoc:
    """Tests for documents written before versioning existed."""

    def test_legacy_document_gets_version_one(self):
        from src.agent_health.versioning import normalize_benchmark_doc

        doc = normalize_benchmark_doc({
            "id": "bench_1",
            "name": "Old",
            "created_at": "2025-01-01T00:00:00Z",
            "test_case_ids": ["a", "b"],
            "runs": [{"id": "run_1", "created_at": "2025-01-02T00:00:00Z"}],
        })

        assert doc["current_version"] == 1
        assert doc["versions"] == [{
            "version": 1,
            "created_at": "2025-01-01T00:00:00Z",
            "test_case_ids": ["a", "b"],
        }]
        assert doc["runs"][0]["benchmark_version"] == 1
        assert doc["runs"][0]["test_case_snapshots"] == []

    def test_runs_sorted_newest_first(self):
        from src.agent_health.versioning import normalize_benchmark_doc

        doc = normalize_benchmark_doc({
            "name": "B",
            "runs": [
                {"id": "old", "created_at": "2026-01-01T00:00:00Z"},
                {"id": "new", "created_at": "2026-03-01T00:00:00Z"},
            ],
        })

        assert [r["id"] for r in doc["runs"]] == ["new", "old"]
