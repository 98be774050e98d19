"""
Benchmark versioning.

A benchmark gets a new version only when the set of test case ids changes;
renaming or re-describing it does not. Runs pin the version and the test case
versions they executed against so later edits never rewrite history.
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional

from .models import Benchmark, BenchmarkVersion, TestCase, TestCaseSnapshot


def has_test_case_ids_changed(old_ids: List[str], new_ids: List[str]) -> bool:
    """Order-insensitive comparison of two test case id lists."""
    return sorted(old_ids or []) != sorted(new_ids or [])


def new_benchmark(name: str, description: str = "", test_case_ids: Optional[List[str]] = None) -> Benchmark:
    ids = list(test_case_ids or [])
    now = datetime.now(timezone.utc).isoformat()
    return Benchmark(
        name=name,
        description=description,
        test_case_ids=ids,
        current_version=1,
        versions=[BenchmarkVersion(version=1, created_at=now, test_case_ids=ids)],
        created_at=now,
        updated_at=now,
    )


def apply_benchmark_update(
    doc: dict,
    name: Optional[str] = None,
    description: Optional[str] = None,
    test_case_ids: Optional[List[str]] = None,
) -> bool:
    """Apply a definition edit to a raw benchmark document in place.

    Only definition fields are touched so the edit can run inside a scripted
    update without clobbering runs. Returns True when anything changed.
    """
    normalize_benchmark_doc(doc)
    changed = False

    if name is not None and name != doc.get("name"):
        doc["name"] = name
        changed = True
    if description is not None and description != doc.get("description"):
        doc["description"] = description
        changed = True

    if test_case_ids is not None and has_test_case_ids_changed(doc.get("test_case_ids", []), test_case_ids):
        next_version = doc["current_version"] + 1
        doc["versions"].append({
            "version": next_version,
            "created_at": datetime.now(timezone.utc).isoformat(),
            "test_case_ids": list(test_case_ids),
        })
        doc["current_version"] = next_version
        doc["test_case_ids"] = list(test_case_ids)
        changed = True
    elif test_case_ids is not None and list(test_case_ids) != doc.get("test_case_ids"):
        # Same membership, new order: execution order changes, version does not
        doc["test_case_ids"] = list(test_case_ids)
        changed = True

    return changed


def snapshot_test_cases(test_case_ids: List[str], test_cases: Dict[str, TestCase]) -> List[TestCaseSnapshot]:
    """Pin the current version of each test case for a new run.

    Ids whose test case can no longer be found are still recorded, at version
    1 and named after the id, so the run keeps one snapshot per test case id.
    """
    snapshots = []
    for tc_id in test_case_ids:
        tc = test_cases.get(tc_id)
        snapshots.append(TestCaseSnapshot(
            id=tc_id,
            version=(tc.version if tc else None) or 1,
            name=(tc.name if tc else "") or tc_id,
        ))
    return snapshots


def normalize_benchmark_doc(doc: dict) -> dict:
    """Fill in fields missing from documents written before versioning existed.

    Mutates and returns ``doc``. Runs are ordered newest first.
    """
    created_at = doc.get("created_at") or datetime.now(timezone.utc).isoformat()
    doc["created_at"] = created_at
    doc.setdefault("test_case_ids", [])
    if not doc.get("current_version"):
        doc["current_version"] = 1
    if not doc.get("versions"):
        doc["versions"] = [{
            "version": 1,
            "created_at": created_at,
            "test_case_ids": list(doc["test_case_ids"]),
        }]

    runs = doc.get("runs") or []
    for run in runs:
        if not run.get("benchmark_version"):
            run["benchmark_version"] = 1
        if run.get("test_case_snapshots") is None:
            run["test_case_snapshots"] = []
    runs.sort(key=lambda r: r.get("created_at") or "", reverse=True)
    doc["runs"] = runs
    return doc
