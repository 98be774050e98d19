"""
SQLite-backed storage service.

Uses a single SQLite database with JSON documents stored per table.
Fully local, no cloud dependencies.

==============================================================================
FEATURES IMPLEMENTED IN THIS MODULE:
==============================================================================

1. SCRIPTED PARTIAL UPDATES (Feature: scripted-updates)
   - Benchmark and report rows carry a `rev` counter
   - update_benchmark_scripted() re-reads, mutates and writes with
     `WHERE rev = ?`; a mismatch means another writer won and the
     read-mutate-write is retried
   - Run and result helpers only touch the run matched by id or the result
     matched by test case id, never the whole runs list

2. VERSIONED TEST CASES (Feature: versioning)
   - Test cases are stored per (id, version); updates insert a new version

==============================================================================
"""

import aiosqlite
import json
import os
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .models import (
    Agent, Benchmark, BenchmarkRun, EvaluationReport, MetricsStatus,
    RunStatus, TestCase, TestCaseResult,
)
from .versioning import normalize_benchmark_doc
from . import config

import logging
logger = logging.getLogger(__name__)


class StorageConflictError(Exception):
    """A scripted update lost every compare-and-swap round."""


def _find_run(doc: dict, run_id: str) -> Optional[dict]:
    for run in doc.get("runs") or []:
        if run.get("id") == run_id:
            return run
    return None


class SQLiteService:
    """Local SQLite storage service."""

    def __init__(self, db_path: Optional[str] = None, retry_on_conflict: Optional[int] = None):
        self._db_path = db_path or config.SQLITE_DB_PATH
        self._retry_on_conflict = config.STORAGE_RETRY_ON_CONFLICT if retry_on_conflict is None else retry_on_conflict
        self._initialized = False

    async def _ensure_initialized(self):
        if self._initialized:
            return
        os.makedirs(os.path.dirname(os.path.abspath(self._db_path)), exist_ok=True)
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.execute("""
                CREATE TABLE IF NOT EXISTS benchmarks (
                    id TEXT PRIMARY KEY,
                    rev INTEGER NOT NULL DEFAULT 1,
                    data TEXT NOT NULL
                )
            """)
            await db.execute("""
                CREATE TABLE IF NOT EXISTS reports (
                    id TEXT PRIMARY KEY,
                    benchmark_id TEXT NOT NULL,
                    rev INTEGER NOT NULL DEFAULT 1,
                    data TEXT NOT NULL
                )
            """)
            await db.execute("""
                CREATE TABLE IF NOT EXISTS testcases (
                    id TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    data TEXT NOT NULL,
                    PRIMARY KEY (id, version)
                )
            """)
            await db.execute("""
                CREATE TABLE IF NOT EXISTS agents (
                    key TEXT PRIMARY KEY,
                    data TEXT NOT NULL
                )
            """)
            await db.execute("CREATE INDEX IF NOT EXISTS idx_report_benchmark ON reports(benchmark_id)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_report_run ON reports(json_extract(data, '$.benchmark_run_id'))")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_report_metrics ON reports(json_extract(data, '$.metrics_status'))")
            await db.commit()
        self._initialized = True

    def _conn(self) -> aiosqlite.Connection:
        """Return an aiosqlite connection context manager (do NOT await here)."""
        return aiosqlite.connect(self._db_path)

    # ===== Benchmark CRUD =====

    async def create_benchmark(self, benchmark: Benchmark) -> Benchmark:
        await self._ensure_initialized()
        async with self._conn() as db:
            await db.execute(
                "INSERT INTO benchmarks (id, rev, data) VALUES (?, 1, ?)",
                (benchmark.id, benchmark.model_dump_json())
            )
            await db.commit()
        return benchmark

    async def get_benchmark(self, benchmark_id: str) -> Optional[Benchmark]:
        await self._ensure_initialized()
        async with self._conn() as db:
            async with db.execute("SELECT data FROM benchmarks WHERE id = ?", (benchmark_id,)) as cursor:
                row = await cursor.fetchone()
        if row:
            return Benchmark(**normalize_benchmark_doc(json.loads(row[0])))
        return None

    async def list_benchmarks(self, skip: int = 0, limit: int = 100) -> List[Benchmark]:
        await self._ensure_initialized()
        async with self._conn() as db:
            async with db.execute(
                "SELECT data FROM benchmarks ORDER BY json_extract(data, '$.created_at') DESC LIMIT ? OFFSET ?",
                (limit, skip)
            ) as cursor:
                rows = await cursor.fetchall()
        return [Benchmark(**normalize_benchmark_doc(json.loads(r[0]))) for r in rows]

    async def delete_benchmark(self, benchmark_id: str) -> bool:
        await self._ensure_initialized()
        async with self._conn() as db:
            cursor = await db.execute("DELETE FROM benchmarks WHERE id = ?", (benchmark_id,))
            await db.execute("DELETE FROM reports WHERE benchmark_id = ?", (benchmark_id,))
            await db.commit()
            return cursor.rowcount > 0

    async def update_benchmark_scripted(
        self,
        benchmark_id: str,
        mutator: Callable[[dict], bool],
        retry_on_conflict: Optional[int] = None,
    ) -> Optional[Benchmark]:
        """Apply ``mutator`` to the stored benchmark document atomically.

        The mutator receives the decoded document and edits it in place. It
        returns False when there is nothing to write. The write only lands if
        nobody else wrote the document since it was read; otherwise the whole
        read-mutate-write is repeated up to ``retry_on_conflict`` more times.

        Returns:
            The benchmark after the update, or None if it does not exist

        Raises:
            StorageConflictError: every attempt lost the race
        """
        await self._ensure_initialized()
        retries = self._retry_on_conflict if retry_on_conflict is None else retry_on_conflict

        for attempt in range(retries + 1):
            async with self._conn() as db:
                async with db.execute("SELECT data, rev FROM benchmarks WHERE id = ?", (benchmark_id,)) as cursor:
                    row = await cursor.fetchone()
                if not row:
                    return None
                doc, rev = json.loads(row[0]), row[1]

                if mutator(doc) is False:
                    return Benchmark(**normalize_benchmark_doc(doc))

                doc["updated_at"] = datetime.now(timezone.utc).isoformat()
                cursor = await db.execute(
                    "UPDATE benchmarks SET data = ?, rev = rev + 1 WHERE id = ? AND rev = ?",
                    (json.dumps(doc), benchmark_id, rev)
                )
                await db.commit()
                if cursor.rowcount == 1:
                    return Benchmark(**normalize_benchmark_doc(doc))

            logger.debug(f"Revision conflict on benchmark {benchmark_id} (attempt {attempt + 1}/{retries + 1})")

        raise StorageConflictError(
            f"Benchmark {benchmark_id} update conflicted {retries + 1} times"
        )

    # ===== Run helpers (scripted) =====

    async def add_run(self, benchmark_id: str, run: BenchmarkRun) -> Optional[Benchmark]:
        """Append a run without touching the benchmark's other runs."""
        run_doc = run.model_dump(mode="json")

        def _append(doc: dict) -> bool:
            runs = doc.setdefault("runs", [])
            if any(r.get("id") == run.id for r in runs):
                return False
            runs.insert(0, run_doc)
            return True

        return await self.update_benchmark_scripted(benchmark_id, _append)

    async def update_test_case_result(
        self,
        benchmark_id: str,
        run_id: str,
        test_case_id: str,
        result: TestCaseResult,
    ) -> bool:
        """Set ``runs[run_id].results[test_case_id]`` and nothing else."""
        result_doc = result.model_dump(mode="json")
        found = False

        def _set_result(doc: dict) -> bool:
            nonlocal found
            run = _find_run(doc, run_id)
            found = run is not None
            if run is None:
                return False
            run.setdefault("results", {})[test_case_id] = result_doc
            return True

        await self.update_benchmark_scripted(benchmark_id, _set_result)
        return found

    async def replace_run(self, benchmark_id: str, run: BenchmarkRun) -> bool:
        """Replace the slot of the run with the same id."""
        run_doc = run.model_dump(mode="json")
        found = False

        def _replace(doc: dict) -> bool:
            nonlocal found
            runs = doc.get("runs") or []
            for i, existing in enumerate(runs):
                if existing.get("id") == run.id:
                    runs[i] = run_doc
                    found = True
                    return True
            return False

        await self.update_benchmark_scripted(benchmark_id, _replace)
        return found

    async def update_run_fields(
        self,
        benchmark_id: str,
        run_id: str,
        fields: Dict[str, Any],
        only_if_status: Optional[RunStatus] = None,
    ) -> bool:
        """Merge ``fields`` into one run.

        With ``only_if_status`` the write is skipped unless the stored run is
        in that status. Returns True when the run was written.
        """
        written = False

        def _merge(doc: dict) -> bool:
            nonlocal written
            run = _find_run(doc, run_id)
            if run is None:
                return False
            if only_if_status is not None and run.get("status") != only_if_status.value:
                return False
            run.update(fields)
            written = True
            return True

        await self.update_benchmark_scripted(benchmark_id, _merge)
        return written

    async def delete_run(self, benchmark_id: str, run_id: str) -> bool:
        removed = False

        def _remove(doc: dict) -> bool:
            nonlocal removed
            runs = doc.get("runs") or []
            kept = [r for r in runs if r.get("id") != run_id]
            removed = len(kept) != len(runs)
            doc["runs"] = kept
            return removed

        await self.update_benchmark_scripted(benchmark_id, _remove)
        return removed

    # ===== Report CRUD =====

    async def create_report(self, report: EvaluationReport) -> EvaluationReport:
        await self._ensure_initialized()
        async with self._conn() as db:
            await db.execute(
                "INSERT INTO reports (id, benchmark_id, rev, data) VALUES (?, ?, 1, ?)",
                (report.id, report.benchmark_id, report.model_dump_json())
            )
            await db.commit()
        return report

    async def get_report(self, report_id: str) -> Optional[EvaluationReport]:
        await self._ensure_initialized()
        async with self._conn() as db:
            async with db.execute("SELECT data FROM reports WHERE id = ?", (report_id,)) as cursor:
                row = await cursor.fetchone()
        if row:
            return EvaluationReport(**json.loads(row[0]))
        return None

    async def get_reports_by_ids(self, report_ids: List[str]) -> Dict[str, EvaluationReport]:
        await self._ensure_initialized()
        ids = [r for r in report_ids if r]
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        async with self._conn() as db:
            async with db.execute(f"SELECT data FROM reports WHERE id IN ({placeholders})", ids) as cursor:
                rows = await cursor.fetchall()
        reports = [EvaluationReport(**json.loads(r[0])) for r in rows]
        return {r.id: r for r in reports}

    async def list_reports_by_run(self, benchmark_run_id: str) -> List[EvaluationReport]:
        await self._ensure_initialized()
        async with self._conn() as db:
            async with db.execute(
                "SELECT data FROM reports WHERE json_extract(data, '$.benchmark_run_id') = ? "
                "ORDER BY json_extract(data, '$.created_at')",
                (benchmark_run_id,)
            ) as cursor:
                rows = await cursor.fetchall()
        return [EvaluationReport(**json.loads(r[0])) for r in rows]

    async def list_pending_trace_reports(self) -> List[EvaluationReport]:
        """Reports still waiting for traces: metrics pending with a run id."""
        await self._ensure_initialized()
        async with self._conn() as db:
            async with db.execute(
                "SELECT data FROM reports WHERE json_extract(data, '$.metrics_status') = ? "
                "AND COALESCE(json_extract(data, '$.run_id'), '') != ''",
                (MetricsStatus.pending.value,)
            ) as cursor:
                rows = await cursor.fetchall()
        return [EvaluationReport(**json.loads(r[0])) for r in rows]

    async def update_report_fields(self, report_id: str, fields: Dict[str, Any]) -> Optional[EvaluationReport]:
        """Merge ``fields`` into a report with the same revision check as benchmarks."""
        await self._ensure_initialized()
        for attempt in range(self._retry_on_conflict + 1):
            async with self._conn() as db:
                async with db.execute("SELECT data, rev FROM reports WHERE id = ?", (report_id,)) as cursor:
                    row = await cursor.fetchone()
                if not row:
                    return None
                doc, rev = json.loads(row[0]), row[1]
                doc.update(fields)
                report = EvaluationReport(**doc)
                cursor = await db.execute(
                    "UPDATE reports SET data = ?, rev = rev + 1 WHERE id = ? AND rev = ?",
                    (report.model_dump_json(), report_id, rev)
                )
                await db.commit()
                if cursor.rowcount == 1:
                    return report
            logger.debug(f"Revision conflict on report {report_id} (attempt {attempt + 1})")
        raise StorageConflictError(f"Report {report_id} update conflicted {self._retry_on_conflict + 1} times")

    # ===== Test Case CRUD =====

    async def create_test_case(self, test_case: TestCase) -> TestCase:
        await self._ensure_initialized()
        async with self._conn() as db:
            await db.execute(
                "INSERT INTO testcases (id, version, data) VALUES (?, ?, ?)",
                (test_case.id, test_case.version, test_case.model_dump_json())
            )
            await db.commit()
        return test_case

    async def get_test_case(self, test_case_id: str, version: Optional[int] = None) -> Optional[TestCase]:
        """Return a specific version, or the latest one when version is None."""
        await self._ensure_initialized()
        async with self._conn() as db:
            if version is None:
                query = "SELECT data FROM testcases WHERE id = ? ORDER BY version DESC LIMIT 1"
                params = (test_case_id,)
            else:
                query = "SELECT data FROM testcases WHERE id = ? AND version = ?"
                params = (test_case_id, version)
            async with db.execute(query, params) as cursor:
                row = await cursor.fetchone()
        if row:
            return TestCase(**json.loads(row[0]))
        return None

    async def get_test_cases_by_ids(self, test_case_ids: List[str]) -> Dict[str, TestCase]:
        """Latest version of each id; unknown ids are left out."""
        found = {}
        for tc_id in test_case_ids:
            test_case = await self.get_test_case(tc_id)
            if test_case:
                found[tc_id] = test_case
        return found

    async def list_test_cases(self) -> List[TestCase]:
        await self._ensure_initialized()
        async with self._conn() as db:
            async with db.execute("""
                SELECT t.data FROM testcases t
                JOIN (SELECT id, MAX(version) AS v FROM testcases GROUP BY id) latest
                  ON t.id = latest.id AND t.version = latest.v
                ORDER BY json_extract(t.data, '$.created_at') DESC
            """) as cursor:
                rows = await cursor.fetchall()
        return [TestCase(**json.loads(r[0])) for r in rows]

    async def list_test_case_versions(self, test_case_id: str) -> List[TestCase]:
        await self._ensure_initialized()
        async with self._conn() as db:
            async with db.execute(
                "SELECT data FROM testcases WHERE id = ? ORDER BY version DESC", (test_case_id,)
            ) as cursor:
                rows = await cursor.fetchall()
        return [TestCase(**json.loads(r[0])) for r in rows]

    async def update_test_case(self, test_case_id: str, updates: Dict[str, Any]) -> Optional[TestCase]:
        """Store ``updates`` as a new version of the test case."""
        current = await self.get_test_case(test_case_id)
        if not current:
            return None
        data = current.model_dump(mode="json")
        data.update(updates)
        data["version"] = current.version + 1
        data["updated_at"] = datetime.now(timezone.utc).isoformat()
        return await self.create_test_case(TestCase(**data))

    # ===== Agent CRUD =====

    async def create_agent(self, agent: Agent) -> Agent:
        await self._ensure_initialized()
        async with self._conn() as db:
            await db.execute(
                "INSERT OR REPLACE INTO agents (key, data) VALUES (?, ?)",
                (agent.key, agent.model_dump_json())
            )
            await db.commit()
        return agent

    async def get_agent(self, agent_key: str) -> Optional[Agent]:
        await self._ensure_initialized()
        async with self._conn() as db:
            async with db.execute("SELECT data FROM agents WHERE key = ?", (agent_key,)) as cursor:
                row = await cursor.fetchone()
        if row:
            return Agent(**json.loads(row[0]))
        return None

    async def list_agents(self) -> List[Agent]:
        await self._ensure_initialized()
        async with self._conn() as db:
            async with db.execute("SELECT data FROM agents ORDER BY key") as cursor:
                rows = await cursor.fetchall()
        return [Agent(**json.loads(r[0])) for r in rows]

    async def delete_agent(self, agent_key: str) -> bool:
        await self._ensure_initialized()
        async with self._conn() as db:
            cursor = await db.execute("DELETE FROM agents WHERE key = ?", (agent_key,))
            await db.commit()
            return cursor.rowcount > 0


# Singleton
_service: Optional[SQLiteService] = None


def get_db_service() -> SQLiteService:
    global _service
    if not _service:
        _service = SQLiteService()
    return _service
