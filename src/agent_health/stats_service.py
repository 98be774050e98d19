"""
Run statistics.

RunStats are never edited by hand: they are always recomputed from a run's
results and the reports those results point at.

==============================================================================
FEATURES IMPLEMENTED IN THIS MODULE:
==============================================================================

1. STATS COMPUTATION (Feature: run-stats)
   - compute_run_stats() is a pure function of results + reports
   - A report that cannot be found counts as pending, not failed
   - If reports cannot be fetched at all, counts fall back to result status

2. STATS BACKFILL (Feature: stats-backfill)
   - Finished runs with missing stats, or with pending > 0 although every
     result is terminal, are recomputed and persisted when read
   - Heals stats that went stale because a report was judged after the run
     was finalized

3. STATS REFRESH (Feature: run-stats)
   - Per run, for every run of a benchmark, and for the run owning a report
   - Running runs are skipped: only the orchestrator computes their stats

==============================================================================
"""

import logging
from typing import Dict, Optional

from .models import (
    Benchmark, BenchmarkRun, EvaluationReport, MetricsStatus,
    PassFailStatus, ResultStatus, RunStats, RunStatus,
)
from .sqlite_service import SQLiteService

logger = logging.getLogger(__name__)

_TERMINAL_RESULT_STATUSES = {ResultStatus.completed, ResultStatus.failed, ResultStatus.cancelled}


def compute_run_stats(run: BenchmarkRun, reports: Dict[str, EvaluationReport]) -> RunStats:
    """Count passed / failed / pending results of a run.

    Args:
        run: The run whose results are counted
        reports: Reports keyed by id; results pointing at a missing report
                 are counted as pending
    """
    stats = RunStats(total=len(run.results))

    for result in run.results.values():
        if result.status in (ResultStatus.pending, ResultStatus.running):
            stats.pending += 1
        elif result.status in (ResultStatus.failed, ResultStatus.cancelled):
            stats.failed += 1
        elif result.status == ResultStatus.completed and result.report_id:
            report = reports.get(result.report_id)
            if report is None or report.metrics_status == MetricsStatus.pending:
                stats.pending += 1
            elif report.pass_fail_status == PassFailStatus.passed:
                stats.passed += 1
            else:
                stats.failed += 1
        else:
            stats.pending += 1

    return stats


def compute_run_stats_from_results(run: BenchmarkRun) -> RunStats:
    """Fallback when reports are unreachable: completed results stay pending."""
    stats = RunStats(total=len(run.results))
    for result in run.results.values():
        if result.status in (ResultStatus.failed, ResultStatus.cancelled):
            stats.failed += 1
        else:
            stats.pending += 1
    return stats


def needs_stats_backfill(run: BenchmarkRun) -> bool:
    if run.status not in (RunStatus.completed, RunStatus.cancelled):
        return False
    if run.stats is None:
        return True
    if run.stats.pending > 0:
        return all(r.status in _TERMINAL_RESULT_STATUSES for r in run.results.values())
    return False


class StatsService:
    """Computes and persists RunStats against the benchmark store."""

    def __init__(self, db_service: SQLiteService):
        self.db = db_service

    async def compute_stats_for_run(self, run: BenchmarkRun) -> RunStats:
        report_ids = [r.report_id for r in run.results.values() if r.report_id]
        if not report_ids:
            return compute_run_stats(run, {})
        try:
            reports = await self.db.get_reports_by_ids(report_ids)
        except Exception as e:
            logger.warning(f"Could not load reports for run {run.id}, counting by result status: {e}")
            return compute_run_stats_from_results(run)
        return compute_run_stats(run, reports)

    async def _persist_stats(self, benchmark_id: str, run_id: str, stats: RunStats) -> bool:
        return await self.db.update_run_fields(benchmark_id, run_id, {"stats": stats.model_dump(mode="json")})

    async def backfill_benchmark(self, benchmark: Benchmark) -> Benchmark:
        """Recompute and persist stale stats of finished runs; returns the healed benchmark."""
        for run in benchmark.runs:
            if not needs_stats_backfill(run):
                continue
            stale = run.stats
            run.stats = await self.compute_stats_for_run(run)
            try:
                await self._persist_stats(benchmark.id, run.id, run.stats)
            except Exception as e:
                # Served with fresh stats anyway; the next read retries the write
                logger.warning(f"Failed to persist backfilled stats for run {run.id}: {e}")
                continue
            logger.info(f"Backfilled stats for run {run.id}: {stale} -> {run.stats}")
        return benchmark

    async def refresh_run_stats(self, benchmark_id: str, run_id: str) -> Optional[RunStats]:
        """Recompute one run's stats.

        Returns the new stats, or None when the benchmark or run does not
        exist or the run is still executing.
        """
        benchmark = await self.db.get_benchmark(benchmark_id)
        if not benchmark:
            return None
        run = benchmark.get_run(run_id)
        if run is None or run.status == RunStatus.running:
            return None
        stats = await self.compute_stats_for_run(run)
        await self._persist_stats(benchmark_id, run_id, stats)
        logger.info(f"Refreshed stats for run {run_id}: {stats.model_dump()}")
        return stats

    async def refresh_all_run_stats(self, benchmark_id: str) -> Optional[int]:
        """Recompute every finished run of a benchmark. Returns how many were refreshed."""
        benchmark = await self.db.get_benchmark(benchmark_id)
        if not benchmark:
            return None
        refreshed = 0
        for run in benchmark.runs:
            if run.status == RunStatus.running:
                continue
            stats = await self.compute_stats_for_run(run)
            if await self._persist_stats(benchmark_id, run.id, stats):
                refreshed += 1
        logger.info(f"Refreshed stats for {refreshed} run(s) of benchmark {benchmark_id}")
        return refreshed

    async def refresh_stats_for_report(self, report: EvaluationReport) -> Optional[RunStats]:
        """Recompute the stats of the run that owns ``report``."""
        if not report.benchmark_id or not report.benchmark_run_id:
            return None
        return await self.refresh_run_stats(report.benchmark_id, report.benchmark_run_id)

