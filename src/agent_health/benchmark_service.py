"""
Benchmark service: run lifecycle around the orchestrator.

==============================================================================
FEATURES IMPLEMENTED IN THIS MODULE:
==============================================================================

1. RUN CREATION (Feature: versioning)
   - Validates the run config (name, agent key, model id, known agent)
   - Pins benchmark version and test case snapshots on the new run
   - Stores the run with every result pre-filled as pending before execution

2. BACKGROUND EXECUTION WITH SSE CONSUMERS (Feature: live-progress)
   - A run executes as an asyncio.Task feeding an event queue
   - The SSE stream only consumes the queue: a client disconnecting does not
     stop the run
   - Events: started, progress, then one of completed / cancelled / error

3. RUN CANCELLATION (Feature: cancel-run)
   - Flags the in-memory token and writes status=cancelled straight to storage
     so readers see it before the orchestrator's next check
   - Cancelling twice is a no-op; unknown or finished runs are "not found"

4. ORPHAN RUN CLEANUP (Feature: orphan-cleanup)
   - cleanup_orphaned_runs() finalizes runs left "running" by a previous
     process as cancelled, with an explanatory error

==============================================================================
"""

import asyncio
import logging
from dataclasses import dataclass, field as dc_field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from .agent_client import AgentClient
from .benchmark_runner import BenchmarkRunner, RunConfigError
from .cancellation import CancellationRegistry, CancellationToken
from .judge_service import get_judge_service
from .models import (
    Benchmark, BenchmarkCreate, BenchmarkProgress, BenchmarkRun, BenchmarkUpdate,
    RunConfigInput, RunStatus, TestCaseResult,
)
from .sqlite_service import SQLiteService
from .stats_service import StatsService
from .trace_polling_service import TracePollingService
from .versioning import apply_benchmark_update, new_benchmark, snapshot_test_cases

logger = logging.getLogger(__name__)

ORPHANED_RUN_ERROR = "Server restarted while run was in progress"


# ===========================================================================
# Run Job Tracking
# ===========================================================================
# Each run executes as a background asyncio.Task. Events are pushed onto the
# job's queue; a None sentinel marks the end of the stream.
# ===========================================================================
@dataclass
class _RunJob:
    benchmark_id: str
    run_id: str
    started_at: str
    queue: asyncio.Queue = dc_field(default_factory=asyncio.Queue)
    completed: bool = False
    task: asyncio.Task = None  # type: ignore[assignment]


def validate_run_config(run_config: RunConfigInput) -> None:
    if not run_config.name.strip():
        raise RunConfigError("Run name is required")
    if not run_config.agent_key.strip():
        raise RunConfigError("Agent key is required")
    if not run_config.model_id.strip():
        raise RunConfigError("Model id is required")


class BenchmarkService:
    def __init__(
        self,
        db_service: SQLiteService,
        stats_service: StatsService,
        runner: BenchmarkRunner,
        registry: Optional[CancellationRegistry] = None,
    ):
        self.db = db_service
        self.stats = stats_service
        self.runner = runner
        self.registry = registry or CancellationRegistry()
        self._jobs: Dict[str, _RunJob] = {}

    # ==========================================================================
    # BENCHMARK DEFINITIONS
    # ==========================================================================

    async def create_benchmark(self, request: BenchmarkCreate) -> Benchmark:
        benchmark = new_benchmark(request.name, request.description, request.test_case_ids)
        return await self.db.create_benchmark(benchmark)

    async def get_benchmark(self, benchmark_id: str) -> Optional[Benchmark]:
        """Read a benchmark, healing stale run stats on the way."""
        benchmark = await self.db.get_benchmark(benchmark_id)
        if benchmark is None:
            return None
        return await self.stats.backfill_benchmark(benchmark)

    async def list_benchmarks(self, skip: int = 0, limit: int = 100) -> List[Benchmark]:
        benchmarks = await self.db.list_benchmarks(skip=skip, limit=limit)
        return [await self.stats.backfill_benchmark(b) for b in benchmarks]

    async def update_benchmark(self, benchmark_id: str, request: BenchmarkUpdate) -> Optional[Benchmark]:
        return await self.db.update_benchmark_scripted(
            benchmark_id,
            lambda doc: apply_benchmark_update(
                doc,
                name=request.name,
                description=request.description,
                test_case_ids=request.test_case_ids,
            ),
        )

    # ==========================================================================
    # RUN LIFECYCLE
    # ==========================================================================

    async def create_run(self, benchmark_id: str, run_config: RunConfigInput) -> Optional[Tuple[Benchmark, BenchmarkRun]]:
        """Create and store a run ready for execution.

        Returns:
            (benchmark, run), or None when the benchmark does not exist

        Raises:
            RunConfigError: invalid config or unknown agent
        """
        validate_run_config(run_config)
        benchmark = await self.db.get_benchmark(benchmark_id)
        if benchmark is None:
            return None
        if await self.db.get_agent(run_config.agent_key) is None:
            raise RunConfigError(f"Agent '{run_config.agent_key}' not found")

        test_cases = await self.db.get_test_cases_by_ids(benchmark.test_case_ids)
        run = BenchmarkRun(
            name=run_config.name.strip(),
            description=run_config.description,
            agent_key=run_config.agent_key,
            model_id=run_config.model_id,
            status=RunStatus.running,
            benchmark_version=benchmark.current_version,
            test_case_snapshots=snapshot_test_cases(benchmark.test_case_ids, test_cases),
            results={tc_id: TestCaseResult() for tc_id in benchmark.test_case_ids},
        )
        await self.db.add_run(benchmark.id, run)
        logger.info(f"Created run {run.id} for benchmark {benchmark.id} (version {run.benchmark_version})")
        return benchmark, run

    def start_run(self, benchmark: Benchmark, run: BenchmarkRun, headers: Optional[Dict[str, str]] = None) -> _RunJob:
        """Execute ``run`` in the background; events go to the returned job's queue."""
        token = self.registry.register(run.id)
        job = _RunJob(
            benchmark_id=benchmark.id,
            run_id=run.id,
            started_at=datetime.now(timezone.utc).isoformat(),
        )
        self._jobs[run.id] = job
        job.task = asyncio.create_task(self._execute(job, benchmark, run, token, headers), name=f"run-{run.id}")
        return job

    async def execute(self, benchmark_id: str, run_config: RunConfigInput) -> Optional[BenchmarkRun]:
        """Create, execute and wait for a run. Returns the finalized run."""
        created = await self.create_run(benchmark_id, run_config)
        if created is None:
            return None
        benchmark, run = created
        job = self.start_run(benchmark, run, run_config.headers)
        return await job.task

    async def _execute(
        self,
        job: _RunJob,
        benchmark: Benchmark,
        run: BenchmarkRun,
        token: CancellationToken,
        headers: Optional[Dict[str, str]],
    ) -> BenchmarkRun:
        async def _on_progress(progress: BenchmarkProgress):
            await job.queue.put({"type": "progress", **progress.model_dump(mode="json")})

        async def _on_test_case_complete(test_case_id: str, result: TestCaseResult):
            await self.db.update_test_case_result(benchmark.id, run.id, test_case_id, result)

        try:
            await job.queue.put({
                "type": "started",
                "run_id": run.id,
                "test_cases": [
                    {"id": s.id, "name": s.name, "status": "pending"} for s in run.test_case_snapshots
                ],
            })
            final_run = await self.runner.execute_run(
                benchmark,
                run,
                on_progress=_on_progress,
                cancellation_token=token,
                on_test_case_complete=_on_test_case_complete,
                headers=headers,
            )
            if final_run.status == RunStatus.failed:
                await job.queue.put({"type": "error", "error": final_run.error, "run_id": run.id})
            else:
                await job.queue.put({"type": final_run.status.value, "run": final_run.model_dump(mode="json")})
            return final_run
        except Exception as e:
            logger.error(f"Run job {run.id} crashed: {e}", exc_info=True)
            await job.queue.put({"type": "error", "error": str(e), "run_id": run.id})
            raise
        finally:
            self.registry.unregister(run.id)
            job.completed = True
            await job.queue.put(None)
            self._jobs.pop(run.id, None)

    def get_job(self, run_id: str) -> Optional[_RunJob]:
        job = self._jobs.get(run_id)
        return job if job and not job.completed else None

    async def cancel_run(self, benchmark_id: str, run_id: str) -> bool:
        """Cancel an in-flight run.

        Returns False when no run with this id is executing. Repeated cancels
        of the same run return True without further writes.
        """
        first = self.registry.cancel(run_id)
        if first is None:
            return False
        if first:
            written = await self.db.update_run_fields(
                benchmark_id,
                run_id,
                {"status": RunStatus.cancelled.value},
                only_if_status=RunStatus.running,
            )
            logger.info(f"Run {run_id} cancel requested (storage status written: {written})")
        return True

    async def cleanup_orphaned_runs(self) -> int:
        """Finalize runs that no task in this process owns and that never finished.

        That covers runs still marked running and runs whose cancel was written
        but whose task died before finalizing them (cancelled, no completed_at).
        This should be called at startup to clean up runs interrupted by a
        server restart.
        """
        orphaned = 0
        active = set(self.registry.active_run_ids())
        for benchmark in await self.db.list_benchmarks(limit=10000):
            for run in benchmark.runs:
                unfinished = run.status == RunStatus.running or (
                    run.status == RunStatus.cancelled and run.completed_at is None
                )
                if not unfinished or run.id in active:
                    continue
                try:
                    await self.runner.finalize_run(benchmark.id, run, cancelled=True, error=ORPHANED_RUN_ERROR)
                    orphaned += 1
                    logger.info(f"Marked orphaned run {run.id} ({run.name}) as cancelled")
                except Exception as e:
                    logger.error(f"Orphaned run cleanup failed for run {run.id}: {e}")
        if orphaned:
            logger.info(f"Cleaned up {orphaned} orphaned run(s)")
        else:
            logger.info("No orphaned runs found")
        return orphaned

    async def shutdown(self) -> None:
        tasks = [job.task for job in self._jobs.values() if job.task and not job.task.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


# Service instances
_benchmark_service: Optional[BenchmarkService] = None
_trace_poller: Optional[TracePollingService] = None


def get_trace_polling_service(db_service: SQLiteService) -> TracePollingService:
    """Get or create the trace polling service instance."""
    global _trace_poller
    if _trace_poller is None:
        from .report_service import ReportService
        from .traces_client import TracesClient
        stats = StatsService(db_service)
        _trace_poller = TracePollingService(
            db_service,
            ReportService(db_service, stats),
            TracesClient(),
            get_judge_service(),
        )
    return _trace_poller


def get_benchmark_service(db_service: SQLiteService) -> BenchmarkService:
    """Get or create the benchmark service instance."""
    global _benchmark_service
    if _benchmark_service is None:
        stats = StatsService(db_service)
        runner = BenchmarkRunner(
            db_service,
            stats,
            AgentClient(),
            get_judge_service(),
            trace_poller=get_trace_polling_service(db_service),
        )
        _benchmark_service = BenchmarkService(db_service, stats, runner)
    return _benchmark_service
