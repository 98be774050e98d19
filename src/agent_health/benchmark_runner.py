"""
Benchmark run orchestrator.

Executes one benchmark run: test cases strictly in benchmark order, one agent
invocation each, every result persisted as soon as it exists, then a single
finalization that computes stats and replaces the run's slot.

==============================================================================
FEATURES IMPLEMENTED IN THIS MODULE:
==============================================================================

1. SEQUENTIAL EXECUTION (Feature: run-orchestration)
   - Test cases run in list order so progress events are deterministic
   - The cancellation token is checked before every test case
   - An agent failure fails that test case only; the run continues
   - A result that cannot be persisted right away is logged and carried to
     finalization instead of aborting the run

2. TRACE-MODE HANDOFF (Feature: trace-polling)
   - Reports of trace-mode agents are created with metrics pending and handed
     to the trace poller; other agents are judged inline

3. FINALIZATION (Feature: run-orchestration)
   - Results that never started become failed when the run was cancelled
   - Stats are computed once, then the run slot is replaced by id
   - An orchestrator-level error still persists a failed run with its message

==============================================================================
"""

import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Optional

from .agent_client import AgentClient
from .cancellation import CancellationToken
from .models import (
    Agent, Benchmark, BenchmarkProgress, BenchmarkRun, EvaluationReport,
    MetricsStatus, ResultStatus, RunStatus, TestCaseResult, TestCaseSnapshot,
)
from .sqlite_service import SQLiteService
from .stats_service import StatsService

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[BenchmarkProgress], Awaitable[None]]
ResultCallback = Callable[[str, TestCaseResult], Awaitable[None]]

CANCELLED_BEFORE_START = "Run cancelled before this test case started"


class RunConfigError(ValueError):
    """The run configuration cannot be executed."""


class BenchmarkRunner:
    def __init__(
        self,
        db_service: SQLiteService,
        stats_service: StatsService,
        agent_client: AgentClient,
        judge,
        trace_poller=None,
    ):
        self.db = db_service
        self.stats = stats_service
        self.agent_client = agent_client
        self.judge = judge
        self.trace_poller = trace_poller

    async def execute_run(
        self,
        benchmark: Benchmark,
        run: BenchmarkRun,
        on_progress: Optional[ProgressCallback] = None,
        cancellation_token: Optional[CancellationToken] = None,
        on_test_case_complete: Optional[ResultCallback] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> BenchmarkRun:
        """Execute every test case of ``run`` and return the finalized run.

        The returned run is always terminal (completed, cancelled or failed)
        and already persisted.
        """
        total = len(benchmark.test_case_ids)
        snapshots = {s.id: s for s in run.test_case_snapshots}
        for tc_id in benchmark.test_case_ids:
            run.results.setdefault(tc_id, TestCaseResult())

        logger.info(f"Executing run {run.id} of benchmark {benchmark.id}: {total} test case(s), agent={run.agent_key}, model={run.model_id}")

        try:
            agent = await self.db.get_agent(run.agent_key)
            if agent is None:
                raise RunConfigError(f"Agent '{run.agent_key}' not found")

            for index, tc_id in enumerate(benchmark.test_case_ids):
                if cancellation_token is not None and cancellation_token.is_cancelled:
                    logger.info(f"Run {run.id} cancelled before test case {index + 1}/{total}")
                    break

                result = await self._run_test_case(benchmark, run, agent, tc_id, snapshots.get(tc_id), headers)
                run.results[tc_id] = result
                if on_test_case_complete is not None:
                    try:
                        await on_test_case_complete(tc_id, result)
                    except Exception as e:
                        # finalize_run writes every result with the run slot
                        logger.warning(f"Run {run.id}: could not persist result of test case {tc_id}: {e}")

                if on_progress is not None:
                    await on_progress(BenchmarkProgress(
                        current_test_case_index=index,
                        total_test_cases=total,
                        current_test_case_id=tc_id,
                        status=result.status,
                    ))

            cancelled = cancellation_token is not None and cancellation_token.is_cancelled
            return await self.finalize_run(benchmark.id, run, cancelled=cancelled)

        except Exception as e:
            error_detail = f"{type(e).__name__}: {str(e)}" if str(e) else type(e).__name__
            logger.error(f"Run {run.id} failed: {error_detail}", exc_info=True)
            run.status = RunStatus.failed
            run.error = error_detail
            run.completed_at = datetime.now(timezone.utc).isoformat()
            try:
                await self.db.replace_run(benchmark.id, run)
            except Exception as persist_err:
                logger.error(f"Could not persist failed state of run {run.id}: {persist_err}")
            return run

    async def _run_test_case(
        self,
        benchmark: Benchmark,
        run: BenchmarkRun,
        agent: Agent,
        tc_id: str,
        snapshot: Optional[TestCaseSnapshot],
        headers: Optional[Dict[str, str]],
    ) -> TestCaseResult:
        test_case = await self.db.get_test_case(tc_id, snapshot.version if snapshot else None)
        if test_case is None:
            logger.warning(f"Run {run.id}: test case {tc_id} not found")
            return TestCaseResult(status=ResultStatus.failed, error=f"Test case '{tc_id}' not found")

        try:
            invocation = await self.agent_client.invoke(agent, test_case, run.model_id, headers)
        except Exception as e:
            error_detail = f"{type(e).__name__}: {str(e)}" if str(e) else type(e).__name__
            logger.warning(f"Run {run.id}: agent failed on test case {tc_id}: {error_detail}")
            return TestCaseResult(status=ResultStatus.failed, error=error_detail)

        report = EvaluationReport(
            benchmark_id=benchmark.id,
            benchmark_run_id=run.id,
            test_case_id=tc_id,
            test_case_version=test_case.version,
            agent_key=agent.key,
            model_id=run.model_id,
            run_id=invocation.run_id,
            trajectory=invocation.trajectory,
        )

        if agent.use_traces:
            await self.db.create_report(report)
            if self.trace_poller is not None:
                self.trace_poller.start_polling(report)
        else:
            await self._judge_inline(report, test_case)
            await self.db.create_report(report)

        return TestCaseResult(report_id=report.id, status=ResultStatus.completed)

    async def _judge_inline(self, report: EvaluationReport, test_case) -> None:
        try:
            verdict = await self.judge.evaluate(
                report.trajectory,
                test_case.expected_outcomes,
                test_case.expected_trajectory,
            )
        except Exception as e:
            logger.warning(f"Judge failed for report {report.id}: {e}")
            report.metrics_status = MetricsStatus.error
            report.trace_error = f"Judge evaluation failed: {e}"
            return
        report.metrics_status = MetricsStatus.ready
        report.pass_fail_status = verdict.pass_fail_status
        report.metrics = verdict.metrics
        report.llm_judge_reasoning = verdict.llm_judge_reasoning
        report.improvement_strategies = verdict.improvement_strategies

    async def finalize_run(
        self,
        benchmark_id: str,
        run: BenchmarkRun,
        cancelled: bool = False,
        error: Optional[str] = None,
    ) -> BenchmarkRun:
        """Resolve leftover results, compute stats and persist the terminal run."""
        if cancelled:
            for tc_id, result in run.results.items():
                if result.status in (ResultStatus.pending, ResultStatus.running):
                    run.results[tc_id] = TestCaseResult(status=ResultStatus.failed, error=CANCELLED_BEFORE_START)

        run.stats = await self.stats.compute_stats_for_run(run)
        run.status = RunStatus.cancelled if cancelled else RunStatus.completed
        run.completed_at = datetime.now(timezone.utc).isoformat()
        if error:
            run.error = error

        await self.db.replace_run(benchmark_id, run)
        logger.info(f"Run {run.id} {run.status.value}: {run.stats.model_dump()}")
        return run
