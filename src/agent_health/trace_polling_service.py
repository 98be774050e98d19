"""
Trace-polling judge pipeline.

Trace-mode agents are judged only once their spans have reached the
observability backend, which can take minutes after the agent answered. A
poller per pending report looks the spans up on a fixed interval, judges the
report once they appear and writes a terminal metrics status.

==============================================================================
FEATURES IMPLEMENTED IN THIS MODULE:
==============================================================================

1. PER-REPORT POLLERS (Feature: trace-polling)
   - One asyncio task per report id; a second start for the same id is refused
   - A semaphore bounds how many pollers query the backend at once
   - Failures stay inside the poller: other reports and runs are unaffected

2. RESUMABLE STATE (Feature: trace-polling)
   - The only persisted polling state is metrics_status + trace_fetch_attempts
   - Every lookup persists the incremented attempt count before anything else,
     so a restarted process continues at the next attempt
   - resume_pending() on startup and start_polling() on report views restart
     pollers for pending reports that have none

3. TERMINAL TRANSITIONS (Feature: trace-polling)
   - spans found + judge ok    -> ready with verdict, metrics, strategies and
                                  the span-derived trajectory that was judged
   - spans found + judge error -> error, "Judge evaluation failed: ..."
   - attempts exhausted        -> error, "Traces not found after N attempts"
   - Every transition goes through ReportService, which refreshes run stats

==============================================================================
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional

from .models import EvaluationReport, MetricsStatus, Span
from .report_service import ReportService
from .sqlite_service import SQLiteService
from .traces_client import spans_to_trajectory
from . import config

logger = logging.getLogger(__name__)


@dataclass
class PollingState:
    """In-memory view of a live poller; never persisted."""
    report_id: str
    phase: str = "waiting"  # waiting, polling, judging, rate-limited
    attempts: int = 0
    judge_retries: int = 0


class TracePollingService:
    def __init__(
        self,
        db_service: SQLiteService,
        report_service: ReportService,
        traces_client,
        judge,
        poll_interval: Optional[float] = None,
        max_attempts: Optional[int] = None,
        max_concurrent: Optional[int] = None,
    ):
        self.db = db_service
        self.reports = report_service
        self.traces = traces_client
        self.judge = judge
        self.poll_interval = config.TRACE_POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
        self.max_attempts = max_attempts or config.TRACE_POLL_MAX_ATTEMPTS
        self._semaphore = asyncio.Semaphore(max_concurrent or config.MAX_CONCURRENT_TRACE_POLLERS)
        self._tasks: Dict[str, asyncio.Task] = {}
        self._states: Dict[str, PollingState] = {}

    # ==========================================================================
    # REGISTRY
    # ==========================================================================

    def is_polling(self, report_id: str) -> bool:
        task = self._tasks.get(report_id)
        return task is not None and not task.done()

    def get_state(self, report_id: str) -> Optional[PollingState]:
        return self._states.get(report_id) if self.is_polling(report_id) else None

    def start_polling(self, report: EvaluationReport) -> bool:
        """Start a poller for ``report`` if it needs one and has none.

        Returns True when a new poller was started.
        """
        if report.metrics_status != MetricsStatus.pending or not report.run_id:
            return False
        if self.is_polling(report.id):
            logger.debug(f"Poller already running for report {report.id}")
            return False

        self._states[report.id] = PollingState(report_id=report.id, attempts=report.trace_fetch_attempts)
        task = asyncio.create_task(self._run(report.id), name=f"trace-poll-{report.id}")
        self._tasks[report.id] = task
        task.add_done_callback(lambda t, rid=report.id: self._forget(rid, t))
        logger.info(f"Started trace polling for report {report.id} (run_id={report.run_id}, attempts so far={report.trace_fetch_attempts})")
        return True

    def _forget(self, report_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(report_id) is task:
            self._tasks.pop(report_id, None)
            self._states.pop(report_id, None)

    async def resume_pending(self) -> int:
        """Start pollers for every pending trace-mode report in storage."""
        reports = await self.db.list_pending_trace_reports()
        started = sum(1 for report in reports if self.start_polling(report))
        logger.info(f"Resumed trace polling for {started} pending report(s)")
        return started

    async def stop_polling(self, report_id: str) -> bool:
        task = self._tasks.get(report_id)
        if task is None or task.done():
            return False
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        return True

    async def wait_idle(self) -> None:
        """Wait until no poller is running, including ones started meanwhile."""
        while True:
            tasks: List[asyncio.Task] = [t for t in self._tasks.values() if not t.done()]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if tasks:
            logger.info(f"Stopped {len(tasks)} trace poller(s); they resume from storage on next start")

    # ==========================================================================
    # POLLER
    # ==========================================================================

    async def _run(self, report_id: str) -> None:
        async with self._semaphore:
            try:
                await self._poll_until_settled(report_id)
            except asyncio.CancelledError:
                logger.info(f"Trace polling for report {report_id} cancelled")
                raise
            except Exception as e:
                # Report stays pending; the next resume picks it up again
                logger.error(f"Trace polling for report {report_id} crashed: {e}", exc_info=True)

    async def _poll_until_settled(self, report_id: str) -> None:
        state = self._states.get(report_id) or PollingState(report_id=report_id)

        while True:
            report = await self.db.get_report(report_id)
            if report is None or report.metrics_status != MetricsStatus.pending:
                return

            attempt = report.trace_fetch_attempts + 1
            if attempt > self.max_attempts:
                await self._mark_traces_not_found(report)
                return

            state.phase = "waiting"
            if self.poll_interval > 0:
                await asyncio.sleep(self.poll_interval)

            state.phase = "polling"
            try:
                spans = await self.traces.fetch_spans(report.run_id)
            except Exception as e:
                logger.warning(f"Trace lookup {attempt}/{self.max_attempts} for report {report_id} failed: {e}")
                spans = []

            state.attempts = attempt
            await self.reports.update_report(report_id, {
                "trace_fetch_attempts": attempt,
                "last_trace_fetch_at": datetime.now(timezone.utc).isoformat(),
            })

            if spans:
                logger.info(f"Found {len(spans)} span(s) for report {report_id} on attempt {attempt}")
                state.phase = "judging"
                await self._judge(report, spans)
                return

            logger.debug(f"No spans yet for report {report_id} (attempt {attempt}/{self.max_attempts})")

    async def _mark_traces_not_found(self, report: EvaluationReport) -> None:
        message = f"Traces not found after {self.max_attempts} attempts"
        logger.warning(f"Report {report.id}: {message}")
        await self.reports.update_report(report.id, {
            "metrics_status": MetricsStatus.error.value,
            "trace_error": message,
        })

    async def _judge(self, report: EvaluationReport, spans: List[Span]) -> None:
        """Judge the trajectory the spans describe.

        The agent's streamed trajectory is only used when the spans carry no
        GenAI steps.
        """
        state = self._states.get(report.id)

        async def _on_retry(attempt: int, max_attempts: int, wait_time: float, error: str):
            if state is not None:
                state.phase = "rate-limited"
                state.judge_retries = attempt
            logger.info(f"Judge for report {report.id} rate limited, retry {attempt}/{max_attempts - 1} in {wait_time:.1f}s")

        trajectory = spans_to_trajectory(spans) or report.trajectory
        try:
            test_case = await self.db.get_test_case(report.test_case_id, report.test_case_version)
            if test_case is None:
                raise ValueError(f"test case {report.test_case_id} v{report.test_case_version} not found")
            verdict = await self.judge.evaluate(
                trajectory,
                test_case.expected_outcomes,
                test_case.expected_trajectory,
                on_retry=_on_retry,
            )
        except Exception as e:
            logger.warning(f"Judge failed for report {report.id}: {e}")
            await self.reports.update_report(report.id, {
                "metrics_status": MetricsStatus.error.value,
                "trace_error": f"Judge evaluation failed: {e}",
                "span_count": len(spans),
            })
            return

        await self.reports.update_report(report.id, {
            "metrics_status": MetricsStatus.ready.value,
            "pass_fail_status": verdict.pass_fail_status.value,
            "trajectory": [step.model_dump(mode="json") for step in trajectory],
            "metrics": verdict.metrics.model_dump(mode="json"),
            "llm_judge_reasoning": verdict.llm_judge_reasoning,
            "improvement_strategies": [s.model_dump(mode="json") for s in verdict.improvement_strategies],
            "trace_error": None,
            "span_count": len(spans),
        })
        logger.info(f"Report {report.id} judged {verdict.pass_fail_status.value}")
