"""
Unit Tests for the Trace-Polling Judge Pipeline

Pollers run against a real SQLite store with fake traces and judge
collaborators and no delay between attempts.
"""

import pytest

from tests.mocks.fake_services import FakeJudge, FakeTracesClient


async def _pending_report(db, attempts=0, outcome="pass", with_run=False):
    """Store a test case and a pending trace-mode report for it.

    With ``with_run`` the report also belongs to a completed run whose stats
    still count it as pending.
    """
    from src.agent_health.models import (
        BenchmarkRun, EvaluationReport, RunStats, TestCase, TestCaseResult,
    )
    from src.agent_health.versioning import new_benchmark

    tc = await db.create_test_case(TestCase(initial_prompt="Check status", expected_outcomes=[outcome]))
    benchmark_id, run_id = "bench_x", "run_x"
    report = EvaluationReport(
        benchmark_id=benchmark_id,
        benchmark_run_id=run_id,
        test_case_id=tc.id,
        agent_key="agent-1",
        model_id="m",
        run_id="agent-run-1",
        trace_fetch_attempts=attempts,
    )
    if with_run:
        benchmark = await db.create_benchmark(new_benchmark("B", "", [tc.id]))
        run = BenchmarkRun(
            name="Run", agent_key="agent-1", model_id="m", status="completed",
            results={tc.id: TestCaseResult(report_id=report.id, status="completed")},
            stats=RunStats(pending=1, total=1),
        )
        await db.add_run(benchmark.id, run)
        report.benchmark_id, report.benchmark_run_id = benchmark.id, run.id
    return await db.create_report(report)


def _poller(db, traces, judge, max_attempts=5):
    from src.agent_health.report_service import ReportService
    from src.agent_health.stats_service import StatsService
    from src.agent_health.trace_polling_service import TracePollingService

    return TracePollingService(
        db, ReportService(db, StatsService(db)), traces, judge,
        poll_interval=0, max_attempts=max_attempts, max_concurrent=2,
    )


class TestPollingOutcomes:
    """Tests for the terminal transitions of a poller."""

    @pytest.mark.asyncio
    async def test_spans_found_then_judged(self, db_service):
        """Spans on the second lookup should end in a ready report with the verdict."""
        from src.agent_health.models import MetricsStatus, PassFailStatus

        report = await _pending_report(db_service)
        poller = _poller(db_service, FakeTracesClient(spans_after=2), FakeJudge())

        assert poller.start_polling(report) is True
        await poller.wait_idle()

        stored = await db_service.get_report(report.id)
        assert stored.metrics_status == MetricsStatus.ready
        assert stored.pass_fail_status == PassFailStatus.passed
        assert stored.trace_fetch_attempts == 2
        assert stored.span_count == 1
        assert stored.last_trace_fetch_at is not None

    @pytest.mark.asyncio
    async def test_attempts_exhausted(self, db_service):
        from src.agent_health.models import MetricsStatus

        report = await _pending_report(db_service)
        judge = FakeJudge()
        poller = _poller(db_service, FakeTracesClient(spans_after=100), judge, max_attempts=3)

        poller.start_polling(report)
        await poller.wait_idle()

        stored = await db_service.get_report(report.id)
        assert stored.metrics_status == MetricsStatus.error
        assert stored.trace_error == "Traces not found after 3 attempts"
        assert stored.trace_fetch_attempts == 3
        assert judge.calls == 0

    @pytest.mark.asyncio
    async def test_judge_failure_marks_error(self, db_service):
        from src.agent_health.models import MetricsStatus

        report = await _pending_report(db_service)
        poller = _poller(db_service, FakeTracesClient(), FakeJudge(error=RuntimeError("llm down")))

        poller.start_polling(report)
        await poller.wait_idle()

        stored = await db_service.get_report(report.id)
        assert stored.metrics_status == MetricsStatus.error
        assert stored.trace_error == "Judge evaluation failed: llm down"

    @pytest.mark.asyncio
    async def test_failed_lookup_counts_as_attempt(self, db_service):
        """A backend error is logged and the next attempt follows."""
        from src.agent_health.models import MetricsStatus

        report = await _pending_report(db_service)
        poller = _poller(db_service, FakeTracesClient(spans_after=2, fail_first=1), FakeJudge())

        poller.start_polling(report)
        await poller.wait_idle()

        stored = await db_service.get_report(report.id)
        assert stored.metrics_status == MetricsStatus.ready
        assert stored.trace_fetch_attempts == 2

    @pytest.mark.asyncio
    async def test_settled_verdict_refreshes_run_stats(self, db_service):
        """The owning run's stats follow the report out of pending."""
        report = await _pending_report(db_service, outcome="fail", with_run=True)
        poller = _poller(db_service, FakeTracesClient(), FakeJudge())

        poller.start_polling(report)
        await poller.wait_idle()

        run = (await db_service.get_benchmark(report.benchmark_id)).get_run(report.benchmark_run_id)
        assert (run.stats.passed, run.stats.failed, run.stats.pending, run.stats.total) == (0, 1, 0, 1)


class TestPollingRegistry:
    """Tests for resumability and duplicate suppression."""

    @pytest.mark.asyncio
    async def test_resume_continues_at_next_attempt(self, db_service):
        """A report with k persisted attempts resumes at attempt k + 1."""
        from src.agent_health.models import MetricsStatus

        report = await _pending_report(db_service, attempts=3)
        traces = FakeTracesClient(spans_after=100)
        poller = _poller(db_service, traces, FakeJudge(), max_attempts=5)

        assert await poller.resume_pending() == 1
        await poller.wait_idle()

        stored = await db_service.get_report(report.id)
        assert traces.calls["agent-run-1"] == 2
        assert stored.trace_fetch_attempts == 5
        assert stored.metrics_status == MetricsStatus.error

    @pytest.mark.asyncio
    async def test_no_second_poller_for_same_report(self, db_service):
        report = await _pending_report(db_service)
        poller = _poller(db_service, FakeTracesClient(), FakeJudge())

        assert poller.start_polling(report) is True
        assert poller.start_polling(report) is False
        assert poller.is_polling(report.id) is True

        await poller.wait_idle()
        assert poller.is_polling(report.id) is False

    @pytest.mark.asyncio
    async def test_settled_or_untraced_reports_are_skipped(self, db_service):
        report = await _pending_report(db_service)
        poller = _poller(db_service, FakeTracesClient(), FakeJudge())

        assert poller.start_polling(report.model_copy(update={"metrics_status": "ready"})) is False
        assert poller.start_polling(report.model_copy(update={"run_id": None})) is False

    @pytest.mark.asyncio
    async def test_shutdown_leaves_report_pending(self, db_service):
        """Stopping a poller keeps its persisted progress for the next start."""
        from src.agent_health.models import MetricsStatus

        report = await _pending_report(db_service)
        poller = _poller(db_service, FakeTracesClient(spans_after=100), FakeJudge(), max_attempts=1000)
        poller.poll_interval = 60

        poller.start_polling(report)
        await poller.shutdown()

        stored = await db_service.get_report(report.id)
        assert stored.metrics_status == MetricsStatus.pending
        assert poller.is_polling(report.id) is False


class _SpansWithoutSteps:
    """Traces backend whose spans carry no GenAI attributes."""

    async def fetch_spans(self, run_id):
        from src.agent_health.models import Span

        return [Span(trace_id="t1", span_id="s1", name="http.request", attributes={"run.id": run_id})]


async def _with_streamed_trajectory(db, report):
    await db.update_report_fields(report.id, {
        "trajectory": [{"type": "response", "content": "streamed answer"}],
    })
    return await db.get_report(report.id)


class TestJudgedTrajectory:
    """Tests for what the judge is shown once spans arrive."""

    @pytest.mark.asyncio
    async def test_judge_sees_span_trajectory(self, db_service):
        """Span content replaces the streamed trajectory and is stored on the report."""
        report = await _with_streamed_trajectory(db_service, await _pending_report(db_service))
        judge = FakeJudge()
        poller = _poller(db_service, FakeTracesClient(), judge)

        poller.start_polling(report)
        await poller.wait_idle()

        assert [step.content for step in judge.trajectories[0]] == ["done"]
        stored = await db_service.get_report(report.id)
        assert [step.content for step in stored.trajectory] == ["done"]

    @pytest.mark.asyncio
    async def test_streamed_trajectory_when_spans_have_no_steps(self, db_service):
        report = await _with_streamed_trajectory(db_service, await _pending_report(db_service))
        judge = FakeJudge()
        poller = _poller(db_service, _SpansWithoutSteps(), judge)

        poller.start_polling(report)
        await poller.wait_idle()

        assert [step.content for step in judge.trajectories[0]] == ["streamed answer"]
        stored = await db_service.get_report(report.id)
        assert stored.span_count == 1
        assert [step.content for step in stored.trajectory] == ["streamed answer"]

    @pytest.mark.asyncio
    async def test_rate_limit_retries_show_in_polling_state(self, db_service):
        report = await _pending_report(db_service)
        seen = {}

        class RateLimitedJudge(FakeJudge):
            async def evaluate(self, trajectory, expected_outcomes, expected_trajectory=None, on_retry=None):
                await on_retry(1, 5, 0.0, "429 Too Many Requests")
                state = poller.get_state(report.id)
                seen["phase"], seen["judge_retries"] = state.phase, state.judge_retries
                return await super().evaluate(trajectory, expected_outcomes, expected_trajectory)

        poller = _poller(db_service, FakeTracesClient(), RateLimitedJudge())

        poller.start_polling(report)
        await poller.wait_idle()

        assert seen == {"phase": "rate-limited", "judge_retries": 1}
