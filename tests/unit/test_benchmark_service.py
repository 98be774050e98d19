"""
Unit Tests for the Benchmark Service

Covers run creation, version pinning, cancellation writes and orphan cleanup
against a real SQLite store with fake agent and judge collaborators.
"""

import pytest
from unittest.mock import AsyncMock, patch


def _config(**overrides):
    from src.agent_health.models import RunConfigInput

    data = {"name": "Run 1", "agent_key": "agent-1", "model_id": "model-a"}
    data.update(overrides)
    return RunConfigInput(**data)


class TestValidateRunConfig:
    """Tests for run config validation."""

    @pytest.mark.parametrize("field, message", [
        ("name", "Run name is required"),
        ("agent_key", "Agent key is required"),
        ("model_id", "Model id is required"),
    ])
    def test_missing_field(self, field, message):
        from src.agent_health.benchmark_runner import RunConfigError
        from src.agent_health.benchmark_service import validate_run_config

        with pytest.raises(RunConfigError, match=message):
            validate_run_config(_config(**{field: "  "}))

    def test_run_config_error_is_value_error(self):
        from src.agent_health.benchmark_runner import RunConfigError

        assert issubclass(RunConfigError, ValueError)


class TestCreateRun:
    """Tests for run creation before execution."""

    @pytest.mark.asyncio
    async def test_unknown_benchmark_returns_none(self, services):
        assert await services["benchmarks"].create_run("bench_missing", _config()) is None

    @pytest.mark.asyncio
    async def test_unknown_agent_raises(self, services, seed):
        from src.agent_health.benchmark_runner import RunConfigError

        bench = await seed(services["db"], [("p1", "pass")])

        with pytest.raises(RunConfigError, match="Agent 'nobody' not found"):
            await services["benchmarks"].create_run(bench.id, _config(agent_key="nobody"))

    @pytest.mark.asyncio
    async def test_run_is_stored_with_snapshots_and_pending_results(self, services, seed):
        """The stored run pins the benchmark version and every test case version."""
        from src.agent_health.models import ResultStatus, RunStatus

        db = services["db"]
        bench = await seed(db, [("p1", "pass"), ("p2", "pass")])

        _, run = await services["benchmarks"].create_run(bench.id, _config())

        stored = (await db.get_benchmark(bench.id)).get_run(run.id)
        assert stored.status == RunStatus.running
        assert stored.benchmark_version == 1
        assert [(s.id, s.version, s.name) for s in stored.test_case_snapshots] == [
            (bench.test_case_ids[0], 1, "Case 1"),
            (bench.test_case_ids[1], 1, "Case 2"),
        ]
        assert list(stored.results) == bench.test_case_ids
        assert all(r.status == ResultStatus.pending for r in stored.results.values())
        assert stored.stats is None

    @pytest.mark.asyncio
    async def test_execution_uses_pinned_test_case_version(self, services, seed, fake_agent):
        """Editing a test case after the run was created does not change what the run executes."""
        db = services["db"]
        bench = await seed(db, [("original prompt", "pass")])
        benchmark, run = await services["benchmarks"].create_run(bench.id, _config())
        await db.update_test_case(bench.test_case_ids[0], {"initial_prompt": "edited prompt"})

        job = services["benchmarks"].start_run(benchmark, run)
        await job.task

        assert fake_agent.calls[0]["test_case_version"] == 1


class TestRunJobs:
    """Tests for background execution bookkeeping."""

    @pytest.mark.asyncio
    async def test_job_is_active_until_run_finishes(self, services, seed):
        bench = await seed(services["db"], [("p1", "pass")])
        benchmark, run = await services["benchmarks"].create_run(bench.id, _config())

        job = services["benchmarks"].start_run(benchmark, run)
        assert services["benchmarks"].get_job(run.id) is job
        assert services["benchmarks"].registry.get(run.id) is not None

        final = await job.task

        assert final.status.value == "completed"
        assert services["benchmarks"].get_job(run.id) is None
        assert services["benchmarks"].registry.get(run.id) is None

    @pytest.mark.asyncio
    async def test_event_stream_ends_with_sentinel(self, services, seed):
        bench = await seed(services["db"], [("p1", "pass")])
        benchmark, run = await services["benchmarks"].create_run(bench.id, _config())

        job = services["benchmarks"].start_run(benchmark, run)
        await job.task

        events = []
        while not job.queue.empty():
            events.append(job.queue.get_nowait())
        assert [e["type"] for e in events[:-1]] == ["started", "progress", "completed"]
        assert events[-1] is None


class TestCancelRun:
    """Tests for the storage side of cancellation."""

    @pytest.mark.asyncio
    async def test_unknown_run_is_not_found(self, services):
        assert await services["benchmarks"].cancel_run("bench_1", "run_missing") is False

    @pytest.mark.asyncio
    async def test_cancel_writes_status_once(self, services, seed):
        """The first cancel writes status=cancelled; a repeat succeeds without writing."""
        from src.agent_health.models import RunStatus

        db = services["db"]
        bench = await seed(db, [("p1", "pass")])
        _, run = await services["benchmarks"].create_run(bench.id, _config())
        services["benchmarks"].registry.register(run.id)

        assert await services["benchmarks"].cancel_run(bench.id, run.id) is True
        stored = (await db.get_benchmark(bench.id)).get_run(run.id)
        assert stored.status == RunStatus.cancelled

        with patch.object(db, "update_run_fields", new=AsyncMock(return_value=True)) as update:
            assert await services["benchmarks"].cancel_run(bench.id, run.id) is True
        update.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancel_does_not_overwrite_finished_run(self, services, seed):
        """A run that already finalized keeps its terminal status."""
        from src.agent_health.models import RunStatus

        db = services["db"]
        bench = await seed(db, [("p1", "pass")])
        _, run = await services["benchmarks"].create_run(bench.id, _config())
        await db.update_run_fields(bench.id, run.id, {"status": RunStatus.completed.value})
        services["benchmarks"].registry.register(run.id)

        assert await services["benchmarks"].cancel_run(bench.id, run.id) is True

        stored = (await db.get_benchmark(bench.id)).get_run(run.id)
        assert stored.status == RunStatus.completed


class TestOrphanCleanup:
    """Tests for startup cleanup of runs left running by a previous process."""

    @pytest.mark.asyncio
    async def test_orphaned_run_is_cancelled(self, services, seed):
        from src.agent_health.benchmark_runner import CANCELLED_BEFORE_START
        from src.agent_health.benchmark_service import ORPHANED_RUN_ERROR
        from src.agent_health.models import ResultStatus, RunStatus

        db = services["db"]
        bench = await seed(db, [("p1", "pass"), ("p2", "pass")])
        _, run = await services["benchmarks"].create_run(bench.id, _config())

        assert await services["benchmarks"].cleanup_orphaned_runs() == 1

        stored = (await db.get_benchmark(bench.id)).get_run(run.id)
        assert stored.status == RunStatus.cancelled
        assert stored.error == ORPHANED_RUN_ERROR
        assert stored.completed_at is not None
        assert all(r.status == ResultStatus.failed for r in stored.results.values())
        assert all(r.error == CANCELLED_BEFORE_START for r in stored.results.values())
        assert (stored.stats.passed, stored.stats.failed, stored.stats.pending) == (0, 2, 0)

    @pytest.mark.asyncio
    async def test_cancelled_run_that_was_never_finalized(self, services, seed):
        """A cancel written to storage whose run task died is still finalized."""
        from src.agent_health.benchmark_runner import CANCELLED_BEFORE_START
        from src.agent_health.models import ResultStatus, RunStatus

        db = services["db"]
        bench = await seed(db, [("p1", "pass"), ("p2", "pass")])
        _, run = await services["benchmarks"].create_run(bench.id, _config())
        await db.update_run_fields(bench.id, run.id, {"status": RunStatus.cancelled.value})

        assert await services["benchmarks"].cleanup_orphaned_runs() == 1

        stored = (await db.get_benchmark(bench.id)).get_run(run.id)
        assert stored.status == RunStatus.cancelled
        assert stored.completed_at is not None
        assert all(r.status == ResultStatus.failed for r in stored.results.values())
        assert all(r.error == CANCELLED_BEFORE_START for r in stored.results.values())
        assert stored.stats.pending == 0

        assert await services["benchmarks"].cleanup_orphaned_runs() == 0

    @pytest.mark.asyncio
    async def test_runs_owned_by_this_process_are_skipped(self, services, seed):
        from src.agent_health.models import RunStatus

        db = services["db"]
        bench = await seed(db, [("p1", "pass")])
        _, run = await services["benchmarks"].create_run(bench.id, _config())
        services["benchmarks"].registry.register(run.id)

        assert await services["benchmarks"].cleanup_orphaned_runs() == 0

        stored = (await db.get_benchmark(bench.id)).get_run(run.id)
        assert stored.status == RunStatus.running

    @pytest.mark.asyncio
    async def test_finished_runs_are_untouched(self, services, seed):
        bench = await seed(services["db"], [("p1", "pass")])
        await services["benchmarks"].execute(bench.id, _config())

        assert await services["benchmarks"].cleanup_orphaned_runs() == 0
