from typing import List, Optional
from fastapi import APIRouter, HTTPException
from fastapi.responses import StreamingResponse
import json
import logging
import asyncio

logger = logging.getLogger(__name__)

from .models import (
    Agent,
    Benchmark,
    BenchmarkCreate,
    BenchmarkRun,
    BenchmarkUpdate,
    BenchmarkVersion,
    CancelRunRequest,
    EvaluationReport,
    ReportUpdate,
    RunConfigInput,
    RunStatus,
    Span,
    TestCase,
    TestCaseCreate,
    TestCaseUpdate,
)
from .benchmark_runner import RunConfigError
from .benchmark_service import get_benchmark_service, get_trace_polling_service
from .report_service import ReportService
from .sqlite_service import get_db_service
from .stats_service import StatsService
from .traces_client import TracesClient

router = APIRouter(prefix="/api")
db = get_db_service()
benchmarks = get_benchmark_service(db)
poller = get_trace_polling_service(db)
stats = StatsService(db)
reports = ReportService(db, stats)
traces = TracesClient()

SSE_KEEPALIVE_SECONDS = 30


# Benchmarks
@router.post("/benchmarks", response_model=Benchmark, status_code=201)
async def create_benchmark(request: BenchmarkCreate):
    try:
        return await benchmarks.create_benchmark(request)
    except ValueError as e:
        raise HTTPException(400, str(e))
    except Exception as e:
        raise HTTPException(500, f"Failed to create benchmark: {str(e)}")


@router.get("/benchmarks", response_model=List[Benchmark])
async def list_benchmarks(skip: int = 0, limit: int = 100):
    return await benchmarks.list_benchmarks(skip=skip, limit=limit)


@router.get("/benchmarks/{benchmark_id}", response_model=Benchmark)
async def get_benchmark(benchmark_id: str):
    benchmark = await benchmarks.get_benchmark(benchmark_id)
    if not benchmark:
        raise HTTPException(404, f"Benchmark '{benchmark_id}' not found")
    return benchmark


@router.put("/benchmarks/{benchmark_id}", response_model=Benchmark)
async def update_benchmark(benchmark_id: str, request: BenchmarkUpdate):
    try:
        benchmark = await benchmarks.update_benchmark(benchmark_id, request)
        if not benchmark:
            raise HTTPException(404, f"Benchmark '{benchmark_id}' not found")
        return benchmark
    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(500, f"Failed to update benchmark: {str(e)}")


@router.delete("/benchmarks/{benchmark_id}", status_code=204)
async def delete_benchmark(benchmark_id: str):
    if not await db.delete_benchmark(benchmark_id):
        raise HTTPException(404, f"Benchmark '{benchmark_id}' not found")


@router.get("/benchmarks/{benchmark_id}/versions", response_model=List[BenchmarkVersion])
async def list_benchmark_versions(benchmark_id: str):
    benchmark = await db.get_benchmark(benchmark_id)
    if not benchmark:
        raise HTTPException(404, f"Benchmark '{benchmark_id}' not found")
    return benchmark.versions


# ==============================================================================
# RUN EXECUTION (Feature: live-progress)
# ==============================================================================
# The run executes as a background asyncio.Task owned by the benchmark service.
# This SSE stream is only a consumer of the job's queue: closing the browser
# tab does not stop the run, and its results keep landing in storage.
# ==============================================================================
@router.post("/benchmarks/{benchmark_id}/execute")
async def execute_benchmark(benchmark_id: str, run_config: RunConfigInput):
    """Start a benchmark run and stream its progress via SSE.

    Events (one JSON object per `data:` line):
        started   - run id and the test cases about to execute
        progress  - after each test case: index, total, test case id, status
        completed / cancelled - the final run, stats included
        error     - orchestrator-level failure message
        keepalive - sent when nothing happened for 30 seconds
    """
    try:
        created = await benchmarks.create_run(benchmark_id, run_config)
        if created is None:
            raise HTTPException(404, f"Benchmark '{benchmark_id}' not found")
    except HTTPException:
        raise
    except RunConfigError as e:
        raise HTTPException(400, str(e))
    except Exception as e:
        raise HTTPException(500, f"Failed to start run: {str(e)}")

    benchmark, run = created
    job = benchmarks.start_run(benchmark, run, run_config.headers)

    async def event_generator():
        try:
            while True:
                try:
                    event = await asyncio.wait_for(job.queue.get(), timeout=SSE_KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    # Send keepalive so the connection doesn't drop
                    yield f"data: {json.dumps({'type': 'keepalive', 'run_id': run.id})}\n\n"
                    continue

                if event is None:
                    return
                yield f"data: {json.dumps(event, default=str)}\n\n"
        except asyncio.CancelledError:
            logger.info(f"SSE consumer disconnected for run {run.id}, background run continues")
        except Exception as e:
            logger.error(f"SSE event_generator error for run {run.id}: {e}", exc_info=True)
            yield f"data: {json.dumps({'type': 'error', 'error': str(e), 'run_id': run.id})}\n\n"

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        }
    )


@router.get("/benchmarks/{benchmark_id}/runs/{run_id}/status")
async def get_run_execution_status(benchmark_id: str, run_id: str):
    """Check whether a run is executing in this process.

    Lets the frontend show progress after a page refresh and offer the
    cancel button.
    """
    job = benchmarks.get_job(run_id)
    if job and job.benchmark_id == benchmark_id:
        return {"active": True, "run_id": run_id, "started_at": job.started_at}
    return {"active": False, "run_id": run_id}


# ==============================================================================
# RUN CANCELLATION (Feature: cancel-run)
# ==============================================================================
@router.post("/benchmarks/{benchmark_id}/cancel")
async def cancel_run(benchmark_id: str, request: CancelRunRequest):
    """Cancel an executing run.

    The test case in flight finishes; nothing after it starts. The stored
    run shows status 'cancelled' as soon as this returns.

    Raises:
        400: run_id missing
        404: no executing run with this id
        500: internal error during cancellation
    """
    if not request.run_id:
        raise HTTPException(400, "run_id is required")
    try:
        if not await benchmarks.cancel_run(benchmark_id, request.run_id):
            raise HTTPException(404, "Run not found or already completed")
        return {"cancelled": True, "run_id": request.run_id}
    except HTTPException:
        raise  # Re-raise HTTP exceptions as-is
    except Exception as e:
        raise HTTPException(500, f"Failed to cancel run: {str(e)}")


# Runs
@router.get("/benchmarks/{benchmark_id}/runs/{run_id}", response_model=BenchmarkRun)
async def get_run(benchmark_id: str, run_id: str):
    benchmark = await benchmarks.get_benchmark(benchmark_id)
    if not benchmark:
        raise HTTPException(404, f"Benchmark '{benchmark_id}' not found")
    run = benchmark.get_run(run_id)
    if not run:
        raise HTTPException(404, f"Run '{run_id}' not found")
    return run


@router.get("/benchmarks/{benchmark_id}/runs/{run_id}/reports", response_model=List[EvaluationReport])
async def list_run_reports(benchmark_id: str, run_id: str):
    benchmark = await db.get_benchmark(benchmark_id)
    if not benchmark or not benchmark.get_run(run_id):
        raise HTTPException(404, f"Run '{run_id}' not found")
    return await db.list_reports_by_run(run_id)


@router.delete("/benchmarks/{benchmark_id}/runs/{run_id}", status_code=204)
async def delete_run(benchmark_id: str, run_id: str):
    if benchmarks.get_job(run_id):
        raise HTTPException(400, "Run is still executing; cancel it first")
    try:
        if not await db.delete_run(benchmark_id, run_id):
            raise HTTPException(404, f"Run '{run_id}' not found")
    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(500, f"Failed to delete run: {str(e)}")


# ==============================================================================
# STATS REFRESH (Feature: run-stats)
# ==============================================================================
@router.post("/benchmarks/{benchmark_id}/refresh-all-stats")
async def refresh_all_stats(benchmark_id: str):
    """Recompute stats of every finished run of the benchmark."""
    try:
        refreshed = await stats.refresh_all_run_stats(benchmark_id)
        if refreshed is None:
            raise HTTPException(404, f"Benchmark '{benchmark_id}' not found")
        return {"refreshed": refreshed}
    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(500, f"Failed to refresh stats: {str(e)}")


@router.post("/benchmarks/{benchmark_id}/runs/{run_id}/refresh-stats")
async def refresh_run_stats(benchmark_id: str, run_id: str):
    try:
        benchmark = await db.get_benchmark(benchmark_id)
        run = benchmark.get_run(run_id) if benchmark else None
        if not run:
            raise HTTPException(404, f"Run '{run_id}' not found")
        if run.status == RunStatus.running:
            raise HTTPException(409, f"Run '{run_id}' is still executing")
        run_stats = await stats.refresh_run_stats(benchmark_id, run_id)
        return {"refreshed": run_stats is not None, "run_id": run_id, "stats": run_stats}
    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(500, f"Failed to refresh stats: {str(e)}")


# Reports
@router.get("/reports/{report_id}", response_model=EvaluationReport)
async def get_report(report_id: str):
    """Fetch a report; viewing a pending trace-mode report resumes its poller."""
    report = await reports.get_report(report_id)
    if not report:
        raise HTTPException(404, f"Report '{report_id}' not found")
    poller.start_polling(report)
    return report


@router.patch("/reports/{report_id}", response_model=EvaluationReport)
async def update_report(report_id: str, request: ReportUpdate):
    updates = request.model_dump(mode="json", exclude_unset=True)
    if not updates:
        raise HTTPException(400, "No fields to update")
    try:
        report = await reports.update_report(report_id, updates)
        if not report:
            raise HTTPException(404, f"Report '{report_id}' not found")
        return report
    except HTTPException:
        raise
    except ValueError as e:
        raise HTTPException(400, str(e))
    except Exception as e:
        raise HTTPException(500, f"Failed to update report: {str(e)}")


@router.get("/reports/{report_id}/polling")
async def get_report_polling_state(report_id: str):
    state = poller.get_state(report_id)
    if state is None:
        return {"active": False, "report_id": report_id}
    return {
        "active": True,
        "report_id": report_id,
        "phase": state.phase,
        "attempts": state.attempts,
        "judge_retries": state.judge_retries,
    }


@router.get("/traces/{run_id}", response_model=List[Span])
async def get_traces(run_id: str):
    """Spans recorded for an agent run id."""
    try:
        return await traces.fetch_spans(run_id)
    except Exception as e:
        raise HTTPException(502, f"Failed to query traces: {str(e)}")


# Test Cases
@router.post("/test-cases", response_model=TestCase, status_code=201)
async def create_test_case(request: TestCaseCreate):
    return await db.create_test_case(TestCase(**request.model_dump()))


@router.get("/test-cases", response_model=List[TestCase])
async def list_test_cases():
    return await db.list_test_cases()


@router.get("/test-cases/{test_case_id}", response_model=TestCase)
async def get_test_case(test_case_id: str, version: Optional[int] = None):
    test_case = await db.get_test_case(test_case_id, version)
    if not test_case:
        raise HTTPException(404, f"Test case '{test_case_id}' not found")
    return test_case


@router.put("/test-cases/{test_case_id}", response_model=TestCase)
async def update_test_case(test_case_id: str, request: TestCaseUpdate):
    """Store the update as a new version; runs keep the version they executed."""
    updates = request.model_dump(mode="json", exclude_none=True)
    test_case = await db.update_test_case(test_case_id, updates)
    if not test_case:
        raise HTTPException(404, f"Test case '{test_case_id}' not found")
    return test_case


@router.get("/test-cases/{test_case_id}/versions", response_model=List[TestCase])
async def list_test_case_versions(test_case_id: str):
    versions = await db.list_test_case_versions(test_case_id)
    if not versions:
        raise HTTPException(404, f"Test case '{test_case_id}' not found")
    return versions


# Agents
@router.post("/agents", response_model=Agent, status_code=201)
async def create_agent(agent: Agent):
    return await db.create_agent(agent)


@router.get("/agents", response_model=List[Agent])
async def list_agents():
    return await db.list_agents()


@router.get("/agents/{agent_key}", response_model=Agent)
async def get_agent(agent_key: str):
    agent = await db.get_agent(agent_key)
    if not agent:
        raise HTTPException(404, f"Agent '{agent_key}' not found")
    return agent


@router.delete("/agents/{agent_key}", status_code=204)
async def delete_agent(agent_key: str):
    if not await db.delete_agent(agent_key):
        raise HTTPException(404, f"Agent '{agent_key}' not found")
