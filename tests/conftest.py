"""
Pytest Configuration and Fixtures

Provides shared fixtures for both unit and integration tests: a real SQLite
store on a temporary file, fake agent / traces / judge collaborators, and a
FastAPI app whose controller services are wired to them.
"""

import pytest
from unittest.mock import patch
from fastapi.testclient import TestClient

from tests.mocks.fake_services import FakeAgentClient, FakeJudge, FakeTracesClient


# ==============================================================================
# Storage and Services
# ==============================================================================

@pytest.fixture
def db_service(tmp_path):
    """Real SQLite store on a per-test database file."""
    from src.agent_health.sqlite_service import SQLiteService
    return SQLiteService(db_path=str(tmp_path / "agent_health.db"))


@pytest.fixture
def fake_agent():
    return FakeAgentClient()


@pytest.fixture
def fake_traces():
    return FakeTracesClient()


@pytest.fixture
def fake_judge():
    return FakeJudge()


@pytest.fixture
def services(db_service, fake_agent, fake_traces, fake_judge):
    """The service graph the API builds, with fake collaborators and no poll delay."""
    from src.agent_health.benchmark_runner import BenchmarkRunner
    from src.agent_health.benchmark_service import BenchmarkService
    from src.agent_health.report_service import ReportService
    from src.agent_health.stats_service import StatsService
    from src.agent_health.trace_polling_service import TracePollingService

    stats = StatsService(db_service)
    reports = ReportService(db_service, stats)
    poller = TracePollingService(
        db_service, reports, fake_traces, fake_judge,
        poll_interval=0, max_attempts=5, max_concurrent=5,
    )
    runner = BenchmarkRunner(db_service, stats, fake_agent, fake_judge, trace_poller=poller)
    benchmarks = BenchmarkService(db_service, stats, runner)
    return {
        "db": db_service,
        "stats": stats,
        "reports": reports,
        "poller": poller,
        "runner": runner,
        "benchmarks": benchmarks,
    }


# ==============================================================================
# Seed Helpers
# ==============================================================================

async def seed_benchmark(db, prompts_and_outcomes, use_traces=False, agent_key="agent-1"):
    """Store an agent, one test case per (prompt, outcome) and a benchmark over them."""
    from src.agent_health.models import Agent, TestCase
    from src.agent_health.versioning import new_benchmark

    await db.create_agent(Agent(
        key=agent_key,
        name="Test Agent",
        endpoint="http://agent.test/agents/mock/run",
        use_traces=use_traces,
    ))
    ids = []
    for i, (prompt, outcome) in enumerate(prompts_and_outcomes):
        tc = await db.create_test_case(TestCase(
            name=f"Case {i + 1}",
            initial_prompt=prompt,
            expected_outcomes=[outcome],
        ))
        ids.append(tc.id)
    return await db.create_benchmark(new_benchmark("Benchmark", "", ids))


@pytest.fixture
def seed():
    return seed_benchmark


# ==============================================================================
# FastAPI Test Client Fixtures
# ==============================================================================

@pytest.fixture
def app_with_services(services):
    """Create a minimal FastAPI app whose controllers use the test services.

    Note: We create a simplified test app instead of importing the main app
    so the startup recovery in its lifespan does not run against the test
    database.
    """
    from fastapi import FastAPI
    from src.agent_health.controllers import router
    from src.agent_health.traces_client import TracesClient

    with patch('src.agent_health.controllers.db', services["db"]), \
         patch('src.agent_health.controllers.benchmarks', services["benchmarks"]), \
         patch('src.agent_health.controllers.poller', services["poller"]), \
         patch('src.agent_health.controllers.stats', services["stats"]), \
         patch('src.agent_health.controllers.reports', services["reports"]), \
         patch('src.agent_health.controllers.traces', TracesClient(endpoint="")):

        test_app = FastAPI(title="Test API")
        test_app.include_router(router)

        @test_app.get("/")
        async def root():
            return {"message": "Agent Health API", "docs": "/api/docs"}

        @test_app.get("/health")
        async def health():
            return {"status": "ok"}

        yield test_app, services


@pytest.fixture
def test_client(app_with_services):
    """Synchronous test client for simple endpoint tests."""
    app, _ = app_with_services
    with TestClient(app) as client:
        yield client


# ==============================================================================
# Sample Test Data Fixtures
# ==============================================================================

@pytest.fixture
def sample_test_case_request():
    """Sample test case creation request."""
    return {
        "name": "Status check",
        "description": "Agent reports service status",
        "initial_prompt": "What is the status of the payments service?",
        "expected_outcomes": ["Reports the payments service status"],
        "expected_trajectory": [
            {"description": "Query the status tool", "required_tools": ["status"]}
        ],
        "labels": ["smoke"],
    }


@pytest.fixture
def sample_agent_request():
    """Sample agent creation request."""
    return {
        "key": "agent-1",
        "name": "Test Agent",
        "endpoint": "http://agent.test/agents/mock/run",
        "use_traces": False,
    }
