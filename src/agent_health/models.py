from datetime import datetime, timezone
from typing import List, Dict, Any, Optional, Literal
import uuid
from pydantic import BaseModel, Field, field_validator
from enum import Enum


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ========== Test Case Models ==========


class ContextItem(BaseModel):
    """Extra context handed to the agent alongside the prompt."""
    description: str = ""
    value: str = ""


class ExpectedTrajectoryStep(BaseModel):
    """One step the judge expects to see in the agent's trajectory."""
    description: str = Field(..., description="What the agent should do at this step")
    required_tools: List[str] = Field(default_factory=list)


class TestCase(BaseModel):
    id: str = Field(default_factory=lambda: f"tc_{uuid.uuid4().hex[:16]}", description="Id of the test case")
    version: int = Field(default=1, description="Monotonic version, bumped on every update")
    name: str = Field(default="", description="Human-readable name for the test case")
    description: str = ""
    initial_prompt: str = Field(..., description="Prompt sent to the agent")
    context: List[ContextItem] = Field(default_factory=list)
    expected_outcomes: List[str] = Field(default_factory=list, description="Natural-language outcomes for the LLM judge")
    expected_trajectory: List[ExpectedTrajectoryStep] = Field(default_factory=list)
    labels: List[str] = Field(default_factory=list)
    created_at: str = Field(default_factory=_now_iso)
    updated_at: str = Field(default_factory=_now_iso)


class TestCaseCreate(BaseModel):
    name: str = ""
    description: str = ""
    initial_prompt: str
    context: List[ContextItem] = Field(default_factory=list)
    expected_outcomes: List[str] = Field(default_factory=list)
    expected_trajectory: List[ExpectedTrajectoryStep] = Field(default_factory=list)
    labels: List[str] = Field(default_factory=list)


class TestCaseUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    initial_prompt: Optional[str] = None
    context: Optional[List[ContextItem]] = None
    expected_outcomes: Optional[List[str]] = None
    expected_trajectory: Optional[List[ExpectedTrajectoryStep]] = None
    labels: Optional[List[str]] = None


# ========== Agent Models ==========


class Agent(BaseModel):
    """Agent under test.

    use_traces selects trace-mode: the agent's judgment waits until its spans
    show up in the observability backend instead of running right after the
    agent responds.
    """

    key: str = Field(..., description="Unique agent key referenced by run configs")
    name: str = ""
    description: str = ""
    endpoint: str = Field(..., description="AG-UI endpoint streaming Server-Sent Events")
    use_traces: bool = False
    headers: Dict[str, str] = Field(default_factory=dict)
    created_at: str = Field(default_factory=_now_iso)

    @field_validator('key')
    @classmethod
    def validate_key(cls, v):
        if not v or not v.strip():
            raise ValueError('key must not be empty')
        return v.strip()


# ========== Benchmark Models ==========


class RunStatus(str, Enum):
    running = "running"
    completed = "completed"
    cancelled = "cancelled"
    failed = "failed"


class ResultStatus(str, Enum):
    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


class TestCaseResult(BaseModel):
    report_id: str = ""
    status: ResultStatus = ResultStatus.pending
    error: Optional[str] = Field(default=None, description="Agent failure message for this test case")


class TestCaseSnapshot(BaseModel):
    """Test case identity and version a run executed against."""
    id: str
    version: int = 1
    name: str


class RunStats(BaseModel):
    passed: int = 0
    failed: int = 0
    pending: int = 0
    total: int = 0


class BenchmarkRun(BaseModel):
    id: str = Field(default_factory=lambda: f"run_{uuid.uuid4().hex[:16]}")
    name: str
    description: str = ""
    created_at: str = Field(default_factory=_now_iso)
    completed_at: Optional[str] = None
    agent_key: str
    model_id: str
    status: RunStatus = RunStatus.running
    benchmark_version: int = 1
    test_case_snapshots: List[TestCaseSnapshot] = Field(default_factory=list)
    results: Dict[str, TestCaseResult] = Field(default_factory=dict)
    stats: Optional[RunStats] = None
    error: Optional[str] = None


class BenchmarkVersion(BaseModel):
    version: int
    created_at: str = Field(default_factory=_now_iso)
    test_case_ids: List[str] = Field(default_factory=list)


class Benchmark(BaseModel):
    id: str = Field(default_factory=lambda: f"bench_{uuid.uuid4().hex[:16]}")
    name: str
    description: str = ""
    test_case_ids: List[str] = Field(default_factory=list)
    current_version: int = 1
    versions: List[BenchmarkVersion] = Field(default_factory=list)
    runs: List[BenchmarkRun] = Field(default_factory=list)
    created_at: str = Field(default_factory=_now_iso)
    updated_at: str = Field(default_factory=_now_iso)

    def get_run(self, run_id: str) -> Optional[BenchmarkRun]:
        for run in self.runs:
            if run.id == run_id:
                return run
        return None


class BenchmarkCreate(BaseModel):
    name: str
    description: str = ""
    test_case_ids: List[str] = Field(default_factory=list)


class BenchmarkUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    test_case_ids: Optional[List[str]] = None


class RunConfigInput(BaseModel):
    """Run configuration posted to the execute endpoint.

    Required fields are checked by the benchmark service so a missing value
    surfaces as a 400 with a readable message.
    """
    name: str = ""
    description: str = ""
    agent_key: str = ""
    model_id: str = ""
    headers: Dict[str, str] = Field(default_factory=dict)


class CancelRunRequest(BaseModel):
    run_id: Optional[str] = None


class BenchmarkProgress(BaseModel):
    current_test_case_index: int
    total_test_cases: int
    current_test_case_id: str
    status: ResultStatus


# ========== Trajectory / Trace Models ==========


class TrajectoryStep(BaseModel):
    id: str = Field(default_factory=lambda: f"step_{uuid.uuid4().hex[:12]}")
    type: Literal["thinking", "action", "tool_result", "response", "assistant"]
    content: str = ""
    tool_name: Optional[str] = None
    tool_args: Optional[Dict[str, Any]] = None
    status: Optional[Literal["success", "failure"]] = None
    timestamp: str = Field(default_factory=_now_iso)
    latency_ms: Optional[float] = None


class Span(BaseModel):
    trace_id: str
    span_id: str
    parent_span_id: Optional[str] = None
    name: str = ""
    start_time: str = ""
    end_time: str = ""
    duration: float = Field(default=0.0, description="Duration in milliseconds")
    status: str = "UNSET"
    attributes: Dict[str, Any] = Field(default_factory=dict)


# ========== Judge Models ==========


class PassFailStatus(str, Enum):
    passed = "passed"
    failed = "failed"


class ImprovementStrategy(BaseModel):
    category: str = ""
    issue: str = ""
    recommendation: str = ""
    priority: Literal["high", "medium", "low"] = "medium"


class JudgeMetrics(BaseModel):
    accuracy: float = 0.0
    faithfulness: Optional[float] = None
    latency_score: Optional[float] = None
    trajectory_alignment_score: Optional[float] = None


class JudgeResult(BaseModel):
    pass_fail_status: PassFailStatus
    metrics: JudgeMetrics = Field(default_factory=JudgeMetrics)
    llm_judge_reasoning: str = ""
    improvement_strategies: List[ImprovementStrategy] = Field(default_factory=list)


# ========== Report Models ==========


class MetricsStatus(str, Enum):
    pending = "pending"  # Agent finished, judgment waits for traces
    ready = "ready"      # Final pass/fail verdict exists
    error = "error"      # Judging workflow gave up


class EvaluationReport(BaseModel):
    """Outcome of one agent invocation for one test case of one run."""

    id: str = Field(default_factory=lambda: f"report_{uuid.uuid4().hex[:16]}")
    benchmark_id: str
    benchmark_run_id: str
    test_case_id: str
    test_case_version: int = 1
    agent_key: str
    model_id: str
    created_at: str = Field(default_factory=_now_iso)
    status: Literal["completed", "failed"] = "completed"

    # ==== TRACE CORRELATION (Feature: trace-polling) ====
    run_id: Optional[str] = Field(default=None, description="Agent run id carried by its spans")
    trajectory: List[TrajectoryStep] = Field(default_factory=list)

    # ==== JUDGMENT ====
    metrics_status: MetricsStatus = MetricsStatus.pending
    pass_fail_status: Optional[PassFailStatus] = None
    metrics: JudgeMetrics = Field(default_factory=JudgeMetrics)
    llm_judge_reasoning: Optional[str] = None
    improvement_strategies: List[ImprovementStrategy] = Field(default_factory=list)

    # ==== POLLING PROGRESS (Feature: trace-polling) ====
    # Persisted after every lookup so a restarted poller resumes at the next attempt
    trace_error: Optional[str] = None
    trace_fetch_attempts: int = 0
    last_trace_fetch_at: Optional[str] = None
    span_count: int = 0


class ReportUpdate(BaseModel):
    """Partial report update; only fields that were set are applied."""
    metrics_status: Optional[MetricsStatus] = None
    pass_fail_status: Optional[PassFailStatus] = None
    metrics: Optional[JudgeMetrics] = None
    llm_judge_reasoning: Optional[str] = None
    improvement_strategies: Optional[List[ImprovementStrategy]] = None
    trace_error: Optional[str] = None
    trace_fetch_attempts: Optional[int] = None
    last_trace_fetch_at: Optional[str] = None
    span_count: Optional[int] = None
