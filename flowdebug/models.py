"""Data models for recorded executions, cache entries, snapshots and scenarios."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

StepType = Literal[
    "llm_call",
    "database_operation",
    "api_call",
    "decision_point",
    "tool_execution",
    "user_interaction",
]
StepStatus = Literal["pending", "running", "completed", "failed", "skipped"]
ExecutionStatus = Literal["running", "completed", "failed", "paused"]
Trigger = Literal["user", "api", "scheduled", "test", "replay"]
OperationKind = Literal["select", "insert", "update", "delete", "upsert"]
AssertionType = Literal[
    "output_contains", "database_state", "llm_call_made", "duration_under", "custom"
]
EventType = Literal[
    "workflow_started",
    "workflow_completed",
    "workflow_failed",
    "workflow_paused",
    "workflow_resumed",
    "step_added",
    "step_started",
    "step_completed",
    "step_failed",
    "llm_call",
    "llm_call_completed",
    "db_operation",
    "db_operation_completed",
    "error",
]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def elapsed_ms(start: datetime, end: datetime) -> float:
    """Milliseconds between two timestamps."""
    return (end - start).total_seconds() * 1000


class StepError(BaseModel):
    message: str
    stack: Optional[str] = None
    code: Optional[str] = None


class WorkflowStep(BaseModel):
    """A named unit of work inside an execution."""

    id: str = Field(default_factory=new_id)
    name: str
    type: StepType
    timestamp: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    duration: Optional[float] = None
    status: StepStatus = "pending"
    input: Any = None
    output: Any = None
    error: Optional[StepError] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class TokenUsage(BaseModel):
    input: int = 0
    output: int = 0
    total: int = 0


class LLMCall(BaseModel):
    id: str = Field(default_factory=new_id)
    step_id: Optional[str] = None
    step_name: Optional[str] = None
    provider: str
    model: str
    temperature: Optional[float] = None
    prompt: Any
    response: Any = ""
    tokens_used: Optional[TokenUsage] = None
    cost: Optional[float] = None
    latency: float = 0
    timestamp: datetime = Field(default_factory=utcnow)
    cache_hit: bool = False
    cache_key: Optional[str] = None
    error: Optional[str] = None


class DatabaseOperation(BaseModel):
    id: str = Field(default_factory=new_id)
    step_id: Optional[str] = None
    operation: OperationKind
    table: str
    query: Any
    parameters: Any = None
    result: Any = None
    rows_affected: Optional[int] = None
    execution_time: float = 0
    timestamp: datetime = Field(default_factory=utcnow)
    error: Optional[str] = None


class WorkflowExecution(BaseModel):
    """One tracked run of a workflow function."""

    id: str = Field(default_factory=new_id)
    name: str
    correlation_id: str = Field(default_factory=new_id)
    start_time: datetime = Field(default_factory=utcnow)
    end_time: Optional[datetime] = None
    status: ExecutionStatus = "running"
    trigger: Trigger = "user"
    steps: List[WorkflowStep] = Field(default_factory=list)
    llm_calls: List[LLMCall] = Field(default_factory=list)
    database_operations: List[DatabaseOperation] = Field(default_factory=list)
    total_duration: Optional[float] = None
    total_cost: Optional[float] = None
    environment: str = "development"
    output: Any = None
    error: Optional[StepError] = None
    snapshot_id: Optional[str] = None
    parent_execution_id: Optional[str] = None

    def find_step(self, step_id: str) -> Optional[WorkflowStep]:
        return next((s for s in self.steps if s.id == step_id), None)


class DebugEvent(BaseModel):
    type: EventType
    workflow_id: str
    step_id: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


class Bottleneck(BaseModel):
    type: Literal["step", "llm", "database"]
    identifier: str
    duration: float
    percentage_of_total: float


class CostBreakdown(BaseModel):
    llm_calls: float = 0
    database_operations: float = 0
    total: float = 0


class PerformanceMetrics(BaseModel):
    workflow_id: str
    total_duration: float
    step_durations: Dict[str, float] = Field(default_factory=dict)
    llm_call_durations: Dict[str, float] = Field(default_factory=dict)
    database_operation_durations: Dict[str, float] = Field(default_factory=dict)
    bottlenecks: List[Bottleneck] = Field(default_factory=list)
    cost_breakdown: CostBreakdown = Field(default_factory=CostBreakdown)


class CacheEntry(BaseModel):
    key: str
    workflow_name: str
    step_name: str
    prompt_hash: str
    response: Any
    created_at: datetime = Field(default_factory=utcnow)
    hits: int = 0
    last_used: datetime = Field(default_factory=utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class CacheStats(BaseModel):
    hits: int = 0
    misses: int = 0
    saves: int = 0
    evictions: int = 0
    hit_rate: float = 0
    cache_size: int = 0
    max_size: int = 0


class SnapshotMetadata(BaseModel):
    total_size: int = 0
    table_count: int = 0
    row_count: int = 0
    description: Optional[str] = None


class DatabaseSnapshot(BaseModel):
    """Full point-in-time capture of every tracked table."""

    id: str = Field(default_factory=new_id)
    name: str
    created_at: datetime = Field(default_factory=utcnow)
    tables: Dict[str, List[Dict[str, Any]]] = Field(default_factory=dict)
    metadata: SnapshotMetadata = Field(default_factory=SnapshotMetadata)


class QueryResult(BaseModel):
    """Rows returned (or touched) by a backing-store call."""

    data: List[Dict[str, Any]] = Field(default_factory=list)
    count: int = 0


class TestAssertion(BaseModel):
    """A check run against a finished execution.

    ``condition`` depends on ``type``: a substring for ``output_contains``,
    ``{"table", "where", "count"}`` for ``database_state``,
    ``{"provider", "model", "step_name"}`` for ``llm_call_made``, a millisecond
    bound for ``duration_under`` and a predicate (or registered predicate
    name) for ``custom``.
    """

    __test__ = False
    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str = Field(default_factory=new_id)
    step_name: str = ""
    type: AssertionType
    condition: Any = None
    description: str = ""


class ExpectedFinalState(BaseModel):
    database: Optional[Dict[str, Any]] = None
    workflow_status: Optional[str] = None
    output: Any = None


class TestScenario(BaseModel):
    """Declarative test case: initial state, canned responses and assertions."""

    __test__ = False
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    name: str
    description: str = ""
    workflow_name: str
    initial_database_state: Optional[str] = None
    expected_llm_responses: Optional[Dict[str, Any]] = None
    breakpoints: Optional[List[str]] = None
    assertions: List[TestAssertion] = Field(default_factory=list)
    expected_final_state: Optional[ExpectedFinalState] = None
    tags: List[str] = Field(default_factory=list)


class ExecutionConfig(BaseModel):
    name: str
    enable_debug: bool = True
    enable_cache: bool = True
    use_test_db: Optional[bool] = None
    correlation_id: Optional[str] = None
    parent_execution_id: Optional[str] = None
    trigger: Trigger = "api"
    breakpoints: List[str] = Field(default_factory=list)
    overrides: Dict[str, Any] = Field(default_factory=dict)


class ReplayConfig(BaseModel):
    workflow_execution_id: str
    start_from_step: Optional[str] = None
    override_data: Dict[str, Any] = Field(default_factory=dict)
    use_cache: bool = True
    target_environment: Literal["test", "development"] = "test"
    snapshot_id: Optional[str] = None


class Difference(BaseModel):
    category: Literal["step", "llm_call", "database_operation"]
    identifier: str
    difference_type: str
    details: Dict[str, Any] = Field(default_factory=dict)


class ComparisonSummary(BaseModel):
    total_differences: int = 0
    critical_differences: int = 0
    performance_delta: float = 0


class ExecutionComparison(BaseModel):
    execution_a: str
    execution_b: str
    differences: List[Difference] = Field(default_factory=list)
    summary: ComparisonSummary = Field(default_factory=ComparisonSummary)


@dataclass
class ExecutionResult:
    """Outcome of ``WorkflowOrchestrator.execute``; errors are data, not raised."""

    result: Any = None
    execution: Optional[WorkflowExecution] = None
    error: Optional[BaseException] = None
    performance: Optional[PerformanceMetrics] = None


@dataclass
class AssertionFailure:
    assertion: TestAssertion
    expected: Any
    actual: Any
    message: str


@dataclass
class ScenarioResult:
    scenario: TestScenario
    execution: Optional[WorkflowExecution]
    success: bool
    failures: List[AssertionFailure] = field(default_factory=list)
    duration: float = 0
    error: Optional[BaseException] = None


@dataclass
class ReportSummary:
    total: int = 0
    passed: int = 0
    failed: int = 0
    pass_rate: float = 0
    total_duration: float = 0


@dataclass
class ScenarioReport:
    summary: ReportSummary
    results: List[ScenarioResult] = field(default_factory=list)


class PerformanceReport(BaseModel):
    """Aggregate timings and cost across several executions."""

    executions: int
    total_duration: float = 0
    avg_duration: float = 0
    total_cost: float = 0
    avg_cost: float = 0
    llm_calls: int = 0
    avg_llm_latency: float = 0
    avg_llm_calls_per_execution: float = 0
    database_operations: int = 0
    avg_database_latency: float = 0
    avg_database_operations_per_execution: float = 0
    cache_stats: CacheStats = Field(default_factory=CacheStats)


class DebugSession(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    session_name: str
    timestamp: datetime = Field(default_factory=utcnow)
    executions: List[WorkflowExecution] = Field(default_factory=list)
    scenarios: Dict[str, TestScenario] = Field(default_factory=dict)
    cache_entries: Dict[str, Any] = Field(default_factory=dict)
    cache_stats: CacheStats = Field(default_factory=CacheStats)
    environment: Dict[str, Any] = Field(default_factory=dict)


EventListener = Callable[[DebugEvent], None]
