"""Exception types raised by flowdebug."""

from __future__ import annotations


class FlowDebugError(Exception):
    """Base class for all flowdebug errors."""


class ConfigurationError(FlowDebugError):
    """Required settings or credentials are missing or invalid."""


class EnvironmentModeError(FlowDebugError):
    """Operation is not allowed in the current database mode."""


class SnapshotNotFound(FlowDebugError):
    """Snapshot id is unknown in memory and in durable storage."""

    def __init__(self, snapshot_id: str):
        super().__init__(f"Snapshot {snapshot_id} not found")
        self.snapshot_id = snapshot_id


class ScenarioNotFound(FlowDebugError):
    def __init__(self, scenario_id: str):
        super().__init__(f"Scenario {scenario_id} not found")
        self.scenario_id = scenario_id


class ExecutionNotFound(FlowDebugError):
    def __init__(self, execution_id: str):
        super().__init__(f"Execution {execution_id} not found")
        self.execution_id = execution_id


class ScenarioTimeoutError(FlowDebugError):
    """Workflow body did not finish within the scenario timeout."""

    def __init__(self, timeout_ms: float):
        shown = int(timeout_ms) if float(timeout_ms).is_integer() else timeout_ms
        super().__init__(f"Workflow execution timed out after {shown}ms")
        self.timeout_ms = timeout_ms
