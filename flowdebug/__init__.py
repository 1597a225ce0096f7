"""flowdebug: Debugging, caching and replay for LLM-driven workflows."""

from .breakpoints import BreakpointContext, Continue, ModifyInput, Skip
from .cache import ResponseCache
from .config import DebugConfig, load_config, preset
from .context import ExecutionContext
from .database import EnvironmentSwitch, get_database_client
from .ledger import ExecutionLedger
from .models import ExecutionConfig, ReplayConfig, TestAssertion, TestScenario
from .orchestrator import WorkflowOrchestrator
from .scenarios import ScenarioRunner
from .storage import get_store
from .system import DebugSystem

__version__ = "0.1.0"
__all__ = [
    "BreakpointContext",
    "Continue",
    "ModifyInput",
    "Skip",
    "DebugConfig",
    "DebugSystem",
    "EnvironmentSwitch",
    "ExecutionConfig",
    "ExecutionContext",
    "ExecutionLedger",
    "ReplayConfig",
    "ResponseCache",
    "ScenarioRunner",
    "TestAssertion",
    "TestScenario",
    "WorkflowOrchestrator",
    "get_database_client",
    "get_store",
    "load_config",
    "preset",
]
