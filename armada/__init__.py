"""
Armada - Agent 执行引擎

以声明式配置定义的 Agent，在 HTTP API、本地命令行工具或 OpenAI 兼容代理上执行，
带限流、超时/取消、成本上限和模型降级；支持协调器分派和流水线串联。
"""

__version__ = "0.1.0"

from .config import Settings, configure_logging, env_secret_resolver
from .coordinator import Coordinator, checklist_decomposer, default_decomposer, select_agent
from .cost import CostTracker
from .engine import ExecutionEngine
from .errors import (
    AgentValidationError,
    ArmadaError,
    AuthMissing,
    BackendError,
    BackendTimeout,
    CostLimitExceeded,
    ErrorCategory,
    MalformedResponse,
    NetworkError,
    NoAgentAvailable,
    ProcessExitNonZero,
    ProcessSpawnFailed,
    RateLimited,
    RunCancelled,
    classify_error,
)
from .pipeline import Pipeline
from .rate_limit import RateLimiter, RateLimiterRegistry, RateLimitPolicy, parse_rate
from .schema import (
    Agent,
    AggregatedResult,
    AggregatedSection,
    BackendKind,
    CompletionRequest,
    CompletionResponse,
    ExecutionResult,
    PipelineResult,
    PipelineState,
    RunStatus,
    RunSummary,
    SubTask,
    Task,
    TokenUsage,
)

__all__ = [
    # Core
    "ExecutionEngine",
    "Coordinator",
    "Pipeline",
    "Settings",
    "configure_logging",
    "env_secret_resolver",
    "checklist_decomposer",
    "default_decomposer",
    "select_agent",
    # Limits
    "CostTracker",
    "RateLimiter",
    "RateLimiterRegistry",
    "RateLimitPolicy",
    "parse_rate",
    # Schema
    "Agent",
    "Task",
    "SubTask",
    "BackendKind",
    "CompletionRequest",
    "CompletionResponse",
    "TokenUsage",
    "ExecutionResult",
    "AggregatedResult",
    "AggregatedSection",
    "PipelineResult",
    "PipelineState",
    "RunStatus",
    "RunSummary",
    # Errors
    "ArmadaError",
    "AgentValidationError",
    "BackendError",
    "AuthMissing",
    "BackendTimeout",
    "CostLimitExceeded",
    "MalformedResponse",
    "NetworkError",
    "NoAgentAvailable",
    "ProcessExitNonZero",
    "ProcessSpawnFailed",
    "RateLimited",
    "RunCancelled",
    "ErrorCategory",
    "classify_error",
]
