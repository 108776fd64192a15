"""数据模型定义"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .errors import AgentValidationError
from .rate_limit import parse_rate

PROVIDERS = ("anthropic", "openai", "google", "cli", "proxy")


class BackendKind(str, Enum):
    """后端类型"""

    API = "api"
    PROCESS = "process"
    PROXY = "proxy"


class Agent(BaseModel):
    """Agent 配置

    由外部解析器生成，执行期间只读。
    """

    model_config = ConfigDict(frozen=True)

    name: str
    provider: str = "anthropic"  # anthropic, openai, google, cli, proxy
    model: str = ""
    command: Optional[str] = None
    args: Tuple[str, ...] = ()
    temperature: float = 0.7
    max_tokens: Optional[int] = None
    timeout: float = 120.0  # 秒
    tags: Tuple[str, ...] = ()
    stacks: Tuple[str, ...] = ()
    scope: Tuple[str, ...] = ()
    cost_limit: Optional[float] = None  # 单次运行 USD 上限
    rate_limit: Optional[str] = None  # 例如 "10/min"
    model_fallback: Tuple[str, ...] = ()
    system_prompt: str = ""
    instructions: Optional[str] = None
    output_format: Optional[str] = None
    context: Optional[str] = None
    pipeline: Tuple[str, ...] = ()

    @model_validator(mode="after")
    def _check(self) -> "Agent":
        self.validate_config()
        return self

    def validate_config(self) -> None:
        """校验配置

        Raises:
            AgentValidationError: 配置无效
        """
        if not self.name:
            raise AgentValidationError("agent name is required")
        if self.provider not in PROVIDERS:
            raise AgentValidationError(
                f"agent {self.name!r}: unknown provider {self.provider!r}"
            )
        if self.provider == "cli" and not self.command:
            raise AgentValidationError(f"agent {self.name!r}: cli provider requires a command")
        if self.provider != "cli" and not self.model and not self.command:
            raise AgentValidationError(f"agent {self.name!r}: model is required")
        if not 0.0 <= self.temperature <= 2.0:
            raise AgentValidationError(
                f"agent {self.name!r}: temperature {self.temperature} outside 0.0-2.0"
            )
        if self.max_tokens is not None and self.max_tokens <= 0:
            raise AgentValidationError(f"agent {self.name!r}: max_tokens must be positive")
        if self.timeout <= 0:
            raise AgentValidationError(f"agent {self.name!r}: timeout must be positive")
        if self.cost_limit is not None and self.cost_limit < 0:
            raise AgentValidationError(f"agent {self.name!r}: cost_limit must not be negative")
        if self.rate_limit:
            parse_rate(self.rate_limit)

    @property
    def backend_kind(self) -> BackendKind:
        if self.provider == "cli":
            return BackendKind.PROCESS
        if self.provider == "proxy":
            return BackendKind.PROXY
        return BackendKind.API

    def model_chain(self, default_model: Optional[str] = None) -> List[str]:
        """主模型 + 降级链，未指定 model 时以后端默认模型为主模型"""
        primary = self.model or default_model
        return [primary] + [m for m in self.model_fallback if m != primary]

    def full_system_prompt(self) -> str:
        """组合系统提示词、上下文、指令和输出格式"""
        parts = []
        if self.system_prompt:
            parts.append(self.system_prompt.strip())
        if self.context:
            parts.append(f"## Context\n\n{self.context.strip()}")
        if self.instructions:
            parts.append(f"## Instructions\n\n{self.instructions.strip()}")
        if self.output_format:
            parts.append(f"## Output Format\n\n{self.output_format.strip()}")
        return "\n\n".join(parts)


class SubTask(BaseModel):
    """子任务"""

    input: str
    tags: List[str] = Field(default_factory=list)
    stacks: List[str] = Field(default_factory=list)
    agent: Optional[str] = None  # 指定 Agent 名称
    depends_on: List[int] = Field(default_factory=list)  # 依赖的前序子任务下标

    @property
    def hints(self) -> List[str]:
        return [*self.tags, *self.stacks]


class Task(BaseModel):
    """任务"""

    input: str
    tags: List[str] = Field(default_factory=list)
    stacks: List[str] = Field(default_factory=list)
    subtasks: List[SubTask] = Field(default_factory=list)


class CompletionRequest(BaseModel):
    """发给后端的补全请求"""

    system_prompt: str = ""
    input: str
    model: Optional[str] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None


class TokenUsage(BaseModel):
    """Token 使用统计"""

    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class CompletionResponse(BaseModel):
    """后端补全响应"""

    output: str
    usage: TokenUsage = Field(default_factory=TokenUsage)
    model: str = ""
    finish_reason: str = "stop"


class ModelPricing(BaseModel):
    """模型价格（USD / 百万 token）"""

    input_per_million: float = 0.0
    output_per_million: float = 0.0

    def cost(self, input_tokens: int, output_tokens: int) -> float:
        return (
            input_tokens * self.input_per_million + output_tokens * self.output_per_million
        ) / 1_000_000

    def affordable_output_tokens(self, budget: float, input_tokens: int) -> Optional[int]:
        """预算内还能生成多少输出 token，输出免费时返回 None"""
        remaining = budget - self.cost(input_tokens, 0)
        if remaining < 0:
            return 0
        if self.output_per_million <= 0:
            return None
        return int(remaining * 1_000_000 // self.output_per_million)

    @property
    def is_free(self) -> bool:
        return self.input_per_million <= 0 and self.output_per_million <= 0


class BackendMetadata(BaseModel):
    """后端描述"""

    name: str
    kind: BackendKind
    models: List[str] = Field(default_factory=list)
    pricing: Dict[str, ModelPricing] = Field(default_factory=dict)
    default_pricing: ModelPricing = Field(default_factory=ModelPricing)

    def price_for(self, model: Optional[str]) -> ModelPricing:
        """查找模型价格，未知模型按默认价格"""
        if model:
            if model in self.pricing:
                return self.pricing[model]
            bare = model.split("/", 1)[-1]
            if bare in self.pricing:
                return self.pricing[bare]
        return self.default_pricing


class RunStatus(str, Enum):
    """运行终态"""

    SUCCESS = "success"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    COST_LIMIT_EXCEEDED = "cost_limit_exceeded"
    RATE_LIMITED = "rate_limited"


class AttemptRecord(BaseModel):
    """单次尝试记录"""

    model: str
    status: RunStatus
    error_kind: Optional[str] = None
    reason: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0
    duration: float = 0.0


class ExecutionResult(BaseModel):
    """单个 Agent 的执行结果"""

    agent_name: str
    provider: str = ""
    model: str = ""
    status: RunStatus
    output: str = ""
    reason: Optional[str] = None
    error_kind: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0
    duration: float = 0.0  # 秒
    started_at: datetime = Field(default_factory=datetime.now)
    streamed: bool = False
    chunk_count: int = 0
    attempts: List[AttemptRecord] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status == RunStatus.SUCCESS

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class AggregatedSection(BaseModel):
    """协调器结果中的一节"""

    index: int
    agent_name: Optional[str] = None
    subtask: SubTask
    result: ExecutionResult


class AggregatedResult(BaseModel):
    """协调器聚合结果"""

    sections: List[AggregatedSection] = Field(default_factory=list)
    summary: str = ""

    @property
    def success(self) -> bool:
        return any(section.result.success for section in self.sections)

    @property
    def failed_sections(self) -> List[AggregatedSection]:
        return [s for s in self.sections if not s.result.success]

    @property
    def total_cost(self) -> float:
        return sum(s.result.cost for s in self.sections)

    def to_dict(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json")
        data["success"] = self.success
        return data


class PipelineState(str, Enum):
    """流水线状态"""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PipelineResult(BaseModel):
    """流水线结果"""

    state: PipelineState = PipelineState.PENDING
    stages: List[ExecutionResult] = Field(default_factory=list)
    failed_index: Optional[int] = None
    failure_reason: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.state == PipelineState.SUCCEEDED

    @property
    def final_output(self) -> Optional[str]:
        if not self.success or not self.stages:
            return None
        return self.stages[-1].output

    @property
    def total_cost(self) -> float:
        return sum(stage.cost for stage in self.stages)

    def to_dict(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json")
        data["success"] = self.success
        data["final_output"] = self.final_output
        return data


class RunSummary(BaseModel):
    """交给存储方的运行摘要"""

    agent: str
    provider: str
    model: str
    input: str
    output: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0
    duration_ms: int = 0
    status: RunStatus
    reason: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.now)

    @classmethod
    def from_result(cls, result: ExecutionResult, task_input: str) -> "RunSummary":
        return cls(
            agent=result.agent_name,
            provider=result.provider,
            model=result.model,
            input=task_input,
            output=result.output,
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
            cost=result.cost,
            duration_ms=int(result.duration * 1000),
            status=result.status,
            reason=result.reason,
            timestamp=result.started_at,
        )
