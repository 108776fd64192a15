"""错误分类

执行层的所有异常都挂在 ArmadaError 之下：
- Validation: 配置错误，立即拒绝，不重试
- Transient: 网络/超时/进程启动失败/限流，可沿模型降级链重试
- Permanent: 缺少凭证、响应格式错误、请求被拒，直接上报
- Resource limit: 成本上限、限流耗尽，独立终态
- Cancellation: 取消，独立终态，不作为错误记录
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Optional


class ErrorCategory(Enum):
    """错误分类"""

    VALIDATION = "validation"
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    RESOURCE_LIMIT = "resource_limit"
    CANCELLATION = "cancellation"


class ArmadaError(Exception):
    """执行层错误基类"""

    kind = "Error"


class AgentValidationError(ArmadaError, ValueError):
    """Agent 配置无效"""

    kind = "Validation"


class BackendError(ArmadaError):
    """后端调用错误基类

    Attributes:
        kind: 错误类型名，写入 ExecutionResult.error_kind
        transient: 是否可沿降级链重试
        backend: 出错的后端名称
    """

    kind = "BackendError"
    transient = False

    def __init__(self, message: str = "", *, backend: Optional[str] = None):
        super().__init__(message or self.kind)
        self.backend = backend


class NetworkError(BackendError):
    """网络错误或服务端 5xx"""

    kind = "NetworkError"
    transient = True


class BackendTimeout(BackendError):
    """调用超时"""

    kind = "Timeout"
    transient = True


class ProcessSpawnFailed(BackendError):
    """子进程启动失败"""

    kind = "ProcessSpawnFailed"
    transient = True


class RateLimited(BackendError):
    """速率限制"""

    kind = "RateLimited"
    transient = True

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        retry_after: Optional[float] = None,
        *,
        backend: Optional[str] = None,
    ):
        super().__init__(message, backend=backend)
        self.retry_after = retry_after


class AuthMissing(BackendError):
    """缺少或无效的凭证"""

    kind = "AuthMissing"


class MalformedResponse(BackendError):
    """响应格式无法解析"""

    kind = "MalformedResponse"


class InvalidRequest(BackendError):
    """请求被后端拒绝 (4xx)"""

    kind = "InvalidRequest"


class ProcessExitNonZero(BackendError):
    """子进程以非零状态退出"""

    kind = "ProcessExitNonZero"

    def __init__(
        self,
        exit_code: int,
        stderr: str = "",
        *,
        backend: Optional[str] = None,
    ):
        detail = stderr.strip()
        message = f"process exited with status {exit_code}"
        if detail:
            message = f"{message}: {detail[:500]}"
        super().__init__(message, backend=backend)
        self.exit_code = exit_code
        self.stderr = stderr


class CostLimitExceeded(ArmadaError):
    """继续执行会超过成本上限"""

    kind = "CostLimitExceeded"

    def __init__(
        self,
        message: str = "Cost limit exceeded",
        *,
        limit: Optional[float] = None,
        projected: Optional[float] = None,
        partial_output: str = "",
    ):
        super().__init__(message)
        self.limit = limit
        self.projected = projected
        self.partial_output = partial_output


class NoAgentAvailable(ArmadaError):
    """没有匹配子任务的 Agent"""

    kind = "NoAgentAvailable"


class RunCancelled(ArmadaError):
    """运行被显式取消"""

    kind = "Cancelled"


def classify_error(error: BaseException) -> ErrorCategory:
    """分类错误

    Args:
        error: 异常对象

    Returns:
        错误分类
    """
    if isinstance(error, (asyncio.CancelledError, RunCancelled)):
        return ErrorCategory.CANCELLATION
    if isinstance(error, AgentValidationError):
        return ErrorCategory.VALIDATION
    if isinstance(error, CostLimitExceeded):
        return ErrorCategory.RESOURCE_LIMIT
    if isinstance(error, BackendError) and error.transient:
        return ErrorCategory.TRANSIENT
    return ErrorCategory.PERMANENT


def is_transient(error: BaseException) -> bool:
    """是否可沿降级链重试"""
    return classify_error(error) == ErrorCategory.TRANSIENT


def error_kind(error: BaseException) -> str:
    """错误类型名"""
    if isinstance(error, ArmadaError):
        return error.kind
    return type(error).__name__
