"""后端抽象

所有后端实现同一组能力：
- complete(request) -> CompletionResponse
- stream(request) -> TokenStream
- describe() -> BackendMetadata

错误一律以 errors.BackendError 子类抛出，由执行引擎分类处理。
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional

from ..errors import AuthMissing, BackendError, BackendTimeout, InvalidRequest, NetworkError, RateLimited
from ..schema import BackendKind, BackendMetadata, CompletionRequest, CompletionResponse, ModelPricing, TokenUsage
from .providers import ProviderConfig


class TokenStream:
    """输出流

    惰性、有限、不可重启：只能被一个消费者按原始顺序读取一次。
    aclose()/cancel() 会关闭底层数据源（中断 HTTP 响应或终止子进程），
    需要在消费者所在的任务中调用；从其他任务取消时请取消消费者任务本身。

    使用示例:
    ```python
    async with await backend.stream(request) as stream:
        async for chunk in stream:
            print(chunk, end="")
    print(stream.usage)
    ```
    """

    def __init__(
        self,
        source: AsyncIterator[str],
        *,
        usage: Optional[TokenUsage] = None,
        model: str = "",
    ):
        self._source = source
        self.usage = usage if usage is not None else TokenUsage()
        self.model = model
        self._iterator: Optional[Any] = None
        self._source_closed = False
        self.closed = False

    def __aiter__(self) -> AsyncIterator[str]:
        if self._iterator is not None:
            raise RuntimeError("token stream can only be consumed once")
        if self.closed:
            raise RuntimeError("token stream is closed")
        self._iterator = self._iterate()
        return self._iterator

    async def _iterate(self) -> AsyncIterator[str]:
        try:
            async for chunk in self._source:
                if chunk:
                    yield chunk
        finally:
            await self._close_source()

    async def _close_source(self) -> None:
        if self._source_closed:
            return
        self._source_closed = True
        closer = getattr(self._source, "aclose", None)
        if closer is not None:
            await closer()

    async def aclose(self) -> None:
        """关闭流并释放底层资源"""
        self.closed = True
        if self._iterator is not None:
            await self._iterator.aclose()
        await self._close_source()

    cancel = aclose

    async def collect(self) -> str:
        """读完整个流并拼接"""
        parts: List[str] = []
        async for chunk in self:
            parts.append(chunk)
        return "".join(parts)

    async def __aenter__(self) -> "TokenStream":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()


class BackendProvider(ABC):
    """后端抽象基类"""

    name: str = ""
    kind: BackendKind = BackendKind.API

    @property
    def default_model(self) -> str:
        return ""

    @abstractmethod
    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        """一次性补全"""
        pass

    @abstractmethod
    async def stream(self, request: CompletionRequest) -> TokenStream:
        """流式补全"""
        pass

    @abstractmethod
    def describe(self) -> BackendMetadata:
        """后端描述：名称、模型、价格"""
        pass

    async def aclose(self) -> None:
        """释放连接等资源"""
        pass


class ApiBackendBase(BackendProvider):
    """HTTP API 后端公共部分"""

    DEFAULT_MAX_TOKENS = 4096

    def __init__(
        self,
        config: ProviderConfig,
        api_key: Optional[str],
        api_base: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        default_max_tokens: int = DEFAULT_MAX_TOKENS,
        pricing_overrides: Optional[Mapping[str, ModelPricing]] = None,
    ):
        if config.requires_key and not api_key:
            raise AuthMissing(
                f"no credential for {config.name} (set {config.api_key_env})",
                backend=config.name,
            )
        self.config = config
        self.name = config.name
        self.kind = config.kind
        self.api_key = api_key
        self.api_base = api_base or config.api_base
        self.timeout = timeout
        self.default_max_tokens = default_max_tokens
        self.pricing_overrides: Dict[str, ModelPricing] = dict(pricing_overrides or {})

    @property
    def default_model(self) -> str:
        return self.config.default_model

    def _resolve_model(self, request: CompletionRequest) -> str:
        model = request.model or self.default_model
        if not model:
            raise InvalidRequest(f"{self.name}: no model specified", backend=self.name)
        return model

    def describe(self) -> BackendMetadata:
        pricing = self.config.pricing
        pricing.update(self.pricing_overrides)
        return BackendMetadata(
            name=self.name,
            kind=self.kind,
            models=list(self.config.models),
            pricing=pricing,
            default_pricing=self.config.fallback_pricing,
        )


def parse_retry_after(headers: Optional[Mapping[str, str]]) -> Optional[float]:
    """解析 retry-after 响应头（秒）"""
    if not headers:
        return None
    value = headers.get("retry-after")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except (TypeError, ValueError):
        return None


def status_error(
    status_code: int,
    message: str,
    headers: Optional[Mapping[str, str]] = None,
    backend: Optional[str] = None,
) -> BackendError:
    """按 HTTP 状态码映射错误"""
    if status_code == 429:
        return RateLimited(message, retry_after=parse_retry_after(headers), backend=backend)
    if status_code in (401, 403):
        return AuthMissing(message, backend=backend)
    if status_code == 408:
        return BackendTimeout(message, backend=backend)
    if status_code >= 500:
        return NetworkError(message, backend=backend)
    return InvalidRequest(message, backend=backend)
