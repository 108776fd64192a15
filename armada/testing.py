"""脚本化后端

用于测试时回放预先写好的响应，避免真实 API 调用和子进程。

使用方式:
```python
from armada.testing import ScriptedBackend, ScriptedResponse

backend = ScriptedBackend([
    ScriptedResponse(error="NetworkError"),
    ScriptedResponse(output="ok", input_tokens=10, output_tokens=5),
])
engine = ExecutionEngine(backend_factory=lambda agent: backend)

# 或从 YAML 加载
backend = ScriptedBackend.load("fixtures/review.yaml")
```

YAML 格式:
```yaml
name: scripted
pricing:
  model-a: {input: 1.0, output: 2.0}
responses:
  - model: model-a
    error: Timeout
  - output: "Hello!"
    chunks: ["Hel", "lo!"]
    usage: {input_tokens: 10, output_tokens: 3}
```
"""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Type, Union

import yaml

from .backends.base import BackendProvider, TokenStream
from .errors import (
    AuthMissing,
    BackendError,
    BackendTimeout,
    InvalidRequest,
    MalformedResponse,
    NetworkError,
    ProcessExitNonZero,
    ProcessSpawnFailed,
    RateLimited,
)
from .schema import (
    BackendKind,
    BackendMetadata,
    CompletionRequest,
    CompletionResponse,
    ModelPricing,
    TokenUsage,
)

ERROR_TYPES: Dict[str, Type[BackendError]] = {
    cls.kind: cls
    for cls in (
        AuthMissing,
        BackendTimeout,
        InvalidRequest,
        MalformedResponse,
        NetworkError,
        ProcessExitNonZero,
        ProcessSpawnFailed,
        RateLimited,
    )
}


@dataclass
class ScriptedResponse:
    """一条脚本化响应"""

    output: str = ""
    chunks: Optional[List[str]] = None
    input_tokens: int = 0
    output_tokens: int = 0
    delay: float = 0.0  # 响应前等待（秒）
    chunk_delay: float = 0.0  # 每块之间等待（秒）
    error: Optional[str] = None  # 错误类型名，例如 "NetworkError"
    error_message: str = ""
    model: Optional[str] = None  # 只匹配该模型的请求

    def make_error(self, backend: str) -> BackendError:
        cls = ERROR_TYPES.get(self.error or "")
        if cls is None:
            raise ValueError(f"unknown scripted error: {self.error!r}")
        if cls is ProcessExitNonZero:
            return ProcessExitNonZero(1, self.error_message, backend=backend)
        if cls is RateLimited:
            return RateLimited(self.error_message or "Rate limit exceeded", backend=backend)
        return cls(self.error_message, backend=backend)

    @property
    def pieces(self) -> List[str]:
        if self.chunks is not None:
            return list(self.chunks)
        return [self.output] if self.output else []

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        usage = {
            "input_tokens": data.pop("input_tokens"),
            "output_tokens": data.pop("output_tokens"),
        }
        data = {k: v for k, v in data.items() if v not in (None, "", 0.0)}
        data["usage"] = usage
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScriptedResponse":
        data = dict(data)
        usage = data.pop("usage", None) or {}
        data.setdefault("input_tokens", usage.get("input_tokens", 0))
        data.setdefault("output_tokens", usage.get("output_tokens", 0))
        return cls(**data)


@dataclass
class ScriptedCall:
    """一次被记录的调用"""

    request: CompletionRequest
    mode: str  # complete, stream
    response: ScriptedResponse = field(default_factory=ScriptedResponse)


class ScriptedBackend(BackendProvider):
    """按脚本回放的后端

    响应按顺序消费；指定了 model 的响应只会被该模型的请求消费。
    脚本用完后返回 default_response。
    """

    def __init__(
        self,
        responses: Optional[List[ScriptedResponse]] = None,
        *,
        name: str = "scripted",
        kind: BackendKind = BackendKind.API,
        default_response: Optional[ScriptedResponse] = None,
        pricing: Optional[Dict[str, ModelPricing]] = None,
        default_pricing: Optional[ModelPricing] = None,
        default_model: str = "scripted-model",
    ):
        self.name = name
        self.kind = kind
        self.responses = list(responses or [])
        self.default_response = default_response or ScriptedResponse(output="ok")
        self.pricing = dict(pricing or {})
        self.default_pricing = default_pricing or ModelPricing()
        self._default_model = default_model
        self._used: List[bool] = [False] * len(self.responses)
        self.calls: List[ScriptedCall] = []
        self.closed_streams = 0

    @property
    def default_model(self) -> str:
        return self._default_model

    @property
    def call_count(self) -> int:
        return len(self.calls)

    @property
    def call_history(self) -> List[CompletionRequest]:
        return [call.request for call in self.calls]

    def add(self, response: ScriptedResponse) -> "ScriptedBackend":
        """追加一条响应"""
        self.responses.append(response)
        self._used.append(False)
        return self

    def _next(self, request: CompletionRequest) -> ScriptedResponse:
        for index, response in enumerate(self.responses):
            if self._used[index]:
                continue
            if response.model is not None and response.model != request.model:
                continue
            self._used[index] = True
            return response
        return self.default_response

    def describe(self) -> BackendMetadata:
        return BackendMetadata(
            name=self.name,
            kind=self.kind,
            models=sorted(self.pricing),
            pricing=self.pricing,
            default_pricing=self.default_pricing,
        )

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        response = self._next(request)
        self.calls.append(ScriptedCall(request=request, mode="complete", response=response))
        if response.delay:
            await asyncio.sleep(response.delay)
        if response.error:
            raise response.make_error(self.name)
        return CompletionResponse(
            output=response.output or "".join(response.pieces),
            usage=TokenUsage(
                input_tokens=response.input_tokens,
                output_tokens=response.output_tokens,
            ),
            model=request.model or self.default_model,
        )

    async def stream(self, request: CompletionRequest) -> TokenStream:
        response = self._next(request)
        self.calls.append(ScriptedCall(request=request, mode="stream", response=response))
        usage = TokenUsage()
        return TokenStream(
            self._iter_chunks(response, usage),
            usage=usage,
            model=request.model or self.default_model,
        )

    async def _iter_chunks(self, response: ScriptedResponse, usage: TokenUsage) -> AsyncIterator[str]:
        try:
            if response.delay:
                await asyncio.sleep(response.delay)
            if response.error:
                raise response.make_error(self.name)
            for chunk in response.pieces:
                if response.chunk_delay:
                    await asyncio.sleep(response.chunk_delay)
                yield chunk
            usage.input_tokens = response.input_tokens
            usage.output_tokens = response.output_tokens
        finally:
            self.closed_streams += 1

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典"""
        return {
            "name": self.name,
            "kind": self.kind.value,
            "pricing": {
                model: {"input": p.input_per_million, "output": p.output_per_million}
                for model, p in self.pricing.items()
            },
            "responses": [r.to_dict() for r in self.responses],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScriptedBackend":
        """从字典创建"""
        pricing = {
            model: ModelPricing(
                input_per_million=float(p.get("input", 0.0)),
                output_per_million=float(p.get("output", 0.0)),
            )
            for model, p in (data.get("pricing") or {}).items()
        }
        default = data.get("default_response")
        return cls(
            [ScriptedResponse.from_dict(r) for r in data.get("responses") or []],
            name=data.get("name", "scripted"),
            kind=BackendKind(data.get("kind", BackendKind.API.value)),
            default_response=ScriptedResponse.from_dict(default) if default else None,
            pricing=pricing,
        )

    def save(self, path: Union[str, Path]) -> None:
        """保存到文件"""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w", encoding="utf-8") as f:
            yaml.dump(self.to_dict(), f, allow_unicode=True, default_flow_style=False)

    @classmethod
    def load(cls, path: Union[str, Path]) -> "ScriptedBackend":
        """从文件加载"""
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)

        return cls.from_dict(data or {})
