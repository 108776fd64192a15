"""OpenAI 兼容后端 - 支持 OpenAI / Google Gemini"""

from __future__ import annotations

from typing import Any, AsyncIterator, Mapping, Optional

import openai
from openai import AsyncOpenAI

from ..errors import BackendError, BackendTimeout, MalformedResponse, NetworkError
from ..schema import CompletionRequest, CompletionResponse, ModelPricing, TokenUsage
from .base import ApiBackendBase, TokenStream, status_error
from .providers import PROVIDER_CONFIGS, ProviderConfig


class OpenAIBackend(ApiBackendBase):
    """OpenAI Chat Completions 兼容后端

    支持:
    - OpenAI GPT 系列
    - Google Gemini (OpenAI 兼容端点)
    - 其他 OpenAI 兼容 API
    """

    def __init__(
        self,
        api_key: Optional[str],
        api_base: Optional[str] = None,
        *,
        config: Optional[ProviderConfig] = None,
        timeout: Optional[float] = None,
        default_max_tokens: int = ApiBackendBase.DEFAULT_MAX_TOKENS,
        pricing_overrides: Optional[Mapping[str, ModelPricing]] = None,
        client: Optional[Any] = None,
    ):
        super().__init__(
            config or PROVIDER_CONFIGS["openai"],
            api_key,
            api_base,
            timeout=timeout,
            default_max_tokens=default_max_tokens,
            pricing_overrides=pricing_overrides,
        )
        # OpenAI SDK 要求 api_key 非空，代理可不带凭证
        self.client = client or AsyncOpenAI(
            api_key=api_key or "not-needed",
            base_url=self.api_base,
            timeout=timeout,
            max_retries=0,
        )

    @property
    def max_tokens_param(self) -> str:
        # OpenAI 官方接口对推理模型只接受 max_completion_tokens
        return "max_completion_tokens" if self.name == "openai" else "max_tokens"

    def _build_params(self, request: CompletionRequest) -> dict[str, Any]:
        messages = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.append({"role": "user", "content": request.input})

        params: dict[str, Any] = {
            "model": self._resolve_model(request),
            "messages": messages,
        }
        if request.max_tokens:
            params[self.max_tokens_param] = request.max_tokens
        if request.temperature is not None:
            params["temperature"] = request.temperature
        return params

    def _map_error(self, error: Exception) -> BackendError:
        if isinstance(error, openai.APITimeoutError):
            return BackendTimeout(str(error), backend=self.name)
        if isinstance(error, openai.APIConnectionError):
            return NetworkError(str(error), backend=self.name)
        if isinstance(error, openai.APIStatusError):
            return status_error(error.status_code, str(error), error.response.headers, self.name)
        return MalformedResponse(str(error), backend=self.name)

    def _parse_response(self, response: Any, model: str) -> CompletionResponse:
        """解析 OpenAI 响应"""
        choices = getattr(response, "choices", None)
        if not choices:
            raise MalformedResponse(f"{self.name} response has no choices", backend=self.name)

        message = choices[0].message
        if message is None:
            raise MalformedResponse(f"{self.name} response has no message", backend=self.name)

        usage = TokenUsage()
        if getattr(response, "usage", None):
            usage = TokenUsage(
                input_tokens=response.usage.prompt_tokens or 0,
                output_tokens=response.usage.completion_tokens or 0,
            )

        return CompletionResponse(
            output=message.content or "",
            usage=usage,
            model=getattr(response, "model", None) or model,
            finish_reason=choices[0].finish_reason or "stop",
        )

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        params = self._build_params(request)
        try:
            response = await self.client.chat.completions.create(**params)
        except openai.APIError as e:
            raise self._map_error(e) from e
        return self._parse_response(response, params["model"])

    async def stream(self, request: CompletionRequest) -> TokenStream:
        params = self._build_params(request)
        usage = TokenUsage()
        return TokenStream(self._iter_chunks(params, usage), usage=usage, model=params["model"])

    async def _iter_chunks(self, params: dict[str, Any], usage: TokenUsage) -> AsyncIterator[str]:
        try:
            response = await self.client.chat.completions.create(
                **params,
                stream=True,
                stream_options={"include_usage": True},
            )
        except openai.APIError as e:
            raise self._map_error(e) from e

        try:
            async for chunk in response:
                if getattr(chunk, "usage", None):
                    usage.input_tokens = chunk.usage.prompt_tokens or 0
                    usage.output_tokens = chunk.usage.completion_tokens or 0
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                if delta is not None and delta.content:
                    yield delta.content
        except openai.APIError as e:
            raise self._map_error(e) from e
        finally:
            await response.close()

    async def aclose(self) -> None:
        await self.client.close()
