"""Anthropic 后端"""

from __future__ import annotations

from typing import Any, AsyncIterator, Mapping, Optional

import anthropic
from anthropic import AsyncAnthropic

from ..errors import BackendError, BackendTimeout, MalformedResponse, NetworkError
from ..schema import CompletionRequest, CompletionResponse, ModelPricing, TokenUsage
from .base import ApiBackendBase, TokenStream, status_error
from .providers import PROVIDER_CONFIGS, ProviderConfig


class AnthropicBackend(ApiBackendBase):
    """Anthropic Claude Messages API"""

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
            config or PROVIDER_CONFIGS["anthropic"],
            api_key,
            api_base,
            timeout=timeout,
            default_max_tokens=default_max_tokens,
            pricing_overrides=pricing_overrides,
        )
        # 重试由执行引擎的降级链负责
        self.client = client or AsyncAnthropic(
            api_key=api_key,
            base_url=self.api_base,
            timeout=timeout,
            max_retries=0,
        )

    def _build_params(self, request: CompletionRequest) -> dict[str, Any]:
        params: dict[str, Any] = {
            "model": self._resolve_model(request),
            "max_tokens": request.max_tokens or self.default_max_tokens,
            "messages": [{"role": "user", "content": request.input}],
        }
        if request.system_prompt:
            params["system"] = request.system_prompt
        if request.temperature is not None:
            params["temperature"] = request.temperature
        return params

    def _map_error(self, error: Exception) -> BackendError:
        if isinstance(error, anthropic.APITimeoutError):
            return BackendTimeout(str(error), backend=self.name)
        if isinstance(error, anthropic.APIConnectionError):
            return NetworkError(str(error), backend=self.name)
        if isinstance(error, anthropic.APIStatusError):
            return status_error(error.status_code, str(error), error.response.headers, self.name)
        return MalformedResponse(str(error), backend=self.name)

    def _parse_response(self, response: Any, model: str) -> CompletionResponse:
        """解析 Anthropic 响应"""
        content = getattr(response, "content", None)
        if content is None:
            raise MalformedResponse("anthropic response has no content", backend=self.name)

        text_content = ""
        for block in content:
            if getattr(block, "type", None) == "text":
                text_content += block.text

        usage = TokenUsage()
        if getattr(response, "usage", None) is not None:
            usage = TokenUsage(
                input_tokens=response.usage.input_tokens or 0,
                output_tokens=response.usage.output_tokens or 0,
            )

        return CompletionResponse(
            output=text_content,
            usage=usage,
            model=getattr(response, "model", None) or model,
            finish_reason=getattr(response, "stop_reason", None) or "stop",
        )

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        params = self._build_params(request)
        try:
            response = await self.client.messages.create(**params)
        except anthropic.APIError as e:
            raise self._map_error(e) from e
        return self._parse_response(response, params["model"])

    async def stream(self, request: CompletionRequest) -> TokenStream:
        params = self._build_params(request)
        usage = TokenUsage()
        return TokenStream(self._iter_chunks(params, usage), usage=usage, model=params["model"])

    async def _iter_chunks(self, params: dict[str, Any], usage: TokenUsage) -> AsyncIterator[str]:
        try:
            async with self.client.messages.stream(**params) as stream:
                async for text in stream.text_stream:
                    yield text
                message = await stream.get_final_message()
                if getattr(message, "usage", None) is not None:
                    usage.input_tokens = message.usage.input_tokens or 0
                    usage.output_tokens = message.usage.output_tokens or 0
        except anthropic.APIError as e:
            raise self._map_error(e) from e

    async def aclose(self) -> None:
        await self.client.close()
