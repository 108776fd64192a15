"""代理后端

经单个 OpenAI 兼容端点（例如 LiteLLM）转发，模型名原样透传，
可以带 vendor 前缀（如 "anthropic/claude-sonnet-4-5-20250929"）。
"""

from __future__ import annotations

from typing import Any, Mapping, Optional

from ..schema import BackendMetadata, CompletionRequest, ModelPricing
from ..errors import InvalidRequest
from .openai_backend import OpenAIBackend
from .providers import PROVIDER_CONFIGS


class ProxyBackend(OpenAIBackend):
    """OpenAI 兼容代理后端"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        default_max_tokens: int = OpenAIBackend.DEFAULT_MAX_TOKENS,
        pricing_overrides: Optional[Mapping[str, ModelPricing]] = None,
        client: Optional[Any] = None,
    ):
        super().__init__(
            api_key,
            base_url,
            config=PROVIDER_CONFIGS["proxy"],
            timeout=timeout,
            default_max_tokens=default_max_tokens,
            pricing_overrides=pricing_overrides,
            client=client,
        )

    def _resolve_model(self, request: CompletionRequest) -> str:
        if not request.model:
            raise InvalidRequest("proxy: model is required", backend=self.name)
        return request.model

    def describe(self) -> BackendMetadata:
        # 代理本身没有价格表，按去掉前缀后的模型名查各厂商价格
        pricing: dict[str, ModelPricing] = {}
        models: list[str] = []
        fallback = ModelPricing()
        for config in PROVIDER_CONFIGS.values():
            if config.kind == self.kind or not config.prices:
                continue
            models.extend(f"{config.name}/{m}" for m in config.models)
            pricing.update(config.pricing)
            worst = config.fallback_pricing
            fallback = ModelPricing(
                input_per_million=max(fallback.input_per_million, worst.input_per_million),
                output_per_million=max(fallback.output_per_million, worst.output_per_million),
            )
        pricing.update(self.pricing_overrides)
        return BackendMetadata(
            name=self.name,
            kind=self.kind,
            models=models,
            pricing=pricing,
            default_pricing=fallback,
        )
