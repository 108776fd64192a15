"""
后端 Provider 配置和价格表

支持的后端:
- Anthropic Claude (Messages API)
- OpenAI GPT (Chat Completions)
- Google Gemini (OpenAI 兼容端点)
- Proxy (任意 OpenAI 兼容代理，例如 LiteLLM)
- CLI (本地命令行工具)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from ..schema import BackendKind, ModelPricing


@dataclass
class ProviderConfig:
    """Provider 配置"""

    name: str
    display_name: str
    kind: BackendKind
    api_base: str = ""
    api_key_env: str = ""  # 环境变量名
    base_url_env: str = ""  # 覆盖 api_base 的环境变量名
    default_model: str = ""
    models: List[str] = field(default_factory=list)
    # USD / 百万 token: model -> (input, output)
    prices: Dict[str, Tuple[float, float]] = field(default_factory=dict)
    openai_compatible: bool = False
    requires_key: bool = True
    description: str = ""

    @property
    def pricing(self) -> Dict[str, ModelPricing]:
        return {
            model: ModelPricing(input_per_million=inp, output_per_million=out)
            for model, (inp, out) in self.prices.items()
        }

    @property
    def fallback_pricing(self) -> ModelPricing:
        """未知模型按最贵的已知价格计费"""
        if not self.prices:
            return ModelPricing()
        return ModelPricing(
            input_per_million=max(p[0] for p in self.prices.values()),
            output_per_million=max(p[1] for p in self.prices.values()),
        )


# Provider 配置注册表
PROVIDER_CONFIGS: Dict[str, ProviderConfig] = {
    "anthropic": ProviderConfig(
        name="anthropic",
        display_name="Anthropic Claude",
        kind=BackendKind.API,
        api_base="https://api.anthropic.com",
        api_key_env="ANTHROPIC_API_KEY",
        base_url_env="ANTHROPIC_BASE_URL",
        default_model="claude-sonnet-4-5-20250929",
        models=[
            "claude-opus-4-6",
            "claude-sonnet-4-5-20250929",
            "claude-haiku-4-5-20251001",
        ],
        prices={
            "claude-opus-4-6": (5.0, 25.0),
            "claude-sonnet-4-5-20250929": (3.0, 15.0),
            "claude-haiku-4-5-20251001": (1.0, 5.0),
        },
        description="Claude 系列模型",
    ),
    "openai": ProviderConfig(
        name="openai",
        display_name="OpenAI GPT",
        kind=BackendKind.API,
        api_base="https://api.openai.com/v1",
        api_key_env="OPENAI_API_KEY",
        base_url_env="OPENAI_BASE_URL",
        default_model="gpt-4o",
        models=["gpt-4o", "gpt-4o-mini", "o1"],
        prices={
            "gpt-4o": (2.5, 10.0),
            "gpt-4o-mini": (0.15, 0.6),
            "o1": (15.0, 60.0),
        },
        openai_compatible=True,
        description="GPT 系列模型",
    ),
    "google": ProviderConfig(
        name="google",
        display_name="Google Gemini",
        kind=BackendKind.API,
        api_base="https://generativelanguage.googleapis.com/v1beta/openai",
        api_key_env="GOOGLE_API_KEY",
        base_url_env="GOOGLE_BASE_URL",
        default_model="gemini-2.0-flash",
        models=["gemini-2.0-flash", "gemini-2.0-pro"],
        prices={
            "gemini-2.0-flash": (0.1, 0.4),
            "gemini-2.0-pro": (1.25, 10.0),
        },
        openai_compatible=True,
        description="Gemini 系列模型，经 OpenAI 兼容端点调用",
    ),
    "proxy": ProviderConfig(
        name="proxy",
        display_name="OpenAI-compatible proxy",
        kind=BackendKind.PROXY,
        api_base="http://localhost:4000/v1",
        api_key_env="ARMADA_PROXY_API_KEY",
        base_url_env="ARMADA_PROXY_URL",
        openai_compatible=True,
        requires_key=False,
        description="模型名原样透传，可带 vendor/ 前缀",
    ),
    "cli": ProviderConfig(
        name="cli",
        display_name="Local command",
        kind=BackendKind.PROCESS,
        requires_key=False,
        description="本地命令行工具，输入作为最后一个参数传入",
    ),
}

# 知名命令行工具 -> 对应的 API Provider
KNOWN_TOOLS: Dict[str, str] = {
    "claude": "anthropic",
    "gemini": "google",
    "codex": "openai",
}


def get_provider_config(name: str) -> Optional[ProviderConfig]:
    """获取 Provider 配置"""
    return PROVIDER_CONFIGS.get(name.lower())


def list_providers() -> List[str]:
    """列出所有支持的 Provider"""
    return list(PROVIDER_CONFIGS.keys())


def lookup_pricing(model: str) -> Optional[ModelPricing]:
    """跨 Provider 查找模型价格，忽略 vendor/ 前缀"""
    bare = model.split("/", 1)[-1]
    for config in PROVIDER_CONFIGS.values():
        if bare in config.prices:
            inp, out = config.prices[bare]
            return ModelPricing(input_per_million=inp, output_per_million=out)
    return None
