"""后端解析

根据 Agent 配置选择具体后端：
- cli Agent -> 子进程后端
- proxy Agent -> 代理后端
- anthropic / openai / google Agent -> 对应 HTTP API 后端
- command 是知名命令行工具（claude / gemini / codex）时，工具在 PATH 中则优先用子进程后端，
  否则退回对应厂商的 HTTP API 后端。每次调用只决定一次，降级重试不会改变选择。
"""

from __future__ import annotations

import logging
import os
import shutil
from typing import Callable, Dict, Optional

from ..config import Settings, env_secret_resolver
from ..schema import Agent, BackendKind
from .anthropic_backend import AnthropicBackend
from .base import BackendProvider
from .openai_backend import OpenAIBackend
from .process import ProcessBackend
from .providers import KNOWN_TOOLS, PROVIDER_CONFIGS
from .proxy import ProxyBackend

logger = logging.getLogger(__name__)

SecretResolver = Callable[[str], Optional[str]]


def known_tool(agent: Agent) -> Optional[str]:
    """Agent 的 command 是知名工具时返回工具名"""
    if not agent.command or agent.backend_kind == BackendKind.PROXY:
        return None
    tool = os.path.basename(agent.command)
    return tool if tool in KNOWN_TOOLS else None


class BackendFactory:
    """后端工厂

    API / 代理后端按 Provider 缓存复用，子进程后端每次新建。
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        resolve_secret: Optional[SecretResolver] = None,
        which: Callable[[str], Optional[str]] = shutil.which,
    ):
        self.settings = settings or Settings()
        self.resolve_secret = resolve_secret or env_secret_resolver
        self._which = which
        self._cache: Dict[str, BackendProvider] = {}

    def __call__(self, agent: Agent) -> BackendProvider:
        return self.resolve(agent)

    def resolve(self, agent: Agent) -> BackendProvider:
        """解析 Agent 对应的后端

        Raises:
            AuthMissing: API 后端缺少凭证
        """
        tool = known_tool(agent)
        if tool is not None:
            if self._which(agent.command):
                return self._process(agent)
            provider = agent.provider if agent.backend_kind == BackendKind.API else KNOWN_TOOLS[tool]
            logger.info(f"{agent.command} 不在 PATH 中，{agent.name} 改用 {provider} API")
            return self._api(provider)

        if agent.backend_kind == BackendKind.PROCESS:
            return self._process(agent)
        if agent.backend_kind == BackendKind.PROXY:
            return self._proxy()
        return self._api(agent.provider)

    def _process(self, agent: Agent) -> ProcessBackend:
        return ProcessBackend(agent.command, agent.args)

    def _proxy(self) -> BackendProvider:
        backend = self._cache.get("proxy")
        if backend is None:
            backend = ProxyBackend(
                self.settings.proxy.base_url,
                self.resolve_secret("proxy"),
                default_max_tokens=self.settings.defaults.max_tokens,
                pricing_overrides=self.settings.costs.pricing_overrides(),
            )
            self._cache["proxy"] = backend
        return backend

    def _api(self, provider: str) -> BackendProvider:
        backend = self._cache.get(provider)
        if backend is not None:
            return backend

        config = PROVIDER_CONFIGS[provider]
        kwargs = dict(
            default_max_tokens=self.settings.defaults.max_tokens,
            pricing_overrides=self.settings.costs.pricing_overrides(),
        )
        api_key = self.resolve_secret(provider)
        base_url = self.settings.base_url_for(provider)
        if provider == "anthropic":
            backend = AnthropicBackend(api_key, base_url, config=config, **kwargs)
        else:
            backend = OpenAIBackend(api_key, base_url, config=config, **kwargs)

        self._cache[provider] = backend
        return backend

    async def aclose(self) -> None:
        """关闭缓存的后端"""
        backends = list(self._cache.values())
        self._cache.clear()
        for backend in backends:
            await backend.aclose()
