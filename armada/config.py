"""配置管理

配置文件查找顺序: ./config/armada.yaml > ~/.armada/config.yaml，
找不到时使用默认值，最后应用环境变量覆盖。

示例:
```yaml
providers:
  anthropic:
    base_url: https://api.anthropic.com
proxy:
  base_url: http://localhost:4000/v1
rate_limits:
  policy: wait
  max_wait: 30
  limits:
    anthropic: 50/min
costs:
  session_limit: 5.0
  agent_limits:
    reviewer: 0.5
  pricing:
    my-finetune: {input: 2.0, output: 8.0}
logging:
  level: INFO
```
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from .backends.providers import PROVIDER_CONFIGS
from .schema import ModelPricing

DEFAULT_RATE_LIMITS: Dict[str, str] = {
    "anthropic": "50/min",
    "openai": "60/min",
    "google": "60/min",
    "proxy": "100/min",
}


@dataclass
class ProviderSettings:
    """单个 Provider 的覆盖配置"""

    base_url: Optional[str] = None


@dataclass
class ProxySettings:
    """代理配置"""

    base_url: str = "http://localhost:4000/v1"


@dataclass
class RateLimitSettings:
    """限流配置"""

    policy: str = "wait"  # wait, reject
    max_wait: Optional[float] = None  # 秒
    limits: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_RATE_LIMITS))


@dataclass
class CostSettings:
    """成本配置（USD）"""

    session_limit: Optional[float] = None
    agent_limits: Dict[str, float] = field(default_factory=dict)
    # 预算检查时输入 token 估算的放大倍数
    input_estimate_margin: float = 1.5
    # model -> {"input": x, "output": y}，单位 USD / 百万 token
    pricing: Dict[str, Dict[str, float]] = field(default_factory=dict)

    def pricing_overrides(self) -> Dict[str, ModelPricing]:
        return {
            model: ModelPricing(
                input_per_million=float(prices.get("input", 0.0)),
                output_per_million=float(prices.get("output", 0.0)),
            )
            for model, prices in self.pricing.items()
        }


@dataclass
class DefaultsSettings:
    """执行默认值"""

    max_tokens: int = 4096
    max_concurrent_agents: int = 5


@dataclass
class LoggingSettings:
    """日志配置"""

    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass
class Settings:
    """主配置"""

    providers: Dict[str, ProviderSettings] = field(default_factory=dict)
    proxy: ProxySettings = field(default_factory=ProxySettings)
    rate_limits: RateLimitSettings = field(default_factory=RateLimitSettings)
    costs: CostSettings = field(default_factory=CostSettings)
    defaults: DefaultsSettings = field(default_factory=DefaultsSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)

    @classmethod
    def load(
        cls,
        config_path: str | Path | None = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "Settings":
        """加载配置"""
        if config_path is None:
            config_path = cls._find_config_file()

        if config_path is None:
            settings = cls()
        elif not Path(config_path).exists():
            raise FileNotFoundError(f"配置文件不存在: {config_path}")
        else:
            settings = cls.from_yaml(config_path)

        return settings.apply_env(os.environ if environ is None else environ)

    @classmethod
    def _find_config_file(cls) -> Path | None:
        """查找配置文件"""
        # 优先级: 当前目录 > 用户目录
        search_paths = [
            Path.cwd() / "config" / "armada.yaml",
            Path.home() / ".armada" / "config.yaml",
        ]

        for path in search_paths:
            if path.exists():
                return path

        return None

    @classmethod
    def from_yaml(cls, config_path: str | Path) -> "Settings":
        """从 YAML 文件加载配置"""
        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f)

        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ValueError(f"配置文件格式错误: {config_path}")

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Settings":
        """从字典创建配置"""
        providers = {
            name: ProviderSettings(base_url=(item or {}).get("base_url"))
            for name, item in (data.get("providers") or {}).items()
        }

        proxy_data = data.get("proxy") or {}
        proxy = ProxySettings(base_url=proxy_data.get("base_url", ProxySettings.base_url))

        rate_data = data.get("rate_limits") or {}
        limits = dict(DEFAULT_RATE_LIMITS)
        limits.update({k: str(v) for k, v in (rate_data.get("limits") or {}).items() if v})
        rate_limits = RateLimitSettings(
            policy=rate_data.get("policy", "wait"),
            max_wait=rate_data.get("max_wait"),
            limits=limits,
        )

        cost_data = data.get("costs") or {}
        costs = CostSettings(
            session_limit=cost_data.get("session_limit"),
            agent_limits={k: float(v) for k, v in (cost_data.get("agent_limits") or {}).items()},
            pricing=dict(cost_data.get("pricing") or {}),
            input_estimate_margin=float(cost_data.get("input_estimate_margin", 1.5)),
        )

        defaults_data = data.get("defaults") or {}
        defaults = DefaultsSettings(
            max_tokens=defaults_data.get("max_tokens", 4096),
            max_concurrent_agents=defaults_data.get("max_concurrent_agents", 5),
        )

        logging_data = data.get("logging") or {}
        logging_settings = LoggingSettings(
            level=str(logging_data.get("level", "INFO")).upper(),
            format=logging_data.get("format", LoggingSettings.format),
        )

        return cls(
            providers=providers,
            proxy=proxy,
            rate_limits=rate_limits,
            costs=costs,
            defaults=defaults,
            logging=logging_settings,
        )

    def apply_env(self, environ: Mapping[str, str]) -> "Settings":
        """应用环境变量覆盖"""
        for name, config in PROVIDER_CONFIGS.items():
            if name == "proxy" or not config.base_url_env:
                continue
            value = environ.get(config.base_url_env)
            if value:
                self.providers.setdefault(name, ProviderSettings()).base_url = value

        if environ.get("ARMADA_PROXY_URL"):
            self.proxy.base_url = environ["ARMADA_PROXY_URL"]
        if environ.get("ARMADA_RATE_LIMIT_POLICY"):
            self.rate_limits.policy = environ["ARMADA_RATE_LIMIT_POLICY"].lower()
        if environ.get("ARMADA_SESSION_COST_LIMIT"):
            self.costs.session_limit = float(environ["ARMADA_SESSION_COST_LIMIT"])
        if environ.get("ARMADA_LOG_LEVEL"):
            self.logging.level = environ["ARMADA_LOG_LEVEL"].upper()
        return self

    def base_url_for(self, provider: str) -> Optional[str]:
        """Provider 的 base URL，未覆盖时返回 None"""
        if provider == "proxy":
            return self.proxy.base_url
        item = self.providers.get(provider)
        return item.base_url if item else None


def env_secret_resolver(backend_name: str) -> Optional[str]:
    """从环境变量读取凭证"""
    config = PROVIDER_CONFIGS.get(backend_name)
    if config is None or not config.api_key_env:
        return None
    return os.environ.get(config.api_key_env) or None


def configure_logging(settings: Optional[LoggingSettings] = None) -> None:
    """按配置设置 armada 日志"""
    settings = settings or LoggingSettings()
    logger = logging.getLogger("armada")
    logger.setLevel(settings.level)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(settings.format))
        logger.addHandler(handler)
