"""后端模块"""

from .anthropic_backend import AnthropicBackend
from .base import ApiBackendBase, BackendProvider, TokenStream
from .openai_backend import OpenAIBackend
from .process import ProcessBackend
from .providers import (
    KNOWN_TOOLS,
    PROVIDER_CONFIGS,
    ProviderConfig,
    get_provider_config,
    list_providers,
    lookup_pricing,
)
from .proxy import ProxyBackend

__all__ = [
    # Base
    "BackendProvider",
    "ApiBackendBase",
    "TokenStream",
    # Backends
    "AnthropicBackend",
    "OpenAIBackend",
    "ProxyBackend",
    "ProcessBackend",
    # Providers
    "ProviderConfig",
    "PROVIDER_CONFIGS",
    "KNOWN_TOOLS",
    "get_provider_config",
    "list_providers",
    "lookup_pricing",
]
