"""pytest 配置"""

import sys
from pathlib import Path

import pytest

# 添加项目根目录到 Python 路径
ROOT_DIR = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT_DIR))

from armada.engine import ExecutionEngine  # noqa: E402
from armada.rate_limit import RateLimiterRegistry  # noqa: E402
from armada.schema import Agent  # noqa: E402


def count_words(text: str) -> int:
    """确定性的 token 计数：一个词一个 token"""
    return len(text.split())


@pytest.fixture
def make_engine():
    """创建使用固定后端的引擎"""

    def factory(backend=None, **kwargs):
        kwargs.setdefault("rate_limiters", RateLimiterRegistry())
        kwargs.setdefault("token_counter", count_words)
        if "backend_factory" not in kwargs:
            if isinstance(backend, dict):
                kwargs["backend_factory"] = lambda agent: backend[agent.name]
            else:
                kwargs["backend_factory"] = lambda agent: backend
        return ExecutionEngine(**kwargs)

    return factory


@pytest.fixture
def api_agent():
    """HTTP API Agent"""
    return Agent(name="reviewer", provider="anthropic", model="model-a", timeout=5)
