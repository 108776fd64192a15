"""HTTP API / 代理后端测试"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import anthropic
import httpx
import openai
import pytest

from armada.backends import (
    PROVIDER_CONFIGS,
    AnthropicBackend,
    OpenAIBackend,
    ProcessBackend,
    ProxyBackend,
    TokenStream,
    get_provider_config,
    list_providers,
    lookup_pricing,
)
from armada.backends.base import parse_retry_after, status_error
from armada.backends.factory import BackendFactory, known_tool
from armada.config import ProviderSettings, Settings
from armada.errors import (
    AuthMissing,
    BackendTimeout,
    InvalidRequest,
    MalformedResponse,
    NetworkError,
    RateLimited,
)
from armada.schema import Agent, BackendKind, CompletionRequest, ModelPricing

ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"
OPENAI_URL = "https://api.openai.com/v1/chat/completions"


def http_response(status_code, url, headers=None):
    return httpx.Response(status_code, headers=headers or {}, request=httpx.Request("POST", url))


class FakeMessageStream:
    """模拟 anthropic messages.stream() 上下文"""

    def __init__(self, texts, input_tokens=0, output_tokens=0):
        self.texts = texts
        self.usage = SimpleNamespace(input_tokens=input_tokens, output_tokens=output_tokens)
        self.exited = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.exited = True

    @property
    def text_stream(self):
        return self._texts()

    async def _texts(self):
        for text in self.texts:
            yield text

    async def get_final_message(self):
        return SimpleNamespace(usage=self.usage)


class FakeChunkStream:
    """模拟 openai 流式响应"""

    def __init__(self, chunks):
        self.chunks = chunks
        self.closed = False

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        for chunk in self.chunks:
            yield chunk

    async def close(self):
        self.closed = True


def openai_chunk(content=None, usage=None):
    choices = [] if content is None else [SimpleNamespace(delta=SimpleNamespace(content=content))]
    return SimpleNamespace(choices=choices, usage=usage)


class TestTokenStream:
    """输出流测试"""

    @staticmethod
    async def source(chunks, closed):
        try:
            for chunk in chunks:
                yield chunk
        finally:
            closed.append(True)

    @pytest.mark.asyncio
    async def test_collect(self):
        """测试读完整个流"""
        closed = []
        stream = TokenStream(self.source(["a", "", "b"], closed), model="m")
        assert await stream.collect() == "ab"
        assert closed == [True]

    @pytest.mark.asyncio
    async def test_single_consumer(self):
        """测试只能消费一次"""
        stream = TokenStream(self.source(["a"], []))
        await stream.collect()
        with pytest.raises(RuntimeError):
            await stream.collect()

    @pytest.mark.asyncio
    async def test_close_midway(self):
        """测试中途关闭释放数据源"""
        closed = []
        async with TokenStream(self.source(["a", "b", "c"], closed)) as stream:
            async for chunk in stream:
                assert chunk == "a"
                break
        assert closed == [True]
        assert stream.closed

    @pytest.mark.asyncio
    async def test_closed_before_read(self):
        """测试关闭后不能再读"""
        stream = TokenStream(self.source(["a"], []))
        await stream.cancel()
        with pytest.raises(RuntimeError):
            stream.__aiter__()


class TestStatusError:
    """HTTP 状态码映射测试"""

    @pytest.mark.parametrize(
        "status,expected",
        [
            (429, RateLimited),
            (401, AuthMissing),
            (403, AuthMissing),
            (408, BackendTimeout),
            (500, NetworkError),
            (503, NetworkError),
            (400, InvalidRequest),
            (404, InvalidRequest),
        ],
    )
    def test_mapping(self, status, expected):
        """测试状态码分类"""
        assert isinstance(status_error(status, "msg", backend="x"), expected)

    def test_retry_after(self):
        """测试 retry-after 头"""
        assert parse_retry_after({"retry-after": "7"}) == 7.0
        assert parse_retry_after({"retry-after": "soon"}) is None
        assert parse_retry_after(None) is None
        error = status_error(429, "slow", {"retry-after": "3"})
        assert error.retry_after == 3.0


class TestProviders:
    """Provider 配置测试"""

    def test_list_providers(self):
        """测试列出 Provider"""
        assert set(list_providers()) == {"anthropic", "openai", "google", "proxy", "cli"}

    def test_get_provider_config(self):
        """测试获取配置（不区分大小写）"""
        assert get_provider_config("Anthropic").name == "anthropic"
        assert get_provider_config("unknown") is None

    def test_lookup_pricing(self):
        """测试跨 Provider 查价"""
        pricing = lookup_pricing("openai/gpt-4o")
        assert pricing.input_per_million == 2.5
        assert lookup_pricing("mystery") is None

    def test_fallback_pricing_is_most_expensive(self):
        """测试未知模型按最高价计"""
        fallback = PROVIDER_CONFIGS["openai"].fallback_pricing
        assert fallback.input_per_million == 15.0
        assert fallback.output_per_million == 60.0


class TestAnthropicBackend:
    """Anthropic 后端测试"""

    def make_backend(self, **kwargs):
        client = MagicMock()
        client.close = AsyncMock()
        return AnthropicBackend("sk-test", client=client, **kwargs), client

    def test_missing_key(self):
        """测试缺少凭证"""
        with pytest.raises(AuthMissing):
            AnthropicBackend(None, client=MagicMock())

    @pytest.mark.asyncio
    async def test_complete(self):
        """测试一次性补全"""
        backend, client = self.make_backend()
        client.messages.create = AsyncMock(
            return_value=SimpleNamespace(
                content=[
                    SimpleNamespace(type="text", text="Hello"),
                    SimpleNamespace(type="tool_use", id="t1"),
                    SimpleNamespace(type="text", text=" world"),
                ],
                usage=SimpleNamespace(input_tokens=10, output_tokens=5),
                model="claude-haiku-4-5-20251001",
                stop_reason="end_turn",
            )
        )

        response = await backend.complete(
            CompletionRequest(
                system_prompt="Be terse.",
                input="hi",
                model="claude-haiku-4-5-20251001",
                max_tokens=100,
                temperature=0.2,
            )
        )

        assert response.output == "Hello world"
        assert response.usage.input_tokens == 10
        assert response.usage.output_tokens == 5
        assert response.finish_reason == "end_turn"
        params = client.messages.create.call_args.kwargs
        assert params["system"] == "Be terse."
        assert params["max_tokens"] == 100
        assert params["temperature"] == 0.2
        assert params["messages"] == [{"role": "user", "content": "hi"}]

    @pytest.mark.asyncio
    async def test_default_model_and_max_tokens(self):
        """测试默认模型和输出上限"""
        backend, client = self.make_backend(default_max_tokens=256)
        client.messages.create = AsyncMock(
            return_value=SimpleNamespace(content=[], usage=None, model=None, stop_reason=None)
        )

        response = await backend.complete(CompletionRequest(input="hi"))

        params = client.messages.create.call_args.kwargs
        assert params["model"] == PROVIDER_CONFIGS["anthropic"].default_model
        assert params["max_tokens"] == 256
        assert "system" not in params
        assert response.output == ""
        assert response.model == params["model"]

    @pytest.mark.asyncio
    async def test_malformed_response(self):
        """测试缺少 content 的响应"""
        backend, client = self.make_backend()
        client.messages.create = AsyncMock(return_value=SimpleNamespace(content=None))
        with pytest.raises(MalformedResponse):
            await backend.complete(CompletionRequest(input="hi"))

    @pytest.mark.asyncio
    async def test_rate_limit_error(self):
        """测试 429 映射为 RateLimited"""
        backend, client = self.make_backend()
        client.messages.create = AsyncMock(
            side_effect=anthropic.RateLimitError(
                "rate limited",
                response=http_response(429, ANTHROPIC_URL, {"retry-after": "7"}),
                body=None,
            )
        )
        with pytest.raises(RateLimited) as exc_info:
            await backend.complete(CompletionRequest(input="hi"))
        assert exc_info.value.retry_after == 7.0
        assert exc_info.value.backend == "anthropic"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error_cls,status,expected",
        [
            (anthropic.AuthenticationError, 401, AuthMissing),
            (anthropic.BadRequestError, 400, InvalidRequest),
            (anthropic.InternalServerError, 500, NetworkError),
        ],
    )
    async def test_status_errors(self, error_cls, status, expected):
        """测试其他状态码映射"""
        backend, client = self.make_backend()
        client.messages.create = AsyncMock(
            side_effect=error_cls("boom", response=http_response(status, ANTHROPIC_URL), body=None)
        )
        with pytest.raises(expected):
            await backend.complete(CompletionRequest(input="hi"))

    @pytest.mark.asyncio
    async def test_connection_errors(self):
        """测试连接错误和超时"""
        backend, client = self.make_backend()
        request = httpx.Request("POST", ANTHROPIC_URL)

        client.messages.create = AsyncMock(side_effect=anthropic.APITimeoutError(request=request))
        with pytest.raises(BackendTimeout):
            await backend.complete(CompletionRequest(input="hi"))

        client.messages.create = AsyncMock(side_effect=anthropic.APIConnectionError(request=request))
        with pytest.raises(NetworkError):
            await backend.complete(CompletionRequest(input="hi"))

    @pytest.mark.asyncio
    async def test_stream(self):
        """测试流式输出"""
        backend, client = self.make_backend()
        fake = FakeMessageStream(["Hel", "lo"], input_tokens=4, output_tokens=2)
        client.messages.stream = MagicMock(return_value=fake)

        stream = await backend.stream(CompletionRequest(input="hi", model="claude-opus-4-6"))
        assert await stream.collect() == "Hello"
        assert stream.usage.input_tokens == 4
        assert stream.usage.output_tokens == 2
        assert stream.model == "claude-opus-4-6"
        assert fake.exited

    @pytest.mark.asyncio
    async def test_stream_error(self):
        """测试流式错误映射"""
        backend, client = self.make_backend()
        client.messages.stream = MagicMock(
            side_effect=anthropic.APIConnectionError(request=httpx.Request("POST", ANTHROPIC_URL))
        )
        stream = await backend.stream(CompletionRequest(input="hi"))
        with pytest.raises(NetworkError):
            await stream.collect()

    def test_describe(self):
        """测试价格描述与覆盖"""
        override = ModelPricing(input_per_million=0.5, output_per_million=0.5)
        backend, _ = self.make_backend(pricing_overrides={"claude-opus-4-6": override})
        metadata = backend.describe()
        assert metadata.kind == BackendKind.API
        assert metadata.price_for("claude-opus-4-6") == override
        assert metadata.price_for("claude-sonnet-4-5-20250929").input_per_million == 3.0
        assert metadata.price_for("claude-next").input_per_million == 5.0

    @pytest.mark.asyncio
    async def test_aclose(self):
        """测试关闭客户端"""
        backend, client = self.make_backend()
        await backend.aclose()
        client.close.assert_awaited_once()


class TestOpenAIBackend:
    """OpenAI 兼容后端测试"""

    def make_backend(self, provider="openai", api_key="sk-test"):
        client = MagicMock()
        client.close = AsyncMock()
        backend = OpenAIBackend(api_key, config=PROVIDER_CONFIGS[provider], client=client)
        return backend, client

    @pytest.mark.asyncio
    async def test_complete(self):
        """测试一次性补全"""
        backend, client = self.make_backend()
        client.chat.completions.create = AsyncMock(
            return_value=SimpleNamespace(
                choices=[
                    SimpleNamespace(message=SimpleNamespace(content="Hi!"), finish_reason="stop")
                ],
                usage=SimpleNamespace(prompt_tokens=12, completion_tokens=3),
                model="gpt-4o",
            )
        )

        response = await backend.complete(
            CompletionRequest(system_prompt="sys", input="hello", max_tokens=50, temperature=0.0)
        )

        assert response.output == "Hi!"
        assert response.usage.input_tokens == 12
        assert response.usage.output_tokens == 3
        params = client.chat.completions.create.call_args.kwargs
        assert params["model"] == "gpt-4o"
        assert params["max_completion_tokens"] == 50
        assert params["temperature"] == 0.0
        assert params["messages"][0] == {"role": "system", "content": "sys"}

    def test_google_uses_max_tokens(self):
        """测试 Gemini 端点使用 max_tokens"""
        backend, _ = self.make_backend("google")
        params = backend._build_params(CompletionRequest(input="x", max_tokens=10))
        assert params["max_tokens"] == 10
        assert params["model"] == "gemini-2.0-flash"

    @pytest.mark.asyncio
    async def test_empty_choices(self):
        """测试没有 choices 的响应"""
        backend, client = self.make_backend()
        client.chat.completions.create = AsyncMock(return_value=SimpleNamespace(choices=[]))
        with pytest.raises(MalformedResponse):
            await backend.complete(CompletionRequest(input="hello"))

    @pytest.mark.asyncio
    async def test_error_mapping(self):
        """测试 SDK 错误映射"""
        backend, client = self.make_backend()
        request = httpx.Request("POST", OPENAI_URL)

        client.chat.completions.create = AsyncMock(side_effect=openai.APITimeoutError(request=request))
        with pytest.raises(BackendTimeout):
            await backend.complete(CompletionRequest(input="hello"))

        client.chat.completions.create = AsyncMock(
            side_effect=openai.RateLimitError(
                "slow down",
                response=http_response(429, OPENAI_URL, {"retry-after": "2"}),
                body=None,
            )
        )
        with pytest.raises(RateLimited) as exc_info:
            await backend.complete(CompletionRequest(input="hello"))
        assert exc_info.value.retry_after == 2.0

        client.chat.completions.create = AsyncMock(
            side_effect=openai.AuthenticationError(
                "bad key", response=http_response(401, OPENAI_URL), body=None
            )
        )
        with pytest.raises(AuthMissing):
            await backend.complete(CompletionRequest(input="hello"))

    @pytest.mark.asyncio
    async def test_stream(self):
        """测试流式输出与用量"""
        backend, client = self.make_backend()
        fake = FakeChunkStream(
            [
                openai_chunk("Hel"),
                openai_chunk(""),
                openai_chunk("lo"),
                openai_chunk(usage=SimpleNamespace(prompt_tokens=7, completion_tokens=2)),
            ]
        )
        client.chat.completions.create = AsyncMock(return_value=fake)

        stream = await backend.stream(CompletionRequest(input="hello"))
        assert await stream.collect() == "Hello"
        assert stream.usage.input_tokens == 7
        assert stream.usage.output_tokens == 2
        assert fake.closed
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["stream"] is True
        assert kwargs["stream_options"] == {"include_usage": True}

    @pytest.mark.asyncio
    async def test_stream_closed_early(self):
        """测试提前关闭流时关闭 HTTP 响应"""
        backend, client = self.make_backend()
        fake = FakeChunkStream([openai_chunk("a"), openai_chunk("b")])
        client.chat.completions.create = AsyncMock(return_value=fake)

        async with await backend.stream(CompletionRequest(input="hello")) as stream:
            async for _ in stream:
                break
        assert fake.closed


class TestProxyBackend:
    """代理后端测试"""

    def make_backend(self):
        client = MagicMock()
        client.close = AsyncMock()
        return ProxyBackend("http://localhost:4000/v1", client=client), client

    def test_no_key_required(self):
        """测试代理不需要凭证"""
        backend, _ = self.make_backend()
        assert backend.kind == BackendKind.PROXY
        assert backend.api_base == "http://localhost:4000/v1"

    @pytest.mark.asyncio
    async def test_model_passthrough(self):
        """测试模型名原样透传"""
        backend, client = self.make_backend()
        client.chat.completions.create = AsyncMock(
            return_value=SimpleNamespace(
                choices=[SimpleNamespace(message=SimpleNamespace(content="ok"), finish_reason=None)],
                usage=None,
            )
        )
        await backend.complete(
            CompletionRequest(input="x", model="anthropic/claude-haiku-4-5-20251001", max_tokens=5)
        )
        params = client.chat.completions.create.call_args.kwargs
        assert params["model"] == "anthropic/claude-haiku-4-5-20251001"
        assert params["max_tokens"] == 5

    @pytest.mark.asyncio
    async def test_model_required(self):
        """测试必须指定模型"""
        backend, client = self.make_backend()
        client.chat.completions.create = AsyncMock()
        with pytest.raises(InvalidRequest):
            await backend.complete(CompletionRequest(input="x"))
        client.chat.completions.create.assert_not_called()

    def test_describe(self):
        """测试代理价格表"""
        backend, _ = self.make_backend()
        metadata = backend.describe()
        assert "openai/gpt-4o" in metadata.models
        assert metadata.price_for("anthropic/claude-haiku-4-5-20251001").output_per_million == 5.0
        assert metadata.price_for("somebody/unknown").output_per_million == 60.0


class TestBackendFactory:
    """后端解析测试"""

    def make_factory(self, on_path=(), secret="key", settings=None):
        return BackendFactory(
            settings or Settings(),
            resolve_secret=lambda name: secret,
            which=lambda command: f"/usr/bin/{command}" if command in on_path else None,
        )

    def test_known_tool(self):
        """测试识别知名工具"""
        assert known_tool(Agent(name="a", provider="cli", command="/opt/bin/claude")) == "claude"
        assert known_tool(Agent(name="a", provider="cli", command="echo")) is None
        assert known_tool(Agent(name="a", provider="proxy", model="m", command="claude")) is None

    def test_cli_agent(self):
        """测试 cli Agent 使用子进程后端"""
        factory = self.make_factory()
        backend = factory(Agent(name="a", provider="cli", command="echo", args=["-n"]))
        assert isinstance(backend, ProcessBackend)
        assert backend.args == ["-n"]

    def test_known_tool_on_path(self):
        """测试工具在 PATH 中时优先子进程"""
        factory = self.make_factory(on_path=("claude",))
        backend = factory(Agent(name="a", provider="anthropic", command="claude"))
        assert isinstance(backend, ProcessBackend)

    def test_known_tool_missing_falls_back_to_api(self):
        """测试工具不在 PATH 中时退回 API"""
        factory = self.make_factory()
        backend = factory(Agent(name="a", provider="anthropic", command="claude"))
        assert isinstance(backend, AnthropicBackend)

    def test_cli_known_tool_missing_uses_vendor(self):
        """测试 cli Agent 的知名工具缺失时使用对应厂商"""
        factory = self.make_factory()
        backend = factory(Agent(name="a", provider="cli", command="gemini"))
        assert isinstance(backend, OpenAIBackend)
        assert backend.name == "google"

    def test_api_backend_cached(self):
        """测试 API 后端复用"""
        factory = self.make_factory()
        first = factory(Agent(name="a", provider="openai", model="gpt-4o"))
        second = factory(Agent(name="b", provider="openai", model="gpt-4o-mini"))
        assert first is second

    def test_proxy_agent(self):
        """测试代理 Agent"""
        factory = self.make_factory(secret=None)
        backend = factory(Agent(name="a", provider="proxy", model="openai/gpt-4o"))
        assert isinstance(backend, ProxyBackend)

    def test_missing_secret(self):
        """测试缺少凭证"""
        factory = self.make_factory(secret=None)
        with pytest.raises(AuthMissing):
            factory(Agent(name="a", provider="anthropic", model="m"))

    def test_base_url_override(self):
        """测试 base URL 覆盖"""
        settings = Settings(providers={"openai": ProviderSettings(base_url="http://gateway/v1")})
        factory = self.make_factory(settings=settings)
        backend = factory(Agent(name="a", provider="openai", model="gpt-4o"))
        assert backend.api_base == "http://gateway/v1"

    @pytest.mark.asyncio
    async def test_aclose(self):
        """测试关闭缓存的后端"""
        factory = self.make_factory()
        cached = MagicMock()
        cached.aclose = AsyncMock()
        factory._cache["anthropic"] = cached
        await factory.aclose()
        cached.aclose.assert_awaited_once()
        assert factory._cache == {}
