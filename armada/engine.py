"""执行引擎

以完整的可靠性语义运行一个 Agent：
1. 解析后端（每次调用决定一次）
2. 限流准入
3. 截止时间 = Agent.timeout，包含准入等待
4. complete 或 stream；超时或取消时中止请求 / 终止进程组
5. 调用前和流式过程中预测成本，越界前停止
6. 可重试错误沿模型降级链重试

使用示例:
    engine = ExecutionEngine(Settings.load())
    result = await engine.run(agent, "review this diff")
    if result.success:
        print(result.output)
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, List, Optional, Union

from .backends.base import BackendProvider
from .backends.factory import BackendFactory, SecretResolver
from .config import Settings
from .cost import COST_EPSILON, CostGuard, CostTracker, RunBudget, TokenCounter, min_budget
from .errors import (
    AgentValidationError,
    BackendError,
    BackendTimeout,
    CostLimitExceeded,
    RateLimited,
    RunCancelled,
    error_kind,
)
from .rate_limit import RateLimiterRegistry, RateLimitPolicy
from .retry import FallbackExecutor
from .schema import (
    Agent,
    AttemptRecord,
    BackendKind,
    CompletionRequest,
    CompletionResponse,
    ExecutionResult,
    RunStatus,
    RunSummary,
)
from .tokens import estimate_tokens

logger = logging.getLogger(__name__)

RecordRun = Callable[[RunSummary], Union[None, Awaitable[None]]]
ChunkCallback = Callable[[str], Union[None, Awaitable[None]]]
BackendResolver = Callable[[Agent], BackendProvider]

# 消息封装的额外 token
INPUT_OVERHEAD_TOKENS = 8


def status_for_error(error: BaseException) -> RunStatus:
    """错误 -> 运行终态"""
    if isinstance(error, (RunCancelled, asyncio.CancelledError)):
        return RunStatus.CANCELLED
    if isinstance(error, BackendTimeout):
        return RunStatus.TIMED_OUT
    if isinstance(error, CostLimitExceeded):
        return RunStatus.COST_LIMIT_EXCEEDED
    if isinstance(error, RateLimited):
        return RunStatus.RATE_LIMITED
    return RunStatus.FAILED


async def _maybe_await(value: Any) -> None:
    if inspect.isawaitable(value):
        await value


@dataclass
class _AttemptState:
    """单次尝试的可变状态，超时或取消后仍可读取部分结果"""

    guard: Optional[CostGuard] = None
    parts: List[str] = field(default_factory=list)
    chunk_count: int = 0

    @property
    def output(self) -> str:
        return "".join(self.parts)


@dataclass
class _AttemptOutcome:
    output: str
    input_tokens: int
    output_tokens: int
    cost: float
    chunk_count: int = 0


class ExecutionEngine:
    """执行引擎

    限流器、成本追踪器、后端工厂都通过构造函数显式传入，
    多个引擎实例之间互不影响。
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        resolve_secret: Optional[SecretResolver] = None,
        record_run: Optional[RecordRun] = None,
        rate_limiters: Optional[RateLimiterRegistry] = None,
        cost_tracker: Optional[CostTracker] = None,
        backend_factory: Optional[BackendResolver] = None,
        token_counter: TokenCounter = estimate_tokens,
    ):
        """
        Args:
            settings: 配置，默认使用内置默认值
            resolve_secret: 凭证解析函数 backend_name -> credential
            record_run: 运行摘要接收函数，每次运行调用一次，可为协程函数
            rate_limiters: 限流器注册表
            cost_tracker: 会话成本追踪器
            backend_factory: Agent -> BackendProvider
            token_counter: token 计数函数
        """
        self.settings = settings or Settings()
        self.backend_factory = backend_factory or BackendFactory(self.settings, resolve_secret)
        self.rate_limiters = rate_limiters or RateLimiterRegistry(
            self.settings.rate_limits.limits,
            policy=RateLimitPolicy(self.settings.rate_limits.policy),
            max_wait=self.settings.rate_limits.max_wait,
        )
        self.cost_tracker = cost_tracker or CostTracker(
            self.settings.costs.session_limit,
            self.settings.costs.agent_limits,
        )
        self.record_run = record_run
        self._count_tokens = token_counter

    async def run(
        self,
        agent: Agent,
        task_input: str,
        *,
        stream: bool = False,
        on_chunk: Optional[ChunkCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ExecutionResult:
        """运行一个 Agent

        后端失败不会抛出，而是体现在 ExecutionResult.status 上。
        取消运行所在的任务会中止当前尝试、记录 cancelled 并重新抛出 CancelledError。

        Args:
            agent: Agent 配置
            task_input: 任务输入
            stream: 是否流式调用
            on_chunk: 流式输出回调
            cancel_event: 置位后中止运行，结果为 cancelled

        Returns:
            ExecutionResult: 执行结果
        """
        start = time.monotonic()
        result = ExecutionResult(
            agent_name=agent.name,
            provider=agent.provider,
            model=agent.model,
            status=RunStatus.FAILED,
            started_at=datetime.now(),
            streamed=stream,
        )
        logger.info(f"运行 Agent {agent.name} ({agent.provider})")

        try:
            await self._execute(agent, task_input, result, stream, on_chunk, cancel_event)
        except asyncio.CancelledError:
            self._finish_error(result, RunCancelled("run cancelled"))
            raise
        finally:
            result.duration = time.monotonic() - start
            self._log_result(result)
            await self._record(result, task_input)

        return result

    async def _execute(
        self,
        agent: Agent,
        task_input: str,
        result: ExecutionResult,
        stream: bool,
        on_chunk: Optional[ChunkCallback],
        cancel_event: Optional[asyncio.Event],
    ) -> None:
        try:
            agent.validate_config()
            backend = self.backend_factory(agent)
        except (AgentValidationError, BackendError) as e:
            self._finish_error(result, e)
            return

        result.provider = backend.name
        models = agent.model_chain(backend.default_model)
        budget = RunBudget(agent.cost_limit)

        def on_retry(error: Exception, failed: str, following: str) -> None:
            logger.warning(f"{agent.name}: 模型 {failed} 失败 ({error_kind(error)}: {error})，降级到 {following}")

        executor = FallbackExecutor(models, on_retry=on_retry)

        async def attempt(model: str) -> _AttemptOutcome:
            return await self._attempt(
                agent, backend, model, task_input, result, budget, stream, on_chunk, cancel_event
            )

        try:
            outcome = await executor.execute(attempt)
        except Exception as e:
            self._finish_error(result, e)
            return

        result.status = RunStatus.SUCCESS
        result.output = outcome.output
        result.reason = None
        result.error_kind = None

    async def _attempt(
        self,
        agent: Agent,
        backend: BackendProvider,
        model: str,
        task_input: str,
        result: ExecutionResult,
        budget: RunBudget,
        stream: bool,
        on_chunk: Optional[ChunkCallback],
        cancel_event: Optional[asyncio.Event],
    ) -> _AttemptOutcome:
        record = AttemptRecord(model=model, status=RunStatus.FAILED)
        result.attempts.append(record)
        result.model = model
        state = _AttemptState()
        reservation = None
        attempt_start = time.monotonic()
        charged = False

        try:
            if cancel_event is not None and cancel_event.is_set():
                raise RunCancelled("run cancelled before start")

            request = CompletionRequest(
                system_prompt=agent.full_system_prompt(),
                input=task_input,
                model=model or None,
                temperature=agent.temperature,
            )

            pricing = backend.describe().price_for(model)
            limit = min_budget(budget.remaining, self.cost_tracker.remaining(agent.name))
            state.guard = CostGuard(
                pricing,
                limit,
                self._estimate_input(request),
                self._count_tokens,
                input_margin=self.settings.costs.input_estimate_margin,
            )
            state.guard.check_start()
            max_tokens = agent.max_tokens
            if max_tokens is None and backend.kind != BackendKind.PROCESS:
                max_tokens = self.settings.defaults.max_tokens
            request.max_tokens = state.guard.cap_max_tokens(max_tokens)
            reservation = self.cost_tracker.reserve(agent.name, state.guard.worst_case(request.max_tokens))

            outcome = await self._guarded(
                self._call(agent, backend, request, state, stream, on_chunk),
                agent.timeout,
                cancel_event,
            )
            # 厂商实际计数高于预估时不交付输出
            if limit is not None and outcome.cost > limit + COST_EPSILON:
                self._charge(record, result, budget, outcome.cost, outcome.input_tokens, outcome.output_tokens)
                charged = True
                raise CostLimitExceeded(
                    f"reported usage cost ${outcome.cost:.6f} exceeds budget ${limit:.6f}",
                    limit=limit,
                    projected=outcome.cost,
                )
            self._charge(record, result, budget, outcome.cost, outcome.input_tokens, outcome.output_tokens)
            record.status = RunStatus.SUCCESS
            result.chunk_count = outcome.chunk_count
            return outcome
        except BaseException as e:
            # 流式输出已被接收的部分按守卫计价
            if stream and state.parts and not charged:
                counted = backend.kind != BackendKind.PROCESS
                self._charge(
                    record,
                    result,
                    budget,
                    state.guard.cost,
                    state.guard.input_tokens if counted else 0,
                    state.guard.output_tokens if counted else 0,
                )
            record.status = status_for_error(e)
            record.error_kind = error_kind(e)
            record.reason = str(e) or record.error_kind
            result.chunk_count = state.chunk_count
            raise
        finally:
            record.duration = time.monotonic() - attempt_start
            if reservation is not None:
                self.cost_tracker.settle(reservation, record.cost)

    async def _call(
        self,
        agent: Agent,
        backend: BackendProvider,
        request: CompletionRequest,
        state: _AttemptState,
        stream: bool,
        on_chunk: Optional[ChunkCallback],
    ) -> _AttemptOutcome:
        """准入 + 调用，整体受截止时间约束"""
        waited = await self.rate_limiters.acquire(backend.name, agent)
        if waited:
            logger.info(f"{agent.name}: 限流等待 {waited:.2f}s")

        guard = state.guard
        if not stream:
            response = await backend.complete(request)
            return self._outcome_from_response(backend, response, guard)

        token_stream = await backend.stream(request)
        async with token_stream:
            async for chunk in token_stream:
                if not guard.admit(chunk):
                    raise CostLimitExceeded(
                        f"stream stopped at ${guard.cost:.6f}; next chunk would exceed "
                        f"budget ${guard.budget:.6f}",
                        limit=guard.budget,
                        projected=guard.cost,
                        partial_output=state.output,
                    )
                state.parts.append(chunk)
                state.chunk_count += 1
                if on_chunk is not None:
                    await _maybe_await(on_chunk(chunk))

        usage = token_stream.usage
        if backend.kind == BackendKind.PROCESS:
            input_tokens = output_tokens = 0
        elif usage.input_tokens or usage.output_tokens:
            input_tokens, output_tokens = usage.input_tokens, usage.output_tokens
        else:
            input_tokens, output_tokens = guard.input_tokens, guard.output_tokens

        return _AttemptOutcome(
            output=state.output,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost=guard.pricing.cost(input_tokens, output_tokens),
            chunk_count=state.chunk_count,
        )

    def _outcome_from_response(
        self,
        backend: BackendProvider,
        response: CompletionResponse,
        guard: CostGuard,
    ) -> _AttemptOutcome:
        usage = response.usage
        if backend.kind == BackendKind.PROCESS:
            input_tokens = output_tokens = 0
        elif usage.input_tokens or usage.output_tokens:
            input_tokens, output_tokens = usage.input_tokens, usage.output_tokens
        else:
            input_tokens, output_tokens = guard.input_tokens, self._count_tokens(response.output)
        return _AttemptOutcome(
            output=response.output,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost=guard.pricing.cost(input_tokens, output_tokens),
        )

    async def _guarded(
        self,
        coro: Awaitable[_AttemptOutcome],
        timeout: float,
        cancel_event: Optional[asyncio.Event],
    ) -> _AttemptOutcome:
        """在截止时间和取消信号下运行一次尝试

        超时或取消时先取消内部任务并等待其清理完成（HTTP 请求中止、进程组终止）。
        """
        task = asyncio.ensure_future(coro)
        waiters = {task}
        cancel_waiter = None
        if cancel_event is not None:
            cancel_waiter = asyncio.ensure_future(cancel_event.wait())
            waiters.add(cancel_waiter)

        try:
            done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        if cancel_waiter is not None and cancel_waiter in done:
            raise RunCancelled("run cancelled")
        raise BackendTimeout(f"timed out after {timeout:g}s")

    def _estimate_input(self, request: CompletionRequest) -> int:
        return (
            self._count_tokens(request.system_prompt)
            + self._count_tokens(request.input)
            + INPUT_OVERHEAD_TOKENS
        )

    @staticmethod
    def _charge(
        record: AttemptRecord,
        result: ExecutionResult,
        budget: RunBudget,
        cost: float,
        input_tokens: int,
        output_tokens: int,
    ) -> None:
        record.cost = cost
        record.input_tokens = input_tokens
        record.output_tokens = output_tokens
        result.cost += cost
        result.input_tokens += input_tokens
        result.output_tokens += output_tokens
        budget.charge(cost)

    @staticmethod
    def _finish_error(result: ExecutionResult, error: BaseException) -> None:
        result.status = status_for_error(error)
        result.error_kind = error_kind(error)
        result.reason = str(error) or result.error_kind
        if isinstance(error, CostLimitExceeded):
            result.output = error.partial_output
        else:
            result.output = ""

    @staticmethod
    def _log_result(result: ExecutionResult) -> None:
        summary = (
            f"{result.agent_name} [{result.model}] {result.status.value} "
            f"tokens={result.input_tokens}+{result.output_tokens} "
            f"cost=${result.cost:.4f} duration={result.duration:.2f}s"
        )
        if result.status in (RunStatus.SUCCESS, RunStatus.CANCELLED):
            logger.info(summary)
        else:
            logger.warning(f"{summary}: {result.reason}")

    async def _record(self, result: ExecutionResult, task_input: str) -> None:
        if self.record_run is None:
            return
        try:
            await _maybe_await(self.record_run(RunSummary.from_result(result, task_input)))
        except Exception as e:
            logger.error(f"记录运行失败: {e}")

    async def aclose(self) -> None:
        """释放后端连接"""
        closer = getattr(self.backend_factory, "aclose", None)
        if closer is not None:
            await closer()
