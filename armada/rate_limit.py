"""速率限制

滑动窗口 + 预约槽位：
每次准入都会拿到一个槽位时间，保证任意长度为 period 的窗口内槽位数不超过 max_calls。
- WAIT: 槽位在 max_wait 之内则睡到槽位时间，否则拒绝
- REJECT: 槽位不是立即可用就拒绝
等待中被取消的调用会归还槽位。时钟和 sleep 可注入，便于确定性测试。

使用示例:
    limiter = RateLimiter(parse_rate("2 per minute"))
    await limiter.acquire()
"""

from __future__ import annotations

import asyncio
import bisect
import logging
import re
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable, Dict, List, Optional

from .errors import AgentValidationError, RateLimited

if TYPE_CHECKING:
    from .schema import Agent

logger = logging.getLogger(__name__)

_UNITS: Dict[str, float] = {
    "s": 1.0,
    "sec": 1.0,
    "secs": 1.0,
    "second": 1.0,
    "seconds": 1.0,
    "m": 60.0,
    "min": 60.0,
    "mins": 60.0,
    "minute": 60.0,
    "minutes": 60.0,
    "h": 3600.0,
    "hr": 3600.0,
    "hrs": 3600.0,
    "hour": 3600.0,
    "hours": 3600.0,
}

_RATE_RE = re.compile(
    r"^\s*(\d+)\s*(?:/|per\b)\s*(?:(\d+(?:\.\d+)?)\s*)?([a-z]+)\s*$",
    re.IGNORECASE,
)


class RateLimitPolicy(str, Enum):
    """超额调用的处理策略"""

    WAIT = "wait"
    REJECT = "reject"


@dataclass(frozen=True)
class RateSpec:
    """速率: period 秒内最多 max_calls 次"""

    max_calls: int
    period: float

    def __str__(self) -> str:
        return f"{self.max_calls} per {self.period:g}s"


def parse_rate(spec: str) -> RateSpec:
    """解析速率字符串

    支持 "10/min", "1/sec", "60/hour", "2 per minute", "5 per 30 seconds"。

    Raises:
        AgentValidationError: 无法解析
    """
    match = _RATE_RE.match(spec or "")
    if not match:
        raise AgentValidationError(f"invalid rate spec: {spec!r}")

    count, multiplier, unit = match.groups()
    unit_seconds = _UNITS.get(unit.lower())
    if unit_seconds is None:
        raise AgentValidationError(f"invalid rate unit {unit!r} in {spec!r}")

    max_calls = int(count)
    period = unit_seconds * (float(multiplier) if multiplier else 1.0)
    if max_calls <= 0 or period <= 0:
        raise AgentValidationError(f"rate must be positive: {spec!r}")

    return RateSpec(max_calls=max_calls, period=period)


class RateLimiter:
    """滑动窗口限流器

    可被多个协程（以及线程）并发调用，槽位表由锁保护。
    """

    def __init__(
        self,
        spec: RateSpec,
        *,
        name: str = "",
        policy: RateLimitPolicy = RateLimitPolicy.WAIT,
        max_wait: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            spec: 速率
            name: 限流器名称（日志用）
            policy: 超额策略
            max_wait: WAIT 策略下的最长等待秒数，None 表示不设上限
            clock: 单调时钟
            sleep: 异步 sleep
        """
        self.spec = spec
        self.name = name
        self.policy = RateLimitPolicy(policy)
        self.max_wait = max_wait
        self._clock = clock
        self._sleep = sleep
        self._slots: List[float] = []
        self._lock = threading.Lock()

    def _prune(self, now: float) -> None:
        cutoff = now - self.spec.period
        index = bisect.bisect_right(self._slots, cutoff)
        if index:
            del self._slots[:index]

    def reserve(self) -> float:
        """预约一个槽位，返回槽位时间

        Raises:
            RateLimited: 按策略拒绝
        """
        with self._lock:
            now = self._clock()
            self._prune(now)

            slot = now
            if len(self._slots) >= self.spec.max_calls:
                slot = max(now, self._slots[-self.spec.max_calls] + self.spec.period)

            wait = slot - now
            if wait > 0:
                if self.policy == RateLimitPolicy.REJECT:
                    raise RateLimited(
                        f"rate limit {self.spec} reached for {self.name or 'limiter'}",
                        retry_after=wait,
                        backend=self.name or None,
                    )
                if self.max_wait is not None and wait > self.max_wait:
                    raise RateLimited(
                        f"rate limit {self.spec} reached for {self.name or 'limiter'}; "
                        f"wait {wait:.1f}s exceeds {self.max_wait:.1f}s",
                        retry_after=wait,
                        backend=self.name or None,
                    )

            bisect.insort(self._slots, slot)
            return slot

    def release(self, slot: float) -> None:
        """归还未使用的槽位"""
        with self._lock:
            index = bisect.bisect_left(self._slots, slot)
            if index < len(self._slots) and self._slots[index] == slot:
                del self._slots[index]

    async def acquire(self) -> float:
        """等待准入，返回等待的秒数"""
        slot = self.reserve()
        delay = slot - self._clock()
        if delay <= 0:
            return 0.0

        logger.debug(f"限流 {self.name}: 等待 {delay:.2f}s")
        try:
            await self._sleep(delay)
        except asyncio.CancelledError:
            self.release(slot)
            raise
        return delay

    @property
    def pending(self) -> int:
        """当前窗口内已预约的槽位数"""
        with self._lock:
            self._prune(self._clock())
            return len(self._slots)


class RateLimiterRegistry:
    """按后端（或 Agent 覆盖）维护限流器

    Agent 声明了 rate_limit 时使用独立的 "agent:<name>" 限流器，
    否则共享后端级限流器；未配置速率的后端不限流。
    """

    def __init__(
        self,
        defaults: Optional[Dict[str, str]] = None,
        *,
        policy: RateLimitPolicy = RateLimitPolicy.WAIT,
        max_wait: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.defaults = dict(defaults or {})
        self.policy = RateLimitPolicy(policy)
        self.max_wait = max_wait
        self._clock = clock
        self._sleep = sleep
        self._limiters: Dict[str, RateLimiter] = {}
        self._lock = threading.Lock()

    def get(self, backend_name: str, agent: Optional["Agent"] = None) -> Optional[RateLimiter]:
        """获取限流器，未配置时返回 None"""
        if agent is not None and agent.rate_limit:
            key, spec_text = f"agent:{agent.name}", agent.rate_limit
        else:
            key, spec_text = backend_name, self.defaults.get(backend_name)

        if not spec_text:
            return None

        with self._lock:
            limiter = self._limiters.get(key)
            if limiter is None:
                limiter = RateLimiter(
                    parse_rate(spec_text),
                    name=key,
                    policy=self.policy,
                    max_wait=self.max_wait,
                    clock=self._clock,
                    sleep=self._sleep,
                )
                self._limiters[key] = limiter
            return limiter

    async def acquire(self, backend_name: str, agent: Optional["Agent"] = None) -> float:
        """为一次调用申请准入"""
        limiter = self.get(backend_name, agent)
        if limiter is None:
            return 0.0
        return await limiter.acquire()
