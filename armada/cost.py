"""成本追踪

成本上限是硬上限：在开始或继续工作之前检查，而不是事后退款。
- RunBudget: 单次运行（含所有降级尝试）的预算
- CostGuard: 单次尝试内逐块计价，流式输出在越界前停止
- CostTracker: 会话级累计，支持全局上限和按 Agent 上限，并发运行先预约再结算
"""

from __future__ import annotations

import itertools
import logging
import math
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .errors import CostLimitExceeded
from .schema import ModelPricing

logger = logging.getLogger(__name__)

TokenCounter = Callable[[str], int]

# 美元比较的浮点误差
COST_EPSILON = 1e-9


def min_budget(*budgets: Optional[float]) -> Optional[float]:
    """取多个预算中最紧的一个，全部为 None 时返回 None"""
    values = [b for b in budgets if b is not None]
    if not values:
        return None
    return max(0.0, min(values))


class RunBudget:
    """单次运行的预算"""

    def __init__(self, limit: Optional[float] = None):
        self.limit = limit
        self.spent = 0.0

    @property
    def remaining(self) -> Optional[float]:
        if self.limit is None:
            return None
        return max(0.0, self.limit - self.spent)

    def charge(self, cost: float) -> None:
        self.spent += cost


class CostGuard:
    """单次尝试的成本守卫

    以预估的输入 token 起步，每接收一块输出前先计价，
    接收后会超过预算的块被拒绝。

    厂商的输入计数可能高于本地估算，预算检查按 input_margin 放大后的
    输入 token 计算，为分词差异留出余量。
    """

    def __init__(
        self,
        pricing: ModelPricing,
        budget: Optional[float],
        input_tokens: int,
        token_counter: TokenCounter,
        input_margin: float = 1.0,
    ):
        self.pricing = pricing
        self.budget = budget
        self.input_tokens = input_tokens
        self.input_margin = max(1.0, input_margin)
        self.output_tokens = 0
        self._count = token_counter

    @property
    def cost(self) -> float:
        return self.pricing.cost(self.input_tokens, self.output_tokens)

    @property
    def reserved_input_tokens(self) -> int:
        """按余量放大后的输入 token"""
        return math.ceil(self.input_tokens * self.input_margin)

    def check_start(self) -> None:
        """开始前检查输入成本

        Raises:
            CostLimitExceeded: 仅输入就超出预算
        """
        if self.budget is None:
            return
        projected = self.pricing.cost(self.reserved_input_tokens, 0)
        if projected > self.budget:
            raise CostLimitExceeded(
                f"projected input cost ${projected:.6f} exceeds budget ${self.budget:.6f}",
                limit=self.budget,
                projected=projected,
            )

    def cap_max_tokens(self, max_tokens: Optional[int]) -> Optional[int]:
        """把输出 token 上限压到预算以内

        Raises:
            CostLimitExceeded: 预算连一个输出 token 都不够
        """
        if self.budget is None:
            return max_tokens
        affordable = self.pricing.affordable_output_tokens(self.budget, self.reserved_input_tokens)
        if affordable is None:
            return max_tokens
        if affordable <= 0:
            raise CostLimitExceeded(
                f"budget ${self.budget:.6f} leaves no room for output",
                limit=self.budget,
                projected=self.cost,
            )
        if max_tokens is None:
            return affordable
        return min(max_tokens, affordable)

    def admit(self, chunk: str) -> bool:
        """计价一块输出，超出预算返回 False（不计入）"""
        tokens = self._count(chunk)
        projected = self.pricing.cost(self.reserved_input_tokens, self.output_tokens + tokens)
        if self.budget is not None and projected > self.budget + COST_EPSILON:
            return False
        self.output_tokens += tokens
        return True

    def worst_case(self, max_tokens: Optional[int]) -> float:
        """按输出上限计算的最坏成本"""
        return self.pricing.cost(self.reserved_input_tokens, max_tokens or 0)


@dataclass
class Reservation:
    """会话预算预约"""

    id: int
    agent_name: str
    amount: float


class CostTracker:
    """会话级成本追踪

    可被多个并发运行共享，所有读写都在锁内完成。
    """

    def __init__(
        self,
        session_limit: Optional[float] = None,
        agent_limits: Optional[Dict[str, float]] = None,
    ):
        """
        Args:
            session_limit: 会话总成本上限（USD）
            agent_limits: 按 Agent 名称的会话成本上限（USD）
        """
        self.session_limit = session_limit
        self.agent_limits = dict(agent_limits or {})
        self._lock = threading.Lock()
        self._session_total = 0.0
        self._agent_totals: Dict[str, float] = {}
        self._reserved: Dict[int, Reservation] = {}
        self._ids = itertools.count(1)

    def _reserved_total(self, agent_name: Optional[str] = None) -> float:
        return sum(
            r.amount
            for r in self._reserved.values()
            if agent_name is None or r.agent_name == agent_name
        )

    def _remaining_locked(self, agent_name: str) -> Optional[float]:
        budgets = []
        if self.session_limit is not None:
            budgets.append(self.session_limit - self._session_total - self._reserved_total())
        agent_limit = self.agent_limits.get(agent_name)
        if agent_limit is not None:
            budgets.append(
                agent_limit
                - self._agent_totals.get(agent_name, 0.0)
                - self._reserved_total(agent_name)
            )
        return min_budget(*budgets)

    def remaining(self, agent_name: str) -> Optional[float]:
        """会话层面该 Agent 还可花费的金额，无上限时返回 None"""
        with self._lock:
            return self._remaining_locked(agent_name)

    def reserve(self, agent_name: str, amount: float) -> Reservation:
        """预约预算

        Raises:
            CostLimitExceeded: 预约会超过会话上限
        """
        with self._lock:
            remaining = self._remaining_locked(agent_name)
            if remaining is not None and amount > remaining + COST_EPSILON:
                raise CostLimitExceeded(
                    f"session budget exhausted for {agent_name}: "
                    f"needs ${amount:.6f}, ${remaining:.6f} left",
                    limit=remaining,
                    projected=amount,
                )
            reservation = Reservation(id=next(self._ids), agent_name=agent_name, amount=amount)
            self._reserved[reservation.id] = reservation
            return reservation

    def settle(self, reservation: Reservation, actual: float) -> None:
        """用实际成本结算预约"""
        with self._lock:
            self._reserved.pop(reservation.id, None)
            self._add_locked(reservation.agent_name, actual)

    def _add_locked(self, agent_name: str, cost: float) -> None:
        if cost <= 0:
            return
        self._session_total += cost
        self._agent_totals[agent_name] = self._agent_totals.get(agent_name, 0.0) + cost
        logger.debug(f"成本 {agent_name}: +${cost:.6f}，会话累计 ${self._session_total:.6f}")

    @property
    def session_total(self) -> float:
        with self._lock:
            return self._session_total

    def agent_total(self, agent_name: str) -> float:
        with self._lock:
            return self._agent_totals.get(agent_name, 0.0)

    def get_stats(self) -> Dict[str, object]:
        """获取统计信息"""
        with self._lock:
            return {
                "session_total": self._session_total,
                "session_limit": self.session_limit,
                "agents": dict(self._agent_totals),
                "reserved": self._reserved_total(),
            }

    def reset(self) -> None:
        with self._lock:
            self._session_total = 0.0
            self._agent_totals.clear()
            self._reserved.clear()
