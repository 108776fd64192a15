"""成本追踪测试"""

import pytest

from armada.cost import CostGuard, CostTracker, RunBudget, min_budget
from armada.errors import CostLimitExceeded
from armada.schema import ModelPricing


def per_char(text: str) -> int:
    return len(text)


# 每个 token 1 美元，方便读数
DOLLAR_PER_TOKEN = ModelPricing(input_per_million=1_000_000, output_per_million=1_000_000)


def spend(tracker, agent_name, cost):
    tracker.settle(tracker.reserve(agent_name, 0.0), cost)


class TestMinBudget:
    """预算合并测试"""

    def test_all_none(self):
        """测试没有预算"""
        assert min_budget(None, None) is None

    def test_tightest(self):
        """测试取最紧的预算"""
        assert min_budget(None, 3.0, 1.5) == 1.5

    def test_negative_clamped(self):
        """测试负数预算截为 0"""
        assert min_budget(-1.0) == 0.0


class TestRunBudget:
    """单次运行预算测试"""

    def test_unlimited(self):
        """测试无上限"""
        assert RunBudget().remaining is None

    def test_charge(self):
        """测试扣费"""
        budget = RunBudget(1.0)
        budget.charge(0.4)
        assert budget.remaining == pytest.approx(0.6)
        budget.charge(1.0)
        assert budget.remaining == 0.0


class TestCostGuard:
    """单次尝试成本守卫测试"""

    def test_check_start_over_budget(self):
        """测试仅输入就超预算"""
        guard = CostGuard(DOLLAR_PER_TOKEN, 2.0, 5, per_char)
        with pytest.raises(CostLimitExceeded) as exc_info:
            guard.check_start()
        assert exc_info.value.projected == pytest.approx(5.0)

    def test_check_start_unlimited(self):
        """测试无预算不检查"""
        CostGuard(DOLLAR_PER_TOKEN, None, 5, per_char).check_start()

    def test_cap_max_tokens(self):
        """测试输出上限被压到预算内"""
        guard = CostGuard(DOLLAR_PER_TOKEN, 5.0, 2, per_char)
        assert guard.cap_max_tokens(100) == 3
        assert guard.cap_max_tokens(2) == 2
        assert guard.cap_max_tokens(None) == 3

    def test_cap_max_tokens_no_room(self):
        """测试预算不够任何输出"""
        guard = CostGuard(DOLLAR_PER_TOKEN, 2.0, 2, per_char)
        with pytest.raises(CostLimitExceeded):
            guard.cap_max_tokens(10)

    def test_cap_max_tokens_free_output(self):
        """测试免费输出不限制"""
        guard = CostGuard(ModelPricing(input_per_million=1.0), 1.0, 10, per_char)
        assert guard.cap_max_tokens(50) == 50

    def test_admit(self):
        """测试逐块计价"""
        guard = CostGuard(DOLLAR_PER_TOKEN, 5.0, 1, per_char)
        assert guard.admit("ab")
        assert guard.admit("c")
        assert not guard.admit("de")
        assert guard.output_tokens == 3
        assert guard.cost == pytest.approx(4.0)

    def test_admit_exact_budget(self):
        """测试恰好用完预算"""
        guard = CostGuard(DOLLAR_PER_TOKEN, 3.0, 1, per_char)
        assert guard.admit("ab")
        assert not guard.admit("c")

    def test_worst_case(self):
        """测试最坏成本"""
        guard = CostGuard(DOLLAR_PER_TOKEN, None, 2, per_char)
        assert guard.worst_case(3) == pytest.approx(5.0)
        assert guard.worst_case(None) == pytest.approx(2.0)

    def test_input_margin(self):
        """测试输入余量收紧输出上限"""
        guard = CostGuard(DOLLAR_PER_TOKEN, 10.0, 4, per_char, input_margin=1.5)
        assert guard.reserved_input_tokens == 6
        assert guard.cap_max_tokens(100) == 4
        assert guard.worst_case(4) == pytest.approx(10.0)
        # 实际计费仍按估算
        assert guard.cost == pytest.approx(4.0)

    def test_input_margin_precheck(self):
        """测试放大后的输入超预算"""
        guard = CostGuard(DOLLAR_PER_TOKEN, 5.0, 4, per_char, input_margin=1.5)
        with pytest.raises(CostLimitExceeded):
            guard.check_start()

    def test_input_margin_in_stream(self):
        """测试逐块计价使用放大后的输入"""
        guard = CostGuard(DOLLAR_PER_TOKEN, 8.0, 4, per_char, input_margin=1.5)
        assert guard.admit("ab")
        assert not guard.admit("c")

    def test_margin_below_one_ignored(self):
        """测试小于 1 的余量按 1 处理"""
        guard = CostGuard(DOLLAR_PER_TOKEN, None, 4, per_char, input_margin=0.5)
        assert guard.reserved_input_tokens == 4


class TestCostTracker:
    """会话成本追踪测试"""

    def test_unlimited(self):
        """测试无上限"""
        tracker = CostTracker()
        assert tracker.remaining("a") is None
        spend(tracker, "a", 1.0)
        assert tracker.session_total == 1.0

    def test_session_limit(self):
        """测试会话上限"""
        tracker = CostTracker(session_limit=1.0)
        spend(tracker, "a", 0.25)
        spend(tracker, "b", 0.25)
        assert tracker.remaining("a") == pytest.approx(0.5)

    def test_agent_limit(self):
        """测试 Agent 上限"""
        tracker = CostTracker(session_limit=10.0, agent_limits={"a": 1.0})
        spend(tracker, "a", 0.75)
        assert tracker.remaining("a") == pytest.approx(0.25)
        assert tracker.remaining("b") == pytest.approx(9.25)

    def test_reservation_counts_against_budget(self):
        """测试预约占用预算"""
        tracker = CostTracker(session_limit=1.0)
        reservation = tracker.reserve("a", 0.75)
        assert tracker.remaining("b") == pytest.approx(0.25)

        with pytest.raises(CostLimitExceeded):
            tracker.reserve("b", 0.5)

        tracker.settle(reservation, 0.1)
        assert tracker.session_total == pytest.approx(0.1)
        assert tracker.remaining("b") == pytest.approx(0.9)

    def test_agent_totals(self):
        """测试按 Agent 统计"""
        tracker = CostTracker()
        spend(tracker, "a", 0.5)
        spend(tracker, "a", 0.25)
        spend(tracker, "b", 0.0)
        assert tracker.agent_total("a") == pytest.approx(0.75)
        assert tracker.agent_total("b") == 0.0

        stats = tracker.get_stats()
        assert stats["agents"] == {"a": pytest.approx(0.75)}
        assert stats["reserved"] == 0

    def test_reset(self):
        """测试重置"""
        tracker = CostTracker(session_limit=1.0)
        spend(tracker, "a", 0.5)
        tracker.reserve("a", 0.25)
        tracker.reset()
        assert tracker.session_total == 0.0
        assert tracker.remaining("a") == pytest.approx(1.0)
