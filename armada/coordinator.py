"""Agent 协调器（hub-and-spoke）

把一个任务分解为子任务，按能力匹配挑选 Agent，并发执行后按分解顺序聚合：
- 分解: Task.subtasks 显式给出，或由 decomposer 产生；没有分解信号时整个任务就是一个子任务
- 选择: 子任务的 tag/stack 提示与 Agent 的 tags/stacks/scope 重叠越多越优先，
  平分时 scope 更窄的 Agent 胜出；没有匹配只让该子任务失败
- 调度: 互不依赖的子任务并发执行，各自受自己 Agent 的限流和成本上限约束
- 聚合: 保留分解顺序，按 Agent 标注每一节；全部失败时整体才算失败
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Set, Union

from .engine import ExecutionEngine
from .errors import NoAgentAvailable
from .schema import (
    Agent,
    AggregatedResult,
    AggregatedSection,
    ExecutionResult,
    RunStatus,
    SubTask,
    Task,
)

logger = logging.getLogger(__name__)

Decomposer = Callable[[Task], List[SubTask]]

_CHECKLIST_RE = re.compile(r"^\s*(?:[-*+]|\d+[.)])\s+(?:\[[ xX]\]\s+)?(.+?)\s*$")


def default_decomposer(task: Task) -> List[SubTask]:
    """显式子任务，否则整个任务作为唯一子任务"""
    if task.subtasks:
        return list(task.subtasks)
    return [SubTask(input=task.input, tags=list(task.tags), stacks=list(task.stacks))]


def checklist_decomposer(task: Task) -> List[SubTask]:
    """把 Markdown 清单（至少两项）拆成子任务

    ```
    - add input validation
    - write tests
    ```
    """
    if task.subtasks:
        return list(task.subtasks)

    items = []
    for line in task.input.splitlines():
        match = _CHECKLIST_RE.match(line)
        if match:
            items.append(match.group(1))

    if len(items) < 2:
        return default_decomposer(task)
    return [SubTask(input=item, tags=list(task.tags), stacks=list(task.stacks)) for item in items]


def _labels(agent: Agent) -> Set[str]:
    return {label.lower() for label in (*agent.tags, *agent.stacks, *agent.scope)}


def score_agent(agent: Agent, hints: Sequence[str]) -> int:
    """提示与 Agent 声明能力的重叠数（不区分大小写）"""
    wanted = {hint.lower() for hint in hints}
    return len(wanted & _labels(agent))


def _scope_width(agent: Agent) -> float:
    # 未声明 scope 视为不受限
    return len(agent.scope) if agent.scope else math.inf


def select_agent(subtask: SubTask, agents: Sequence[Agent]) -> Optional[Agent]:
    """为子任务挑选 Agent

    排序: 重叠数高 > scope 更窄 > 声明的标签更少 > 列表顺序。
    子任务没有提示时所有 Agent 都可选。
    """
    if subtask.agent:
        for agent in agents:
            if agent.name == subtask.agent:
                return agent
        return None

    hints = subtask.hints
    candidates = []
    for index, agent in enumerate(agents):
        score = score_agent(agent, hints) if hints else 0
        if hints and score == 0:
            continue
        rank = (-score, _scope_width(agent), len(agent.tags) + len(agent.stacks), index)
        candidates.append((rank, agent))

    if not candidates:
        return None
    return min(candidates, key=lambda item: item[0])[1]


@dataclass
class SubTaskRun:
    """子任务运行状态"""

    index: int
    subtask: SubTask
    agent_name: Optional[str] = None
    status: str = "pending"  # pending, running, completed, failed, cancelled
    result: Optional[ExecutionResult] = None


class Coordinator:
    """Agent 协调器

    使用示例:
    ```python
    coordinator = Coordinator(engine, [reviewer, tester])
    result = await coordinator.run(Task(input="review auth.py", tags=["security"]))
    print(result.summary)
    ```

    同一实例上的多次 run 可以并发：每次运行有自己的取消信号，
    cancel() 作用于所有进行中的运行；list_subtasks 与统计方法反映最近一次运行。
    """

    def __init__(
        self,
        engine: ExecutionEngine,
        agents: Sequence[Agent],
        *,
        decomposer: Decomposer = default_decomposer,
        max_concurrent_agents: Optional[int] = None,
        stream: bool = False,
    ):
        self.engine = engine
        self.agents = list(agents)
        self.decomposer = decomposer
        self.max_concurrent_agents = (
            max_concurrent_agents or engine.settings.defaults.max_concurrent_agents
        )
        self.stream = stream

        self._runs: List[SubTaskRun] = []
        self._cancel_events: Set[asyncio.Event] = set()

        # 事件回调
        self._on_subtask_start: Optional[Callable[[SubTaskRun], None]] = None
        self._on_subtask_complete: Optional[Callable[[SubTaskRun], None]] = None

    def set_callbacks(
        self,
        on_subtask_start: Optional[Callable[[SubTaskRun], None]] = None,
        on_subtask_complete: Optional[Callable[[SubTaskRun], None]] = None,
    ) -> None:
        """设置事件回调"""
        self._on_subtask_start = on_subtask_start
        self._on_subtask_complete = on_subtask_complete

    def decompose(self, task: Task) -> List[SubTask]:
        """分解任务，保证至少一个子任务"""
        subtasks = self.decomposer(task)
        if not subtasks:
            subtasks = default_decomposer(task)
        return subtasks

    async def run(self, task: Union[Task, str]) -> AggregatedResult:
        """执行任务

        Args:
            task: 任务或任务文本

        Returns:
            AggregatedResult: 按分解顺序聚合的结果
        """
        if isinstance(task, str):
            task = Task(input=task)

        subtasks = self.decompose(task)
        runs = [SubTaskRun(index=i, subtask=st) for i, st in enumerate(subtasks)]
        self._runs = runs
        cancel_event = asyncio.Event()
        semaphore = asyncio.Semaphore(self.max_concurrent_agents)
        logger.info(f"协调器: {len(subtasks)} 个子任务，{len(self.agents)} 个候选 Agent")

        tasks: List[asyncio.Task] = []
        for run in runs:
            deps = [tasks[d] for d in run.subtask.depends_on if 0 <= d < run.index]
            tasks.append(
                asyncio.ensure_future(self._run_subtask(run, deps, semaphore, cancel_event))
            )

        self._cancel_events.add(cancel_event)
        try:
            results = await asyncio.gather(*tasks, return_exceptions=True)
        finally:
            self._cancel_events.discard(cancel_event)

        # 处理异常
        sections = []
        for run, item in zip(runs, results):
            if isinstance(item, BaseException):
                if isinstance(item, asyncio.CancelledError):
                    raise item
                logger.error(f"子任务 #{run.index} 异常: {item}")
                item = self._section(
                    run,
                    self._failure(run.agent_name or "", type(item).__name__, str(item)),
                )
            sections.append(item)

        return AggregatedResult(sections=sections, summary=self._summarize(sections))

    async def _run_subtask(
        self,
        run: SubTaskRun,
        deps: List["asyncio.Task[AggregatedSection]"],
        semaphore: asyncio.Semaphore,
        cancel_event: asyncio.Event,
    ) -> AggregatedSection:
        subtask = run.subtask

        invalid = [d for d in subtask.depends_on if not 0 <= d < run.index]
        if invalid:
            return self._finish(
                run,
                self._failure("", "Validation", f"subtask {run.index} depends on invalid index {invalid[0]}"),
            )

        upstream: List[AggregatedSection] = []
        for dep in deps:
            upstream.append(await dep)

        failed = [s for s in upstream if not s.result.success]
        if failed:
            return self._finish(
                run,
                self._failure(
                    "",
                    "DependencyFailed",
                    f"dependency subtask {failed[0].index} did not succeed",
                ),
            )

        agent = select_agent(subtask, self.agents)
        if agent is None:
            error = NoAgentAvailable(f"no agent matches subtask {run.index} (hints: {subtask.hints})")
            logger.warning(str(error))
            return self._finish(run, self._failure("", error.kind, str(error)))

        run.agent_name = agent.name
        task_input = subtask.input
        for section in upstream:
            task_input += f"\n\n## Output from {section.agent_name}\n\n{section.result.output}"

        async with semaphore:
            run.status = "running"
            self._notify(self._on_subtask_start, run)
            result = await self.engine.run(
                agent,
                task_input,
                stream=self.stream,
                cancel_event=cancel_event,
            )

        return self._finish(run, result)

    def _finish(self, run: SubTaskRun, result: ExecutionResult) -> AggregatedSection:
        run.result = result
        if result.success:
            run.status = "completed"
        elif result.status == RunStatus.CANCELLED:
            run.status = "cancelled"
        else:
            run.status = "failed"
        self._notify(self._on_subtask_complete, run)
        return self._section(run, result)

    @staticmethod
    def _section(run: SubTaskRun, result: ExecutionResult) -> AggregatedSection:
        return AggregatedSection(
            index=run.index,
            agent_name=run.agent_name,
            subtask=run.subtask,
            result=result,
        )

    @staticmethod
    def _failure(agent_name: str, kind: str, reason: str) -> ExecutionResult:
        return ExecutionResult(
            agent_name=agent_name,
            status=RunStatus.FAILED,
            error_kind=kind,
            reason=reason,
        )

    @staticmethod
    def _summarize(sections: Sequence[AggregatedSection]) -> str:
        """按分解顺序生成 Markdown 摘要"""
        parts = []
        for section in sections:
            title = section.agent_name or "unassigned"
            result = section.result
            if result.success:
                parts.append(f"## {title}\n\n{result.output.strip()}")
            else:
                parts.append(
                    f"## {title}\n\n_{result.status.value}: {result.reason or result.error_kind}_"
                )
        return "\n\n".join(parts)

    @staticmethod
    def _notify(callback: Optional[Callable[[SubTaskRun], None]], run: SubTaskRun) -> None:
        if callback is None:
            return
        try:
            callback(run)
        except Exception as e:
            logger.warning(f"协调器回调出错: {e}")

    def cancel(self) -> None:
        """取消所有进行中的运行"""
        for event in list(self._cancel_events):
            event.set()

    def list_subtasks(self) -> List[SubTaskRun]:
        """列出当前运行的子任务"""
        return list(self._runs)

    def get_total_cost(self) -> float:
        """当前运行的总成本"""
        return sum(run.result.cost for run in self._runs if run.result is not None)

    def get_total_tokens(self) -> Dict[str, int]:
        """当前运行的 token 使用量"""
        totals = {"input": 0, "output": 0}
        for run in self._runs:
            if run.result is not None:
                totals["input"] += run.result.input_tokens
                totals["output"] += run.result.output_tokens
        return totals
