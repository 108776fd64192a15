"""
Agent 流水线

严格顺序执行：第 0 阶段接收原始输入，第 i+1 阶段只在第 i 阶段成功后启动，
并原样接收第 i 阶段的输出。第一个失败的阶段终止后续所有阶段，已完成阶段的结果保留。

状态: pending -> running -> succeeded | failed

使用示例:
    from armada.pipeline import Pipeline

    pipeline = Pipeline(engine, [analyzer, coder, reviewer])
    result = await pipeline.run("实现排序算法")

    # 按 Agent 声明的下游顺序组装
    pipeline = Pipeline.from_agent(engine, analyzer, agents)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, List, Mapping, Optional, Sequence, Union

from .engine import ExecutionEngine
from .errors import AgentValidationError
from .schema import Agent, ExecutionResult, PipelineResult, PipelineState

logger = logging.getLogger(__name__)

StageCallback = Callable[[int, ExecutionResult], None]


class Pipeline:
    """顺序执行管道"""

    def __init__(
        self,
        engine: ExecutionEngine,
        agents: Sequence[Agent],
        *,
        name: str = "pipeline",
        stream: bool = False,
    ):
        if not agents:
            raise AgentValidationError("pipeline requires at least one stage")
        self.engine = engine
        self.agents = list(agents)
        self.name = name
        self.stream = stream

        self.state = PipelineState.PENDING
        self.current_stage: Optional[int] = None
        self._stage_cancel: Optional[asyncio.Event] = None
        self._callbacks: List[StageCallback] = []

    @classmethod
    def from_agent(
        cls,
        engine: ExecutionEngine,
        head: Agent,
        pool: Union[Mapping[str, Agent], Sequence[Agent]],
        **kwargs,
    ) -> "Pipeline":
        """按 head.pipeline 声明的下游 Agent 名称组装流水线

        Raises:
            AgentValidationError: 没有下游或下游名称未知
        """
        if not head.pipeline:
            raise AgentValidationError(f"agent {head.name!r} declares no pipeline")

        registry = pool if isinstance(pool, Mapping) else {agent.name: agent for agent in pool}
        stages = [head]
        for stage_name in head.pipeline:
            agent = registry.get(stage_name)
            if agent is None:
                raise AgentValidationError(
                    f"pipeline of {head.name!r} references unknown agent {stage_name!r}"
                )
            stages.append(agent)

        kwargs.setdefault("name", head.name)
        return cls(engine, stages, **kwargs)

    def on_stage_complete(self, callback: StageCallback) -> "Pipeline":
        """注册阶段完成回调"""
        self._callbacks.append(callback)
        return self

    def _notify_callbacks(self, index: int, result: ExecutionResult) -> None:
        """通知回调"""
        for callback in self._callbacks:
            try:
                callback(index, result)
            except Exception as e:
                logger.warning(f"流水线回调出错: {e}")

    async def run(self, task_input: str) -> PipelineResult:
        """执行管道"""
        result = PipelineResult(state=PipelineState.RUNNING)
        self.state = PipelineState.RUNNING
        current_input = task_input

        try:
            for index, agent in enumerate(self.agents):
                self.current_stage = index
                self._stage_cancel = asyncio.Event()
                logger.info(f"{self.name}: 阶段 {index} ({agent.name})")

                stage = await self.engine.run(
                    agent,
                    current_input,
                    stream=self.stream,
                    cancel_event=self._stage_cancel,
                )
                result.stages.append(stage)
                self._notify_callbacks(index, stage)

                if not stage.success:
                    result.failed_index = index
                    result.failure_reason = (
                        f"stage {index} ({agent.name}) {stage.status.value}: "
                        f"{stage.reason or stage.error_kind}"
                    )
                    logger.warning(f"{self.name}: {result.failure_reason}")
                    self.state = result.state = PipelineState.FAILED
                    return result

                current_input = stage.output

            self.state = result.state = PipelineState.SUCCEEDED
            return result
        except asyncio.CancelledError:
            self.state = PipelineState.FAILED
            raise
        finally:
            self.current_stage = None
            self._stage_cancel = None

    def cancel(self) -> None:
        """取消当前正在运行的阶段，已完成阶段不回滚"""
        if self._stage_cancel is not None:
            self._stage_cancel.set()
