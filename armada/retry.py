"""模型降级

按 [主模型, *降级模型] 的顺序执行同一个调用：
- 可重试错误（网络、超时、进程启动失败、限流）换下一个模型再试
- 不可重试错误（凭证缺失、校验失败、成本上限、取消）立即上报
- 最后一个模型也失败时上报它的错误

使用示例:
```python
executor = FallbackExecutor(["claude-opus-4-6", "claude-sonnet-4-5-20250929"])
response = await executor.execute(lambda model: call(model))
```
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Sequence, TypeVar

from .errors import is_transient

T = TypeVar("T")


@dataclass
class FallbackState:
    """降级状态"""

    attempt: int = 0
    models_tried: List[str] = field(default_factory=list)
    errors: List[Exception] = field(default_factory=list)


class FallbackExecutor:
    """降级执行器"""

    def __init__(
        self,
        models: Sequence[str],
        should_retry: Callable[[Exception], bool] = is_transient,
        on_retry: Optional[Callable[[Exception, str, str], None]] = None,
    ):
        """
        Args:
            models: 模型链，第一个为主模型
            should_retry: 判断错误是否可换模型重试
            on_retry: 重试回调 (错误, 失败的模型, 下一个模型)
        """
        if not models:
            raise ValueError("model chain must not be empty")
        self.models = list(models)
        self.should_retry = should_retry
        self.on_retry = on_retry
        self.state = FallbackState()

    async def execute(self, func: Callable[[str], Awaitable[T]]) -> T:
        """依次用每个模型调用 func，返回第一个成功的结果

        Raises:
            最后一次失败的异常，或第一个不可重试的异常
        """
        self.state = FallbackState()
        last_index = len(self.models) - 1

        for index, model in enumerate(self.models):
            self.state.attempt = index + 1
            self.state.models_tried.append(model)
            try:
                return await func(model)
            except Exception as e:
                self.state.errors.append(e)
                if index >= last_index or not self.should_retry(e):
                    raise
                if self.on_retry:
                    self.on_retry(e, model, self.models[index + 1])

        # 不应该到达这里
        raise RuntimeError("fallback chain exhausted")
