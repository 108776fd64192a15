"""子进程后端

输入约定：任务输入作为最后一个命令行参数传入，即执行 `command *args <input>`。
stdin 接 /dev/null，系统提示词不传给子进程。

- stdout 按块读取并增量解码为 UTF-8，作为输出流
- stderr 单独收集，仅用于诊断
- 非零退出码一律视为错误，与已捕获的输出无关
- 子进程在独立的进程组中运行，任何退出路径（成功、出错、超时、取消）都会终止整个进程组
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import signal
from typing import AsyncIterator, Dict, List, Optional, Sequence

from ..errors import ProcessExitNonZero, ProcessSpawnFailed
from ..schema import BackendKind, BackendMetadata, CompletionRequest, CompletionResponse, TokenUsage
from .base import BackendProvider, TokenStream

logger = logging.getLogger(__name__)

# 进程终止超时时间（秒）
PROCESS_TERMINATION_TIMEOUT = 2.0
READ_CHUNK_SIZE = 4096

_POSIX = os.name == "posix"


class ProcessBackend(BackendProvider):
    """本地命令行后端"""

    kind = BackendKind.PROCESS

    def __init__(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[str] = None,
        name: str = "cli",
    ):
        """
        Args:
            command: 可执行文件
            args: 固定参数，位于任务输入之前
            env: 环境变量，None 表示继承当前进程
            cwd: 工作目录
            name: 后端名称（限流键）
        """
        self.command = command
        self.args = list(args)
        self.env = env
        self.cwd = cwd
        self.name = name

    @property
    def default_model(self) -> str:
        return self.command

    def build_argv(self, request: CompletionRequest) -> List[str]:
        """组装命令行"""
        return [self.command, *self.args, request.input]

    def describe(self) -> BackendMetadata:
        return BackendMetadata(
            name=f"{self.name}:{os.path.basename(self.command)}",
            kind=self.kind,
            models=[self.command],
        )

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        chunks: List[str] = []
        async for text in self._run(request):
            chunks.append(text)
        return CompletionResponse(
            output="".join(chunks),
            usage=TokenUsage(),
            model=self.command,
        )

    async def stream(self, request: CompletionRequest) -> TokenStream:
        # 进程在第一次读取时才启动，保证句柄只存在于消费过程中
        return TokenStream(self._run(request), usage=TokenUsage(), model=self.command)

    async def _spawn(self, argv: List[str]) -> asyncio.subprocess.Process:
        logger.debug(f"启动子进程: {' '.join(argv[:-1])} <input>")
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.env,
                cwd=self.cwd,
                start_new_session=_POSIX,
            )
        except FileNotFoundError as e:
            raise ProcessSpawnFailed(f"command not found: {self.command}", backend=self.name) from e
        except PermissionError as e:
            raise ProcessSpawnFailed(f"permission denied: {self.command}", backend=self.name) from e
        except OSError as e:
            raise ProcessSpawnFailed(f"failed to start {self.command}: {e}", backend=self.name) from e

        logger.debug(f"子进程已启动 (PID: {process.pid})")
        return process

    async def _run(self, request: CompletionRequest) -> AsyncIterator[str]:
        process = await self._spawn(self.build_argv(request))
        stderr_task = asyncio.create_task(_read_all(process.stderr))
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

        try:
            while True:
                data = await process.stdout.read(READ_CHUNK_SIZE)
                if not data:
                    break
                text = decoder.decode(data)
                if text:
                    yield text

            tail = decoder.decode(b"", final=True)
            if tail:
                yield tail

            returncode = await process.wait()
            stderr = await stderr_task
            if returncode != 0:
                raise ProcessExitNonZero(returncode, stderr, backend=self.name)
        finally:
            await _terminate(process)
            if not stderr_task.done():
                stderr_task.cancel()
            await asyncio.gather(stderr_task, return_exceptions=True)


async def _read_all(stream: Optional[asyncio.StreamReader]) -> str:
    if stream is None:
        return ""
    data = await stream.read()
    return data.decode("utf-8", errors="replace")


def _signal_group(process: asyncio.subprocess.Process, sig: int) -> None:
    """向子进程所在进程组发送信号"""
    try:
        if _POSIX:
            os.killpg(process.pid, sig)
        elif process.returncode is None:
            process.kill()
    except (ProcessLookupError, PermissionError):
        pass


async def _terminate(process: asyncio.subprocess.Process) -> None:
    """终止并回收子进程，连同它留下的整个进程组"""
    if process.returncode is None:
        logger.debug(f"终止子进程 (PID: {process.pid})")
        _signal_group(process, signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), timeout=PROCESS_TERMINATION_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning(f"子进程 {process.pid} 未响应 SIGTERM，强制终止")
            _signal_group(process, signal.SIGKILL if _POSIX else signal.SIGTERM)
            await process.wait()

    # 领头进程已退出，组内可能还有残留的孙进程
    if _POSIX:
        _signal_group(process, signal.SIGKILL)
