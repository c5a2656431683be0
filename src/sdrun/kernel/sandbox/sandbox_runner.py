"""Sandbox Runner - 基于 systemd 瞬态单元的隔离执行器

评测流水线的执行入口，把一次提交运行封装为：
- 瞬态单元隔离（cgroup 资源上限、命名空间、权限收敛）
- 调用方超时策略（超时即取消等待，由 LaunchGuard 负责强制清理）
- 可选的 stdin/stdout 文件重定向（用于逐字节比对）

编排核心抛出的启动期总线错误在这里统一转成 ORCHESTRATOR_FAILURE 结果。
"""

from __future__ import annotations

import asyncio
import os
import shutil
import signal
import tempfile
from dataclasses import dataclass
from enum import Enum, auto
from pathlib import Path
from typing import Optional, Union

import structlog

from sdrun.config import settings
from sdrun.domain.errors import (
    ConnectionLostError,
    ControlBusError,
    InvalidSpecError,
    UnsupportedLimitError,
)
from sdrun.domain.outcome import ExitOutcome, FailureReason, OutcomeKind
from sdrun.domain.units import (
    MiB,
    InputSpec,
    Isolation,
    OutputSpec,
    ResourceLimits,
    UnitSpec,
)
from sdrun.runtime.orchestrator import TransientUnitOrchestrator

logger = structlog.get_logger()

SIGKILL = int(signal.SIGKILL)


class SandboxStatus(Enum):
    """沙箱执行状态枚举。"""
    SUCCESS = auto()
    EXIT_CODE_NONZERO = auto()
    SIGNALED = auto()
    MEMORY_EXCEEDED = auto()
    TIMEOUT = auto()
    SPEC_REJECTED = auto()
    ORCHESTRATOR_FAILURE = auto()


@dataclass(frozen=True)
class SandboxResult:
    """沙箱执行结果不可变数据类。

    Attributes:
        status: 执行状态
        outcome: 编排核心给出的终止结果（超时或请求被拒时为 None）
        stdout: 标准输出原始字节（仅在使用 input_data 时捕获）
        duration_ms: 执行耗时（毫秒）
        unit_name: 瞬态单元名称
        detail: 失败说明
    """
    status: SandboxStatus
    outcome: Optional[ExitOutcome]
    stdout: bytes
    duration_ms: float
    unit_name: Optional[str]
    detail: str = ""

    @property
    def success(self) -> bool:
        """是否成功执行（进程运行且退出码为 0）。"""
        return self.status == SandboxStatus.SUCCESS

    @property
    def failed(self) -> bool:
        """是否执行失败。"""
        return not self.success

    @property
    def exit_code(self) -> Optional[int]:
        return self.outcome.exit_code if self.outcome is not None else None


def classify_outcome(outcome: ExitOutcome) -> SandboxStatus:
    """把 ExitOutcome 映射为沙箱状态。

    内存超限只在宿主明确报告 oom-kill 时判定；进程因分配失败自行退出
    会表现为普通的非零退出码，这里不做进一步推断。
    """
    if outcome.kind == OutcomeKind.EXITED:
        return SandboxStatus.SUCCESS if outcome.exit_code == 0 else SandboxStatus.EXIT_CODE_NONZERO
    if outcome.kind == OutcomeKind.SIGNALED:
        if outcome.signal == SIGKILL and outcome.host_result == "oom-kill":
            return SandboxStatus.MEMORY_EXCEEDED
        return SandboxStatus.SIGNALED
    return SandboxStatus.ORCHESTRATOR_FAILURE


class SandboxRunner:
    """沙箱执行器 - 在瞬态单元中运行一次评测。

    Usage:
        runner = SandboxRunner()
        result = await runner.run(
            UnitSpec("/usr/bin/python3", args=("solution.py",)),
            timeout_seconds=10,
            input_data=b"1 2\\n",
        )
        if result.success:
            print(result.stdout.decode())
    """

    def __init__(self, orchestrator: Optional[TransientUnitOrchestrator] = None):
        """初始化沙箱执行器。

        Args:
            orchestrator: 复用的编排器，默认按全局 settings 懒创建
        """
        self._orchestrator = orchestrator
        self._owns_orchestrator = orchestrator is None

    @property
    def orchestrator(self) -> TransientUnitOrchestrator:
        if self._orchestrator is None:
            self._orchestrator = TransientUnitOrchestrator()
        return self._orchestrator

    def _prepare_io(
        self,
        input_data: Union[str, bytes],
    ) -> tuple[dict, Path, Path]:
        """准备私有临时目录，写入 stdin 文件并把 stdout 重定向到文件。

        Returns:
            (启动覆盖项, 临时目录, stdout 文件路径)
        """
        work_dir = Path(tempfile.mkdtemp(prefix="sdrun_io_"))
        # 单元可能以其他用户身份运行，需要能进入目录并读取输入
        os.chmod(work_dir, 0o711)

        stdin_path = work_dir / "stdin"
        data = input_data.encode("utf-8") if isinstance(input_data, str) else input_data
        stdin_path.write_bytes(data)
        os.chmod(stdin_path, 0o644)

        stdout_path = work_dir / "stdout"
        overrides = {
            "stdin": InputSpec.file(str(stdin_path)),
            "stdout": OutputSpec.file(str(stdout_path)),
        }
        return overrides, work_dir, stdout_path

    async def run(
        self,
        spec: UnitSpec,
        timeout_seconds: Optional[float] = None,
        input_data: Optional[Union[str, bytes]] = None,
    ) -> SandboxResult:
        """在瞬态单元中执行一次。

        Args:
            spec: 启动请求
            timeout_seconds: 墙钟超时（秒），默认 settings.default_timeout_seconds
            input_data: 写入 stdin 的数据；给定时同时捕获 stdout

        Returns:
            SandboxResult 执行结果
        """
        timeout = (
            settings.default_timeout_seconds if timeout_seconds is None else timeout_seconds
        )
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        def elapsed_ms() -> float:
            return (loop.time() - start_time) * 1000

        overrides: dict = {}
        work_dir: Optional[Path] = None
        stdout_path: Optional[Path] = None
        if input_data is not None:
            overrides, work_dir, stdout_path = self._prepare_io(input_data)

        try:
            # 1. 本地校验 + 启动
            try:
                guard = await self.orchestrator.start(spec, **overrides)
            except (InvalidSpecError, UnsupportedLimitError) as e:
                return SandboxResult(
                    status=SandboxStatus.SPEC_REJECTED,
                    outcome=None,
                    stdout=b"",
                    duration_ms=0.0,
                    unit_name=None,
                    detail=str(e),
                )
            except ControlBusError as e:
                reason = (
                    FailureReason.CONNECTION_LOST
                    if isinstance(e, ConnectionLostError)
                    else FailureReason.START_FAILED
                )
                outcome = ExitOutcome.orchestrator_failure(
                    "", reason, f"{type(e).__name__}: {e}"
                )
                return SandboxResult(
                    status=SandboxStatus.ORCHESTRATOR_FAILURE,
                    outcome=outcome,
                    stdout=b"",
                    duration_ms=elapsed_ms(),
                    unit_name=None,
                    detail=outcome.detail,
                )

            # 2. 带超时的等待；超时取消等待，由 guard 强制清理单元
            try:
                outcome = await asyncio.wait_for(guard.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                await guard.release()
                logger.info("sandbox_timeout", unit=guard.unit_name, timeout=timeout)
                return SandboxResult(
                    status=SandboxStatus.TIMEOUT,
                    outcome=None,
                    stdout=_read_output(stdout_path),
                    duration_ms=elapsed_ms(),
                    unit_name=guard.unit_name,
                    detail=f"执行超时（限制: {timeout}秒）",
                )

            status = classify_outcome(outcome)
            return SandboxResult(
                status=status,
                outcome=outcome,
                stdout=_read_output(stdout_path),
                duration_ms=elapsed_ms(),
                unit_name=guard.unit_name,
                detail=outcome.detail,
            )
        finally:
            if work_dir is not None:
                shutil.rmtree(work_dir, ignore_errors=True)

    async def aclose(self) -> None:
        """关闭自建的编排器；外部传入的编排器由调用方负责。"""
        if self._owns_orchestrator and self._orchestrator is not None:
            await self._orchestrator.aclose()
            self._orchestrator = None


def _read_output(path: Optional[Path]) -> bytes:
    if path is None or not path.exists():
        return b""
    return path.read_bytes()


# 全局沙箱执行器实例
_default_runner: Optional[SandboxRunner] = None


def get_sandbox_runner() -> SandboxRunner:
    """获取全局沙箱执行器实例（单例模式）。"""
    global _default_runner
    if _default_runner is None:
        _default_runner = SandboxRunner()
    return _default_runner


async def run_in_sandbox(
    command: list[str],
    timeout_seconds: Optional[float] = None,
    max_memory_mb: Optional[int] = 512,
    max_tasks: Optional[int] = 64,
    cpu_quota: Optional[float] = 1.0,
    enable_network: bool = False,
    input_data: Optional[Union[str, bytes]] = None,
) -> SandboxResult:
    """便捷函数：快速在瞬态单元中执行命令。

    Args:
        command: 命令列表，首项可以是 PATH 中的命令名
        timeout_seconds: 超时秒数
        max_memory_mb: 内存上限
        max_tasks: 任务（线程）数上限
        cpu_quota: 每秒可用的 CPU 秒数
        enable_network: 是否保留网络（否则使用私有网络命名空间）
        input_data: 写入 stdin 的数据

    Returns:
        SandboxResult 执行结果
    """
    if not command:
        raise InvalidSpecError("命令不能为空")
    executable = command[0]
    if not os.path.isabs(executable):
        resolved = shutil.which(executable)
        if resolved is None:
            raise InvalidSpecError(f"找不到可执行文件: {executable}")
        executable = resolved

    isolation = {Isolation.NO_NEW_PRIVILEGES}
    if not enable_network:
        isolation.add(Isolation.PRIVATE_NETWORK)

    spec = UnitSpec(
        executable=executable,
        args=tuple(command[1:]),
        limits=ResourceLimits(
            memory_max=max_memory_mb * MiB if max_memory_mb else None,
            tasks_max=max_tasks,
            cpu_quota=cpu_quota,
        ),
        isolation=frozenset(isolation),
    )
    return await get_sandbox_runner().run(
        spec, timeout_seconds=timeout_seconds, input_data=input_data
    )
