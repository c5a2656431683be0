"""Kernel Sandbox - 基于瞬态单元的评测执行入口。

把编排核心包装成面向评测流水线的执行器：超时策略、
stdin/stdout 文件重定向以及结果分类。
"""

from sdrun.kernel.sandbox.sandbox_runner import (
    SandboxResult,
    SandboxRunner,
    SandboxStatus,
    classify_outcome,
    get_sandbox_runner,
    run_in_sandbox,
)

__all__ = [
    "SandboxRunner",
    "SandboxResult",
    "SandboxStatus",
    "classify_outcome",
    "get_sandbox_runner",
    "run_in_sandbox",
]
