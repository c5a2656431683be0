#!/usr/bin/env python
"""Simple entry point: run one command as a transient unit and print its outcome."""

import argparse
import asyncio
import shutil
import sys

from sdrun.config import settings
from sdrun.domain import GiB, KiB, MiB, Isolation, OutputSpec, ResourceLimits, UnitSpec
from sdrun.kernel.sandbox import SandboxRunner
from sdrun.runtime import TransientUnitOrchestrator

_SIZE_SUFFIXES = {"k": KiB, "m": MiB, "g": GiB}


def parse_size(value: str) -> int:
    raw = value.strip().lower()
    if raw and raw[-1] in _SIZE_SUFFIXES:
        return int(float(raw[:-1]) * _SIZE_SUFFIXES[raw[-1]])
    return int(raw)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--bus", choices=("system", "session"), default=None)
    parser.add_argument("--level", default=None, help="host capability level, e.g. v252")
    parser.add_argument("--memory", type=parse_size, default=None, help="memory ceiling, e.g. 256M")
    parser.add_argument("--cpu-quota", type=float, default=None, help="CPU seconds per second")
    parser.add_argument("--tasks", type=int, default=None, help="task (thread) ceiling")
    parser.add_argument("--timeout", type=float, default=None, help="wall clock timeout in seconds")
    parser.add_argument("--private-network", action="store_true")
    parser.add_argument("--stdin", dest="stdin_file", default=None, help="feed this file on stdin")
    parser.add_argument("command", nargs=argparse.REMAINDER)
    return parser


async def main(args: argparse.Namespace) -> int:
    command = [part for part in args.command if part != "--"]
    if not command:
        print("no command given", file=sys.stderr)
        return 2
    executable = shutil.which(command[0]) or command[0]

    isolation = {Isolation.NO_NEW_PRIVILEGES}
    if args.private_network:
        isolation.add(Isolation.PRIVATE_NETWORK)
    spec = UnitSpec(
        executable=executable,
        args=tuple(command[1:]),
        limits=ResourceLimits(
            memory_max=args.memory,
            cpu_quota=args.cpu_quota,
            tasks_max=args.tasks,
        ),
        isolation=frozenset(isolation),
        stderr=OutputSpec.journal(),
    )

    input_data = None
    if args.stdin_file:
        with open(args.stdin_file, "rb") as f:
            input_data = f.read()

    async with TransientUnitOrchestrator(args.level, bus=args.bus) as orchestrator:
        runner = SandboxRunner(orchestrator)
        result = await runner.run(spec, timeout_seconds=args.timeout, input_data=input_data)

    if result.stdout:
        sys.stdout.buffer.write(result.stdout)
        sys.stdout.flush()
    print(
        f"[{result.status.name}] unit={result.unit_name} "
        f"duration={result.duration_ms:.0f}ms {result.detail}".rstrip(),
        file=sys.stderr,
    )
    if result.outcome is not None and result.outcome.exit_code is not None:
        return result.outcome.exit_code
    return 0 if result.success else 1


if __name__ == "__main__":
    settings.setup_logging()
    sys.exit(asyncio.run(main(build_parser().parse_args())))
