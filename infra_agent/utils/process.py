"""Async subprocess helper for the external tools the agent drives."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Sequence

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30


@dataclass
class CommandResult:
    """Result of a local command execution (stdout and stderr combined)."""
    args: tuple[str, ...]
    exit_code: int
    output: str
    success: bool = field(init=False)

    def __post_init__(self):
        self.success = self.exit_code == 0


CommandRunner = Callable[..., Awaitable[CommandResult]]


async def run_command(args: Sequence[str], timeout: float = DEFAULT_TIMEOUT) -> CommandResult:
    """
    Run a command and capture its combined output.

    Never raises for the usual failure modes: a missing binary, a
    permission problem or a timeout all come back as a failed result.
    """
    args = tuple(str(a) for a in args)
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as e:
        logger.debug(f"Failed to start {args[0]}: {e}")
        return CommandResult(args=args, exit_code=127, output=str(e))

    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return CommandResult(
            args=args,
            exit_code=-1,
            output=f"{args[0]} timed out after {timeout}s",
        )

    return CommandResult(
        args=args,
        exit_code=proc.returncode,
        output=stdout.decode("utf-8", errors="replace"),
    )
