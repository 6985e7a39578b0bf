"""
Command execution for the code search tools.

Security features:
- Argument vectors only, spawned without a shell
- Argument validation (strings only, no NUL bytes)
- Execution timeout (process is killed)
- Working directory must be an already-resolved path
"""

from __future__ import annotations

import asyncio
from collections.abc import Collection, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
import logging
import os
from pathlib import Path

from codesearch_mcp.errors import CommandFailed

logger = logging.getLogger("codesearch-mcp.cmd")

GENERIC_FAILURE = "Command failed with no error output"

# Never let git block on an interactive credential prompt
BASE_ENV: dict[str, str] = {"GIT_TERMINAL_PROMPT": "0"}


class CommandStatus(str, Enum):
    SUCCESS = "success"
    EMPTY = "empty"


@dataclass
class CommandResult:
    """Result from command execution."""

    stdout: str
    status: CommandStatus
    exit_code: int

    @property
    def is_empty(self) -> bool:
        return self.status is CommandStatus.EMPTY


def validate_argv(argv: Sequence[str]) -> list[str]:
    """
    Validate an argument vector.

    Args:
        argv: Executable followed by its arguments, one element each

    Returns:
        The argument vector as a list

    Raises:
        CommandFailed: If the vector is empty or any element is not a clean string
    """
    if isinstance(argv, str):
        raise CommandFailed("Argument vector must be a sequence, not a string")
    parts = list(argv)
    if not parts or not parts[0]:
        raise CommandFailed("Empty command")
    for part in parts:
        if not isinstance(part, str):
            raise CommandFailed(f"Invalid argument type: {type(part).__name__}")
        if "\x00" in part:
            raise CommandFailed("Argument contains null bytes")
    return parts


async def run_command(
    argv: Sequence[str],
    cwd: Path | str,
    *,
    empty_exit_codes: Collection[int] = (),
    timeout: float = 30,
    env: Mapping[str, str] | None = None,
) -> CommandResult:
    """
    Run an external binary and classify its exit.

    Exit 0 is a success (EMPTY when stdout is blank). Codes listed in
    ``empty_exit_codes`` are EMPTY results. Everything else raises.

    Args:
        argv: Executable and arguments as discrete elements
        cwd: Resolved, trusted working directory
        empty_exit_codes: Non-zero codes that mean "no output" for this binary
        timeout: Max execution time in seconds
        env: Extra environment variables

    Returns:
        CommandResult with trimmed stdout

    Raises:
        CommandFailed: Non-zero exit, spawn error or timeout
    """
    parts = validate_argv(argv)

    run_env = dict(os.environ)
    run_env.update(BASE_ENV)
    if env:
        run_env.update(env)

    logger.debug(f"Running {parts[0]} {parts[1] if len(parts) > 1 else ''} in {cwd}")

    try:
        proc = await asyncio.create_subprocess_exec(
            *parts,
            cwd=str(cwd),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=run_env,
        )
    except (OSError, ValueError) as e:
        raise CommandFailed(f"Could not start {parts[0]}: {e}") from e

    try:
        stdout_b, stderr_b = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError as e:
        proc.kill()
        await proc.wait()
        raise CommandFailed(f"Command timed out after {timeout}s") from e

    code = proc.returncode if proc.returncode is not None else -1
    stdout = stdout_b.decode("utf-8", errors="replace").strip()
    stderr = stderr_b.decode("utf-8", errors="replace").strip()

    if code == 0:
        status = CommandStatus.SUCCESS if stdout else CommandStatus.EMPTY
        return CommandResult(stdout=stdout, status=status, exit_code=code)

    if code in empty_exit_codes:
        return CommandResult(stdout="", status=CommandStatus.EMPTY, exit_code=code)

    logger.debug(f"{parts[0]} exited with {code}: {stderr[:200]}")
    raise CommandFailed(stderr or GENERIC_FAILURE, exit_code=code)
