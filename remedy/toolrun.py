"""Bounded subprocess execution for build tools and git."""

import asyncio
import contextlib
import os
from dataclasses import dataclass
from pathlib import Path

import structlog

from .errors import OutputLimitError, ResolutionError, ToolTimeoutError

log = structlog.get_logger("depremedy.toolrun")

_CHUNK = 64 * 1024


@dataclass
class CommandResult:
    """Captured outcome of a finished command."""

    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class _OutputOverflow(Exception):
    pass


async def _drain(stream: asyncio.StreamReader, buffer: bytearray, limit: int) -> None:
    while True:
        chunk = await stream.read(_CHUNK)
        if not chunk:
            return
        buffer.extend(chunk)
        if len(buffer) > limit:
            raise _OutputOverflow()


def _kill(proc: asyncio.subprocess.Process) -> None:
    with contextlib.suppress(ProcessLookupError):
        proc.kill()


async def run_command(
    cmd: list[str],
    cwd: str | Path,
    timeout: float,
    max_output: int,
    label: str | None = None,
) -> CommandResult:
    """Run ``cmd`` in ``cwd`` with a wall-clock timeout and an output ceiling.

    A non-zero exit status is returned, not raised; callers decide whether
    partial output is usable.

    Args:
        cmd: Program and arguments
        cwd: Working directory
        timeout: Seconds before the process is killed
        max_output: Maximum bytes accepted on stdout or stderr
        label: Ecosystem or tool name used in errors (defaults to the program name)

    Raises:
        ToolTimeoutError: if the process outlives ``timeout``
        OutputLimitError: if either stream exceeds ``max_output``
        ResolutionError: if the program cannot be started
    """
    label = label or os.path.basename(cmd[0])
    log.info("toolrun.start", command=" ".join(cmd), cwd=str(cwd), timeout=timeout)

    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(cwd),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except (FileNotFoundError, PermissionError) as e:
        raise ResolutionError(label, f"cannot execute {cmd[0]}: {e}") from e

    stdout, stderr = bytearray(), bytearray()

    async def communicate() -> int:
        await asyncio.gather(
            _drain(proc.stdout, stdout, max_output),
            _drain(proc.stderr, stderr, max_output),
        )
        return await proc.wait()

    try:
        returncode = await asyncio.wait_for(communicate(), timeout)
    except asyncio.TimeoutError:
        _kill(proc)
        await proc.wait()
        log.error("toolrun.timeout", command=" ".join(cmd), timeout=timeout)
        raise ToolTimeoutError(label, f"{' '.join(cmd)} timed out after {timeout:g}s") from None
    except _OutputOverflow:
        _kill(proc)
        await proc.wait()
        log.error("toolrun.output_limit", command=" ".join(cmd), max_output=max_output)
        raise OutputLimitError(label, f"{' '.join(cmd)} produced more than {max_output} bytes") from None

    result = CommandResult(
        returncode=returncode,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )
    log.info(
        "toolrun.finished",
        command=" ".join(cmd),
        returncode=returncode,
        stdout_bytes=len(stdout),
        stderr_bytes=len(stderr),
    )
    return result
