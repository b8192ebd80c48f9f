"""
Child process execution for git, docker and kubectl.

Commands run as asyncio subprocesses so a slow clone or build never blocks
unrelated merge requests. Long running commands stream their output into the
log as it arrives; short queries capture it for parsing.
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

from .logging_config import mask_sensitive_data

logger = logging.getLogger(__name__)

STREAM_CHUNK_SIZE = 64 * 1024


class CommandError(Exception):
    """A child process could not be started or exited with a non-zero code."""

    def __init__(self, command: List[str], exit_code: int, output: str = ""):
        self.command = command
        self.exit_code = exit_code
        self.output = output
        rendered = mask_sensitive_data(" ".join(command))
        message = f"Command failed with exit code {exit_code}: {rendered}"
        if output.strip():
            tail = "\n".join(output.strip().splitlines()[-5:])
            message += f"\n{mask_sensitive_data(tail)}"
        super().__init__(message)


@dataclass
class CommandResult:
    """Result of a finished child process."""

    command: List[str]
    exit_code: int
    output: str = ""
    errors: str = ""
    duration: float = 0.0

    @property
    def success(self) -> bool:
        return self.exit_code == 0


def _log_line(raw: bytes, prefix: str) -> str:
    line = raw.decode("utf-8", errors="replace").rstrip()
    if line:
        logger.info(f"[{prefix}] {line}")
    return line


async def _stream_lines(reader: asyncio.StreamReader, prefix: str) -> List[str]:
    """
    Log output line by line as it arrives.

    Output is read in fixed-size chunks; a line longer than one chunk is
    logged whole once its newline arrives.
    """
    lines = []
    pending = b""
    while True:
        chunk = await reader.read(STREAM_CHUNK_SIZE)
        if not chunk:
            break
        pending += chunk
        *complete, pending = pending.split(b"\n")
        for raw in complete:
            lines.append(_log_line(raw, prefix))
    if pending:
        lines.append(_log_line(pending, prefix))
    return lines


async def run_command(
    cmd: List[str],
    cwd: Optional[Union[str, Path]] = None,
    log_prefix: Optional[str] = None,
    stream: bool = True,
    check: bool = True,
) -> CommandResult:
    """
    Run a command and wait for it to finish.

    Args:
        cmd: Program and arguments
        cwd: Working directory for the child process
        log_prefix: Tag prepended to streamed output lines
        stream: Log stdout and stderr line by line instead of capturing them
        check: Raise CommandError when the exit code is not zero

    Returns:
        CommandResult with the captured output

    Raises:
        CommandError: If the program is missing, or exits non-zero with check set
    """
    prefix = log_prefix or Path(cmd[0]).name
    logger.info(f"Running: {mask_sensitive_data(' '.join(cmd))}")
    start_time = asyncio.get_event_loop().time()

    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT if stream else asyncio.subprocess.PIPE,
            cwd=str(cwd) if cwd else None,
        )
    except FileNotFoundError as e:
        raise CommandError(cmd, 127, str(e)) from e

    if stream:
        try:
            lines = await _stream_lines(process.stdout, prefix)
            await process.wait()
        finally:
            if process.returncode is None:
                process.kill()
                await process.wait()
        output, errors = "\n".join(lines), ""
    else:
        stdout, stderr = await process.communicate()
        output = stdout.decode("utf-8", errors="replace") if stdout else ""
        errors = stderr.decode("utf-8", errors="replace") if stderr else ""

    duration = asyncio.get_event_loop().time() - start_time
    result = CommandResult(
        command=cmd,
        exit_code=process.returncode,
        output=output,
        errors=errors,
        duration=duration,
    )
    logger.debug(f"[{prefix}] exit_code={result.exit_code}, duration={duration:.2f}s")

    if check and not result.success:
        raise CommandError(cmd, result.exit_code, errors or output)
    return result
