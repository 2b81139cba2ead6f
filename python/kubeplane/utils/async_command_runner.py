"""
kubeplane/utils/async_command_runner.py

Asynchronous subprocess helper used by the SSH runner.

**stream_command** feeds optional stdin, forwards merged stdout/stderr
chunk-by-chunk to an async callback in the order produced, and kills the
child if the awaiting task is cancelled. CommandError is the base of every
runner failure.

Usage example:
    from kubeplane.utils.async_command_runner import stream_command

    async def sink(chunk: bytes) -> None:
        print(chunk.decode(), end="")

    rc = await stream_command(["bash", "-s"], input_data="echo hi", on_output=sink)
"""

from __future__ import annotations

import os
import asyncio
from typing import Awaitable, Callable, Dict, List, Optional

READ_CHUNK = 4096


class CommandError(Exception):
    """Represents a failure when executing a shell command.

    Attributes:
        message (str): The error message describing the command failure.
        return_code (Optional[int]): The exit code if available.
    """

    def __init__(self, message: str, return_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.return_code = return_code


def _build_env(env: Optional[Dict[str, str]]) -> Optional[Dict[str, str]]:
    if env is None:
        return None
    proc_env = os.environ.copy()
    proc_env.update(env)
    return proc_env


async def stream_command(
    command: List[str],
    *,
    on_output: Callable[[bytes], Awaitable[None]],
    input_data: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
    cwd: Optional[str] = None,
    kill_grace: float = 2.0,
) -> int:
    """
    Run a command, streaming combined stdout/stderr to `on_output`.

    stderr is redirected into stdout so chunks reach the callback in the order
    the child produced them. If the caller is cancelled the child is terminated
    (then killed after `kill_grace` seconds) and CancelledError propagates.

    Args:
        command (List[str]): The command and arguments to execute.
        on_output (Callable[[bytes], Awaitable[None]]): Receives output chunks.
        input_data (Optional[str]): Written to stdin, which is then closed.
        env (Optional[Dict[str, str]]): Additional environment variables.
        cwd (Optional[str]): Working directory for the command.
        kill_grace (float): Seconds between terminate and kill on cancel.

    Returns:
        int: The child's exit code.
    """
    proc = await asyncio.create_subprocess_exec(
        *command,
        stdin=asyncio.subprocess.PIPE if input_data is not None else asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
        env=_build_env(env),
        cwd=cwd,
    )

    async def _feed_stdin() -> None:
        assert proc.stdin is not None
        try:
            proc.stdin.write((input_data or "").encode("utf-8"))
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            # child exited before reading all of stdin
            pass
        finally:
            proc.stdin.close()

    async def _pump_stdout() -> None:
        assert proc.stdout is not None
        while True:
            chunk = await proc.stdout.read(READ_CHUNK)
            if not chunk:
                break
            await on_output(chunk)

    try:
        if input_data is not None:
            await asyncio.gather(_feed_stdin(), _pump_stdout())
        else:
            await _pump_stdout()
        return await proc.wait()
    except asyncio.CancelledError:
        await _terminate(proc, kill_grace)
        raise


async def _terminate(proc: asyncio.subprocess.Process, grace: float) -> None:
    if proc.returncode is not None:
        return
    try:
        proc.terminate()
        await asyncio.wait_for(asyncio.shield(proc.wait()), timeout=grace)
    except ProcessLookupError:
        return
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
