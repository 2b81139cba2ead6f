"""
kubeplane/runner/base.py

The remote command runner contract.

`Runner.run(command)` executes a fully rendered shell script on one host and
streams its combined output to `command.out`. It returns when the script
exits, raises a RunnerError subclass on failure, and propagates
asyncio.CancelledError promptly (after tearing the session down) when the
calling task is cancelled.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable

from kubeplane.models.ssh import SSHConfig
from kubeplane.runner.output import OutputSink


@dataclass
class Command:
    script: str
    out: OutputSink


class Runner(ABC):
    host: str = ""

    @abstractmethod
    async def run(self, command: Command) -> None:
        ...


RunnerFactory = Callable[[str, SSHConfig], Runner]
"""Builds a fresh runner for (host, ssh config); one per step invocation."""
