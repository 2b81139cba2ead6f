"""
kubeplane/runner/dry.py

Dry-run runner: the rendered script is copied into the output sink and
nothing is executed.
"""

from __future__ import annotations

import asyncio
from typing import List

from kubeplane.models.ssh import SSHConfig
from kubeplane.runner.base import Command, Runner


class DryRunner(Runner):
    def __init__(self, host: str = "dry-run") -> None:
        self.host = host
        self.scripts: List[str] = []

    async def run(self, command: Command) -> None:
        # cancellation point, as a real SSH run would have
        await asyncio.sleep(0)
        self.scripts.append(command.script)
        await command.out.line(f"# dry-run on {self.host}")
        await command.out.write(command.script.encode("utf-8"))
        if not command.script.endswith("\n"):
            await command.out.write(b"\n")


def dry_runner_factory(host: str, ssh: SSHConfig) -> Runner:
    return DryRunner(host)
