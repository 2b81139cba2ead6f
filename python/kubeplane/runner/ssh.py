"""
kubeplane/runner/ssh.py

Runs scripts on remote hosts through the system `ssh` client.

The script is fed on stdin to `bash -s` so nothing about it needs quoting.
The bootstrap private key and known_hosts live in an ephemeral directory
for exactly the duration of one run. Host key handling follows the
configured policy:

  strict      StrictHostKeyChecking=yes against the profile's host_keys
  accept-new  trust on first use; the learned key is logged
  insecure    any key accepted, nothing recorded
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Deque, List, Type

import aiofiles

from kubeplane.errors import (
    AuthError,
    ConnectError,
    RemoteExitError,
    RunnerError,
    TransportError,
)
from kubeplane.models.ssh import HostKeyPolicy, SSHConfig
from kubeplane.runner.base import Command, Runner
from kubeplane.utils.async_command_runner import stream_command
from kubeplane.utils.ephemeral_file import ephemeral_manager

logger = logging.getLogger(__name__)

SSH_FAILURE_CODE = 255
TAIL_BYTES = 4096

_AUTH_PATTERNS = (
    "permission denied",
    "host key verification failed",
    "remote host identification has changed",
    "no matching host key",
    "too many authentication failures",
)
_CONNECT_PATTERNS = (
    "connection refused",
    "connection timed out",
    "no route to host",
    "could not resolve hostname",
    "network is unreachable",
    "operation timed out",
)


def classify_ssh_failure(output: str) -> Type[RunnerError]:
    """Map the ssh client's own diagnostics (exit code 255) to an error type."""
    lower = output.lower()
    if any(p in lower for p in _AUTH_PATTERNS):
        return AuthError
    if any(p in lower for p in _CONNECT_PATTERNS):
        return ConnectError
    return TransportError


class SSHRunner(Runner):
    """
    One runner per (host, step invocation).

    Args:
        host: Address to connect to.
        ssh: User, port, key material and host key policy.
        io_timeout: Seconds without a response from the server before the
            session is considered dead. Defaults to 6x the connect timeout.
    """

    def __init__(self, host: str, ssh: SSHConfig, io_timeout: float | None = None) -> None:
        self.host = host
        self.ssh = ssh
        self.io_timeout = io_timeout or max(ssh.timeout * 6, 30.0)

    def build_command(self, key_path: str, known_hosts_path: str) -> List[str]:
        policy = self.ssh.host_key_policy
        if policy == HostKeyPolicy.insecure:
            host_key_opts = [
                "-o",
                "StrictHostKeyChecking=no",
                "-o",
                "UserKnownHostsFile=/dev/null",
            ]
        else:
            checking = "yes" if policy == HostKeyPolicy.strict else "accept-new"
            host_key_opts = [
                "-o",
                f"StrictHostKeyChecking={checking}",
                "-o",
                f"UserKnownHostsFile={known_hosts_path}",
            ]

        alive_interval = max(int(self.io_timeout // 3), 1)
        return [
            "ssh",
            "-p",
            str(self.ssh.port),
            "-i",
            key_path,
            "-o",
            "BatchMode=yes",
            "-o",
            "IdentitiesOnly=yes",
            *host_key_opts,
            "-o",
            "GlobalKnownHostsFile=/dev/null",
            "-o",
            f"ConnectTimeout={max(int(self.ssh.timeout), 1)}",
            "-o",
            f"ServerAliveInterval={alive_interval}",
            "-o",
            "ServerAliveCountMax=3",
            f"{self.ssh.user}@{self.host}",
            "bash",
            "-s",
        ]

    async def run(self, command: Command) -> None:
        key = self.ssh.bootstrap_private_key
        if not key.endswith("\n"):
            key += "\n"
        known_hosts = "".join(line.strip() + "\n" for line in self.ssh.host_keys)

        if self.ssh.host_key_policy == HostKeyPolicy.insecure:
            logger.warning(
                "Host key verification disabled for %s (policy=insecure)", self.host
            )

        async with ephemeral_manager(
            ["ssh_idkey", "ssh_known_hosts"],
            contents={"ssh_idkey": key, "ssh_known_hosts": known_hosts},
            prefix="kubeplane-ssh-",
        ) as paths:
            tail: Deque[bytes] = deque()
            tail_size = 0

            async def on_output(chunk: bytes) -> None:
                nonlocal tail_size
                tail.append(chunk)
                tail_size += len(chunk)
                while tail_size > TAIL_BYTES and len(tail) > 1:
                    tail_size -= len(tail.popleft())
                await command.out.write(chunk)

            cmd = self.build_command(paths["ssh_idkey"], paths["ssh_known_hosts"])
            try:
                rc = await stream_command(cmd, on_output=on_output, input_data=command.script)
            except OSError as exc:
                raise ConnectError(
                    f"could not start ssh for {self.host}: {exc}",
                    host=self.host,
                    script=command.script,
                ) from exc
            finally:
                await command.out.flush()

            output_tail = b"".join(tail).decode("utf-8", errors="replace")[-TAIL_BYTES:]
            if rc == 0:
                if self.ssh.host_key_policy == HostKeyPolicy.accept_new and not self.ssh.host_keys:
                    await self._log_learned_key(paths["ssh_known_hosts"])
                return

            if rc == SSH_FAILURE_CODE:
                err_type = classify_ssh_failure(output_tail)
                raise err_type(
                    f"ssh to {self.ssh.user}@{self.host}:{self.ssh.port} failed: "
                    f"{output_tail.strip().splitlines()[-1] if output_tail.strip() else 'exit 255'}",
                    host=self.host,
                    script=command.script,
                    return_code=rc,
                )

            raise RemoteExitError(
                f"remote script on {self.host} exited with code {rc}",
                host=self.host,
                script=command.script,
                return_code=rc,
                output_tail=output_tail,
            )

    async def _log_learned_key(self, known_hosts_path: str) -> None:
        try:
            async with aiofiles.open(known_hosts_path, "r", encoding="utf-8") as fh:
                lines = [ln.strip() for ln in await fh.readlines() if ln.strip()]
        except FileNotFoundError:
            return
        for line in lines:
            parts = line.split()
            if len(parts) >= 3:
                logger.info(
                    "Trusted new host key for %s: %s %s...",
                    self.host,
                    parts[1],
                    parts[2][:24],
                )


def ssh_runner_factory(host: str, ssh: SSHConfig) -> Runner:
    return SSHRunner(host, ssh)
