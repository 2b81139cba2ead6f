"""
kubeplane/errors.py

Error taxonomy for the control plane.

Every domain error carries a `category` so the HTTP layer and the task
engine can decide what to do with it without string matching:

  validation          malformed profile / request body            -> 400
  not_found           unknown account, cluster, task, machine     -> 404
  conflict            operation not allowed in the current state  -> 409
  transient_provider  rate limit / 5xx from the IaaS API (retried inside a step)
  permanent_provider  bad credentials, quota exhausted
  transport           SSH connection or mid-session I/O failure
  remote_exec         remote script exited non-zero
  timeout             step, barrier or poll deadline exceeded
  internal            programming errors (unknown step, template failures)

Cancellation is not represented here: it is always asyncio.CancelledError.
"""

from __future__ import annotations

from typing import Optional

from kubeplane.utils.async_command_runner import CommandError

SCRIPT_EXCERPT_BYTES = 2048


class KubeplaneError(Exception):
    """Base class for all control-plane errors."""

    category = "internal"


class InvalidRequestError(KubeplaneError):
    category = "validation"


class NotFoundError(KubeplaneError):
    category = "not_found"


class ConflictError(KubeplaneError):
    category = "conflict"


class TaskRunningError(ConflictError):
    """Raised when restarting or deleting something whose task is still executing."""


# --------------------------------------------------------------------------
# Provider errors
# --------------------------------------------------------------------------
class ProviderError(KubeplaneError):
    """An error returned by a cloud provider API."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class TransientProviderError(ProviderError):
    category = "transient_provider"


class PermanentProviderError(ProviderError):
    category = "permanent_provider"


class MachineNotFoundError(NotFoundError):
    """The provider has no machine with the requested id."""


# --------------------------------------------------------------------------
# Timeouts
# --------------------------------------------------------------------------
class KubeplaneTimeout(KubeplaneError):
    category = "timeout"


class ProvisionTimeout(KubeplaneTimeout):
    """A machine did not reach `active` before the provision deadline."""


class BootstrapTimeout(KubeplaneTimeout):
    """The bootstrap master did not publish join material in time."""


class SSHWaitTimeout(KubeplaneTimeout):
    """The SSH port did not open before the deadline."""


class StepTimeout(KubeplaneTimeout):
    """A step exceeded its own budget."""


class ClusterCheckTimeout(KubeplaneTimeout):
    """Not enough nodes became Ready before the cluster-check deadline."""


class TaskDeadlineExceeded(KubeplaneTimeout):
    """The whole task exceeded its overall deadline."""


# --------------------------------------------------------------------------
# Templates, steps, pipelines
# --------------------------------------------------------------------------
class TemplateNotFound(KubeplaneError):
    pass


class TemplateExecError(KubeplaneError):
    pass


class UnknownStepError(KubeplaneError):
    pass


class UnknownPipelineError(KubeplaneError):
    pass


class PipelineDefinitionError(KubeplaneError):
    """A pipeline lists a step before the steps it depends on."""


# --------------------------------------------------------------------------
# Runner errors
# --------------------------------------------------------------------------
class RunnerError(CommandError, KubeplaneError):
    """Base class for failures while executing a script on a host.

    Attributes:
        host (str): Target host, or "dry-run".
        script_excerpt (str): First 2KB of the script, for diagnostics.
    """

    category = "transport"

    def __init__(
        self,
        message: str,
        *,
        host: str = "",
        script: str = "",
        return_code: Optional[int] = None,
    ) -> None:
        super().__init__(message, return_code)
        self.host = host
        self.script_excerpt = script[:SCRIPT_EXCERPT_BYTES]


class ConnectError(RunnerError):
    """TCP dial or SSH handshake failed."""


class AuthError(RunnerError):
    """The host rejected the key/user or failed host key verification."""


class TransportError(RunnerError):
    """The session broke mid-stream."""


class RemoteExitError(RunnerError):
    """The remote script exited with a non-zero status.

    Attributes:
        output_tail (str): Last lines of combined output before exit.
    """

    category = "remote_exec"

    def __init__(
        self,
        message: str,
        *,
        host: str = "",
        script: str = "",
        return_code: Optional[int] = None,
        output_tail: str = "",
    ) -> None:
        super().__init__(message, host=host, script=script, return_code=return_code)
        self.output_tail = output_tail


def error_category(exc: BaseException) -> str:
    """Category of an exception, `internal` for anything foreign."""
    return getattr(exc, "category", "internal")
