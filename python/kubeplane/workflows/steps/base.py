"""
kubeplane/workflows/steps/base.py

Step contract and the step registry.

A step is a stateless unit: `run` performs its action against the task's
Config and must be safe to re-run after a partial failure; `rollback` is an
optional compensating action used only by cluster teardown. `depends` names
steps that must appear earlier in any pipeline using this one.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel

from kubeplane.errors import UnknownStepError
from kubeplane.runner.base import Command, Runner
from kubeplane.runner.output import OutputSink
from kubeplane.workflows.config import Config


class Step(ABC):
    name: str = ""
    depends: Tuple[str, ...] = ()
    description: str = ""

    @abstractmethod
    async def run(self, out: OutputSink, config: Config) -> None:
        ...

    async def rollback(self, out: OutputSink, config: Config) -> None:
        return None

    def timeout(self, config: Config) -> Optional[float]:
        """Per-step budget in seconds; None means no step-level limit."""
        return config.profile.timeouts.default_step

    def __repr__(self) -> str:
        return f"<Step {self.name}>"


class TemplatedStep(Step):
    """
    derive sub-config -> render template -> run it on the target.

    Subclasses set `template` and implement `sub_config`; `applies` lets a
    step turn itself into a no-op for roles it does not concern.
    """

    template: str = ""

    @abstractmethod
    def sub_config(self, config: Config) -> BaseModel | Mapping[str, Any]:
        ...

    def applies(self, config: Config) -> bool:
        return True

    def target(self, config: Config) -> Runner:
        return config.new_runner()

    def render(self, config: Config) -> str:
        return config.templates.render(self.template, self.sub_config(config))

    async def run(self, out: OutputSink, config: Config) -> None:
        if not self.applies(config):
            await out.line(f"[{self.name}] - nothing to do for this node")
            return
        script = self.render(config)
        await self.target(config).run(Command(script=script, out=out))


class StepRegistry:
    """Append-only name -> Step map. Frozen once startup wiring is done."""

    def __init__(self) -> None:
        self._steps: Dict[str, Step] = {}
        self._frozen = False

    def register(self, step: Step) -> None:
        if self._frozen:
            raise RuntimeError("step registry is frozen")
        if not step.name:
            raise ValueError(f"{type(step).__name__} has no name")
        if step.name in self._steps:
            raise ValueError(f"step {step.name!r} already registered")
        self._steps[step.name] = step

    def get(self, name: str) -> Step:
        try:
            return self._steps[name]
        except KeyError:
            raise UnknownStepError(f"Unknown step: {name}") from None

    def names(self) -> List[str]:
        return list(self._steps)

    def freeze(self) -> None:
        self._frozen = True

    def __contains__(self, name: object) -> bool:
        return name in self._steps

    def __len__(self) -> int:
        return len(self._steps)
