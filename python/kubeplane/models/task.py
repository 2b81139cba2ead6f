"""
kubeplane/models/task.py

Persisted task records (`tasks/<id>`): per-step status list plus a copy of the
task's pipeline config at the time of the last write.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import Field

from kubeplane.models.base import KubeplaneModel
from kubeplane.models.machine import utcnow


class StepState(str, Enum):
    todo = "todo"
    executing = "executing"
    success = "success"
    error = "error"
    cancelled = "cancelled"
    skipped = "skipped"

    @property
    def rank(self) -> int:
        """Progress order: todo < executing < every terminal state."""
        return _RANK[self]

    @property
    def terminal(self) -> bool:
        return self.rank == 2


_RANK = {
    StepState.todo: 0,
    StepState.executing: 1,
    StepState.success: 2,
    StepState.error: 2,
    StepState.cancelled: 2,
    StepState.skipped: 2,
}


class TaskStatus(str, Enum):
    todo = "todo"
    executing = "executing"
    success = "success"
    error = "error"
    cancelled = "cancelled"


class StepStatus(KubeplaneModel):
    step: str
    status: StepState = StepState.todo
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    attempts: int = 0


class TaskSnapshot(KubeplaneModel):
    id: str
    type: str
    cluster_id: str
    created_at: datetime = Field(default_factory=utcnow)
    status: TaskStatus = TaskStatus.todo
    attempt: int = 0
    step_statuses: List[StepStatus] = Field(default_factory=list)
    config: Dict[str, Any] = Field(default_factory=dict)

    def status_of(self, step: str) -> Optional[StepStatus]:
        return next((s for s in self.step_statuses if s.step == step), None)

    def first_unfinished(self) -> int:
        """Index of the first step that is neither success nor skipped."""
        for idx, st in enumerate(self.step_statuses):
            if st.status not in (StepState.success, StepState.skipped):
                return idx
        return len(self.step_statuses)
