from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class TaskError(BaseModel):
    task: str
    message: str
    order_id: Optional[str] = None


class TransitionResult(BaseModel):
    opened: List[str] = Field(default_factory=list)
    closed: List[str] = Field(default_factory=list)
    reminders: int = 0
    recovered: int = 0
    budget_exhausted: bool = False
    errors: List[TaskError] = Field(default_factory=list)


class TaskRunResult(BaseModel):
    name: str
    success: bool
    duration_ms: int = 0
    error: Optional[str] = None
    counters: Dict[str, int] = Field(default_factory=dict)
    item_errors: List[TaskError] = Field(default_factory=list)


class RunSummary(BaseModel):
    """What one automation tick did; returned by every trigger."""

    request_id: str
    opened: int = 0
    closed: int = 0
    reminders: int = 0
    processed: int = 0
    failed: int = 0
    duration_ms: int = 0
    errors: List[TaskError] = Field(default_factory=list)
    tasks: List[TaskRunResult] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return all(task.success for task in self.tasks)
