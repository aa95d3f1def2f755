from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not TaskStatus.PENDING


class WebhookTask(BaseModel):
    id: str
    target_url: str
    payload: Any = None
    attempts: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=5, ge=1)
    next_attempt_at: datetime = Field(default_factory=utcnow)
    status: TaskStatus = TaskStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    claimed_until: Optional[datetime] = None

    @model_validator(mode="after")
    def check_attempts(self) -> "WebhookTask":
        if self.attempts > self.max_attempts:
            raise ValueError(
                f"attempts ({self.attempts}) exceeds max_attempts ({self.max_attempts})"
            )
        return self

    @property
    def next_attempt_number(self) -> int:
        """1-indexed number of the attempt about to be made."""
        return self.attempts + 1


class EnqueueRequest(BaseModel):
    target_url: str
    payload: Any = None
    max_attempts: Optional[int] = Field(default=None, ge=1)
    initial_delay: float = Field(default=0, ge=0)  # seconds


class DeliveryResult(BaseModel):
    task_id: str
    attempt: int
    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None


class BatchResult(BaseModel):
    fetched: int = 0
    claimed: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    errors: int = 0
