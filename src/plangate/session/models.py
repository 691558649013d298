"""Typed session records tracked by the session store."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class SessionStatus(str, Enum):
    """Lifecycle states for a session."""

    QUEUED = "queued"
    DISCOVERY = "discovery"
    PLANNING = "planning"
    IMPLEMENTING = "implementing"
    PR_CREATION = "pr_creation"
    PR_REVIEW = "pr_review"
    FINAL_APPROVAL = "final_approval"
    COMPLETED = "completed"
    PAUSED = "paused"
    FAILED = "failed"


class BackoutReason(str, Enum):
    USER_REQUESTED = "user_requested"
    BLOCKED = "blocked"
    DEPRIORITIZED = "deprioritized"


class BackoutAction(str, Enum):
    PAUSE = "pause"
    ABANDON = "abandon"


STAGE_STATUS: Dict[int, SessionStatus] = {
    1: SessionStatus.DISCOVERY,
    2: SessionStatus.PLANNING,
    3: SessionStatus.IMPLEMENTING,
    4: SessionStatus.PR_CREATION,
    5: SessionStatus.PR_REVIEW,
}

FIRST_STAGE = 1
PLANNING_STAGE = 2
IMPLEMENTATION_STAGE = 3
PR_REVIEW_STAGE = 5
LAST_STAGE = 5

TERMINAL_STATUSES: FrozenSet[SessionStatus] = frozenset({SessionStatus.COMPLETED, SessionStatus.FAILED})

# Statuses that hold the project's single active slot.
ACTIVE_STATUSES: FrozenSet[SessionStatus] = frozenset(
    {*STAGE_STATUS.values(), SessionStatus.FINAL_APPROVAL}
)


class Session(BaseModel):
    """One feature session moving through the stage pipeline."""

    model_config = ConfigDict(extra="forbid")

    project_id: str
    feature_id: str
    title: str = ""
    session_dir: str
    status: SessionStatus = SessionStatus.DISCOVERY
    current_stage: int = Field(FIRST_STAGE, ge=FIRST_STAGE, le=LAST_STAGE)
    queue_position: Optional[int] = Field(None, ge=1)
    plan_validation_attempts: int = Field(0, ge=0)
    plan_validation_context: Optional[str] = None
    backout_reason: Optional[BackoutReason] = None
    backout_timestamp: Optional[datetime] = None
    data_version: int = Field(1, ge=1)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def key(self) -> str:
        return f"{self.project_id}/{self.feature_id}"

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


__all__ = [
    "ACTIVE_STATUSES",
    "BackoutAction",
    "BackoutReason",
    "FIRST_STAGE",
    "IMPLEMENTATION_STAGE",
    "LAST_STAGE",
    "PLANNING_STAGE",
    "PR_REVIEW_STAGE",
    "STAGE_STATUS",
    "Session",
    "SessionStatus",
    "TERMINAL_STATUSES",
    "utc_now",
]
