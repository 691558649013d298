"""Session records, their store and the stage machine."""

from .machine import (
    BackoutOutcome,
    GateVerdict,
    PlanGateResult,
    ResumeOutcome,
    SessionStageMachine,
    StageTransition,
)
from .models import BackoutAction, BackoutReason, Session, SessionStatus
from .store import SessionStore

__all__ = [
    "BackoutAction",
    "BackoutOutcome",
    "BackoutReason",
    "GateVerdict",
    "PlanGateResult",
    "ResumeOutcome",
    "Session",
    "SessionStageMachine",
    "SessionStatus",
    "SessionStore",
    "StageTransition",
]
