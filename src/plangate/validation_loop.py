"""Bounded retry policy for plan validation passes."""

from __future__ import annotations

import logging
from typing import Optional

MAX_PLAN_VALIDATION_ATTEMPTS = 3
CONTEXT_PREVIEW_LENGTH = 200

LOGGER = logging.getLogger(__name__)


class ValidationLoopController:
    """Decide whether another re-prompt pass is allowed and log each pass.

    The controller holds no per-session state; the attempt count lives on the
    session record and is passed in by the caller.
    """

    def __init__(
        self,
        logger: Optional[logging.Logger] = None,
        max_attempts: int = MAX_PLAN_VALIDATION_ATTEMPTS,
    ) -> None:
        if max_attempts < 0:
            raise ValueError("max_attempts must not be negative")
        self.logger = logger or LOGGER
        self.max_attempts = max_attempts

    def should_continue_validation(self, current_attempts: int, max_attempts: Optional[int] = None) -> bool:
        limit = self.max_attempts if max_attempts is None else max_attempts
        return current_attempts < limit

    def log_validation_attempt(
        self,
        session_key: str,
        attempt: int,
        max_attempts: Optional[int] = None,
        context: str = "",
    ) -> None:
        limit = self.max_attempts if max_attempts is None else max_attempts
        preview = context[:CONTEXT_PREVIEW_LENGTH]
        if len(context) > CONTEXT_PREVIEW_LENGTH:
            preview += "..."
        self.logger.info(
            "[Plan Validation] %s: attempt %d/%d failed: %s",
            session_key,
            attempt,
            limit,
            preview,
            extra={
                "event": "plan_validation_attempt",
                "session_key": session_key,
                "attempt": attempt,
                "max_attempts": limit,
            },
        )

    def log_validation_success(self, session_key: str, attempts: int) -> None:
        self.logger.info(
            "[Plan Validation] %s: succeeded after %d attempt(s)",
            session_key,
            attempts,
            extra={"event": "plan_validation_success", "session_key": session_key, "attempt": attempts},
        )

    def log_validation_max_attempts_reached(self, session_key: str, max_attempts: Optional[int] = None) -> None:
        limit = self.max_attempts if max_attempts is None else max_attempts
        self.logger.warning(
            "[Plan Validation] %s: Max attempts (%d) reached; plan still incomplete",
            session_key,
            limit,
            extra={"event": "plan_validation_exhausted", "session_key": session_key, "max_attempts": limit},
        )


__all__ = ["CONTEXT_PREVIEW_LENGTH", "MAX_PLAN_VALIDATION_ATTEMPTS", "ValidationLoopController"]
