"""Stage and queue state machine for feature sessions.

Each project has at most one active session; the rest wait in a dense FIFO
queue (positions ``1..N``). Every mutating call receives the caller's
last-seen ``data_version`` and fails with :class:`VersionConflictError` when
the record moved on in the meantime. All queue reshuffles for a request
happen inside one store transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from ..errors import InvalidTransitionError, SessionNotFoundError, VersionConflictError
from ..hashing import (
    PlanDrift,
    compute_plan_hash,
    delete_plan_snapshot,
    has_plan_changed_since_snapshot,
    plan_version_of,
    save_plan_snapshot,
)
from ..plan.completion import CompletenessResult, PlanCompletionChecker, RepromptContext
from ..plan.loader import PlanLoader
from ..storage import JsonStore
from ..validation_loop import ValidationLoopController
from .models import (
    FIRST_STAGE,
    IMPLEMENTATION_STAGE,
    LAST_STAGE,
    PLANNING_STAGE,
    PR_REVIEW_STAGE,
    STAGE_STATUS,
    BackoutAction,
    BackoutReason,
    Session,
    SessionStatus,
    utc_now,
)
from .store import SessionStore, SessionTransaction

LOGGER = logging.getLogger(__name__)


class GateVerdict(str, Enum):
    """What the plan gate decided when a session tried to enter stage 3."""

    ADVANCED = "advanced"
    RETURNED_TO_PLANNING = "returned_to_planning"
    HALTED = "halted"


@dataclass(slots=True)
class PlanGateResult:
    verdict: GateVerdict
    completeness: CompletenessResult
    reprompt: Optional[RepromptContext] = None


@dataclass(slots=True)
class StageTransition:
    """Result of a stage change request."""

    session: Session
    previous_stage: int
    advanced: bool
    gate: Optional[PlanGateResult] = None
    drift: Optional[PlanDrift] = None
    promoted_session: Optional[Session] = None


@dataclass(slots=True)
class BackoutOutcome:
    session: Session
    promoted_session: Optional[Session] = None


@dataclass(slots=True)
class ResumeOutcome:
    session: Session
    was_queued: bool


def _require_version(session: Session, expected_version: int) -> None:
    if session.data_version != expected_version:
        raise VersionConflictError(session.key, expected_version, session.data_version)


class SessionStageMachine:
    """Drive sessions through discovery, planning, implementation and review."""

    def __init__(
        self,
        store: SessionStore,
        plan_store: JsonStore,
        checker: Optional[PlanCompletionChecker] = None,
        loop: Optional[ValidationLoopController] = None,
    ) -> None:
        self.store = store
        self.plan_store = plan_store
        self.loader = PlanLoader(plan_store)
        self.checker = checker or PlanCompletionChecker(loader=self.loader)
        if self.checker.loader is None:
            self.checker.loader = self.loader
        self.loop = loop or ValidationLoopController()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    async def get_session(self, project_id: str, feature_id: str) -> Session:
        session = await self.store.get(project_id, feature_id)
        if session is None:
            raise SessionNotFoundError(project_id, feature_id)
        return session

    async def list_sessions(self, project_id: str) -> List[Session]:
        return await self.store.list_project(project_id)

    async def _load(self, tx: SessionTransaction, project_id: str, feature_id: str) -> Session:
        session = await tx.get(project_id, feature_id)
        if session is None:
            raise SessionNotFoundError(project_id, feature_id)
        return session

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------
    async def create_session(
        self,
        project_id: str,
        feature_id: str,
        session_dir: str,
        *,
        title: str = "",
    ) -> Session:
        """Start in discovery, or join the back of the queue if the slot is taken."""
        async with self.store.transaction() as tx:
            siblings = await tx.list_project(project_id)
            if any(sibling.is_active for sibling in siblings):
                position = sum(1 for sibling in siblings if sibling.status == SessionStatus.QUEUED) + 1
                session = Session(
                    project_id=project_id,
                    feature_id=feature_id,
                    title=title,
                    session_dir=session_dir,
                    status=SessionStatus.QUEUED,
                    queue_position=position,
                )
            else:
                session = Session(
                    project_id=project_id,
                    feature_id=feature_id,
                    title=title,
                    session_dir=session_dir,
                    status=SessionStatus.DISCOVERY,
                )
            await tx.insert(session)
        LOGGER.info("Created session %s as %s", session.key, session.status.value)
        return session

    # ------------------------------------------------------------------
    # Stage transitions
    # ------------------------------------------------------------------
    async def transition_stage(
        self,
        project_id: str,
        feature_id: str,
        target_stage: int,
        expected_version: int,
    ) -> StageTransition:
        """Move forward one stage, or back to planning from stages 3-5.

        Entering implementation runs the plan gate; entering PR review saves
        a plan snapshot so edits made during review can be detected.
        """

        async with self.store.transaction() as tx:
            session = await self._load(tx, project_id, feature_id)
            _require_version(session, expected_version)
            self._check_stage_move(session, target_stage)
            previous = session.current_stage

            if target_stage == IMPLEMENTATION_STAGE and previous == PLANNING_STAGE:
                return await self._run_plan_gate(tx, session, expected_version)

            update = {"current_stage": target_stage, "status": STAGE_STATUS[target_stage]}
            if target_stage == PLANNING_STAGE and previous > PLANNING_STAGE:
                update.update(plan_validation_attempts=0, plan_validation_context=None)
            stored = await tx.update(session.model_copy(update=update), expected_version)

            if target_stage == PR_REVIEW_STAGE:
                await self._snapshot_plan(stored)

        LOGGER.info("Session %s moved from stage %d to stage %d", stored.key, previous, target_stage)
        return StageTransition(session=stored, previous_stage=previous, advanced=target_stage > previous)

    @staticmethod
    def _check_stage_move(session: Session, target_stage: int) -> None:
        if session.status not in STAGE_STATUS.values():
            raise InvalidTransitionError(
                f"Cannot change stage of session {session.key}: session is {session.status.value}"
            )
        if not FIRST_STAGE <= target_stage <= LAST_STAGE:
            raise InvalidTransitionError(f"Unknown stage {target_stage}")
        current = session.current_stage
        forward = target_stage == current + 1
        back_to_planning = target_stage == PLANNING_STAGE and current > PLANNING_STAGE
        if not (forward or back_to_planning):
            raise InvalidTransitionError(
                f"Cannot move session {session.key} from stage {current} to stage {target_stage}"
            )

    async def _run_plan_gate(
        self,
        tx: SessionTransaction,
        session: Session,
        expected_version: int,
    ) -> StageTransition:
        completeness = await self.checker.check_plan_completeness(session.session_dir)
        previous = session.current_stage

        if completeness.complete:
            self.loop.log_validation_success(session.key, session.plan_validation_attempts)
            stored = await tx.update(
                session.model_copy(
                    update={
                        "current_stage": IMPLEMENTATION_STAGE,
                        "status": STAGE_STATUS[IMPLEMENTATION_STAGE],
                        "plan_validation_attempts": 0,
                        "plan_validation_context": None,
                    }
                ),
                expected_version,
            )
            gate = PlanGateResult(verdict=GateVerdict.ADVANCED, completeness=completeness)
            return StageTransition(session=stored, previous_stage=previous, advanced=True, gate=gate)

        attempts = session.plan_validation_attempts
        reprompt = self.checker.build_reprompt_context(completeness.validation_result)
        narrative = completeness.missing_context or reprompt.detailed_context

        if self.loop.should_continue_validation(attempts):
            attempts += 1
            self.loop.log_validation_attempt(session.key, attempts, self.loop.max_attempts, narrative)
            stored = await tx.update(
                session.model_copy(
                    update={"plan_validation_attempts": attempts, "plan_validation_context": narrative}
                ),
                expected_version,
            )
            gate = PlanGateResult(
                verdict=GateVerdict.RETURNED_TO_PLANNING,
                completeness=completeness,
                reprompt=reprompt,
            )
            return StageTransition(session=stored, previous_stage=previous, advanced=False, gate=gate)

        self.loop.log_validation_max_attempts_reached(session.key, self.loop.max_attempts)
        stored = await tx.update(
            session.model_copy(
                update={
                    "status": SessionStatus.FAILED,
                    "plan_validation_attempts": attempts,
                    "plan_validation_context": narrative,
                    "backout_reason": BackoutReason.BLOCKED,
                    "backout_timestamp": utc_now(),
                    "queue_position": None,
                }
            ),
            expected_version,
        )
        promoted = await self._promote_next(tx, session.project_id)
        gate = PlanGateResult(verdict=GateVerdict.HALTED, completeness=completeness, reprompt=reprompt)
        return StageTransition(
            session=stored,
            previous_stage=previous,
            advanced=False,
            gate=gate,
            promoted_session=promoted,
        )

    async def _snapshot_plan(self, session: Session) -> None:
        loaded = await self.loader.load(session.session_dir)
        if loaded.plan is None:
            LOGGER.warning("No plan to snapshot for session %s", session.key)
            return
        await save_plan_snapshot(
            self.plan_store,
            session.session_dir,
            compute_plan_hash(loaded.plan),
            plan_version_of(loaded.plan),
        )

    async def complete_pr_review(
        self,
        project_id: str,
        feature_id: str,
        expected_version: int,
    ) -> StageTransition:
        """Finish PR review: back to planning if the plan drifted, else final approval."""
        async with self.store.transaction() as tx:
            session = await self._load(tx, project_id, feature_id)
            _require_version(session, expected_version)
            if session.status != SessionStatus.PR_REVIEW:
                raise InvalidTransitionError(
                    f"Cannot complete PR review for session {session.key}: session is {session.status.value}"
                )

            loaded = await self.loader.load(session.session_dir)
            drift = None
            if loaded.plan is not None:
                drift = await has_plan_changed_since_snapshot(self.plan_store, session.session_dir, loaded.plan)

            if drift is not None and drift.changed:
                LOGGER.info(
                    "Plan for session %s changed during review (%s -> %s); returning to planning",
                    session.key,
                    drift.before_hash,
                    drift.after_hash,
                )
                update = {
                    "current_stage": PLANNING_STAGE,
                    "status": STAGE_STATUS[PLANNING_STAGE],
                    "plan_validation_attempts": 0,
                    "plan_validation_context": None,
                }
            else:
                update = {"status": SessionStatus.FINAL_APPROVAL}
            stored = await tx.update(session.model_copy(update=update), expected_version)
            await delete_plan_snapshot(self.plan_store, session.session_dir)

        return StageTransition(
            session=stored,
            previous_stage=session.current_stage,
            advanced=stored.status == SessionStatus.FINAL_APPROVAL,
            drift=drift,
        )

    async def complete_session(self, project_id: str, feature_id: str, expected_version: int) -> StageTransition:
        """Mark an approved session completed and hand the slot to the queue head."""
        async with self.store.transaction() as tx:
            session = await self._load(tx, project_id, feature_id)
            _require_version(session, expected_version)
            if session.status != SessionStatus.FINAL_APPROVAL:
                raise InvalidTransitionError(
                    f"Cannot complete session {session.key}: session is {session.status.value}"
                )
            stored = await tx.update(
                session.model_copy(update={"status": SessionStatus.COMPLETED}), expected_version
            )
            promoted = await self._promote_next(tx, project_id)
        LOGGER.info("Session %s completed", stored.key)
        return StageTransition(
            session=stored,
            previous_stage=stored.current_stage,
            advanced=True,
            promoted_session=promoted,
        )

    # ------------------------------------------------------------------
    # Backout and resume
    # ------------------------------------------------------------------
    async def backout(
        self,
        project_id: str,
        feature_id: str,
        action: BackoutAction,
        expected_version: int,
        reason: BackoutReason = BackoutReason.USER_REQUESTED,
    ) -> BackoutOutcome:
        """Pause or abandon a session, keeping its stage, and refill the slot."""
        async with self.store.transaction() as tx:
            session = await self._load(tx, project_id, feature_id)
            _require_version(session, expected_version)
            if session.is_terminal or session.status == SessionStatus.PAUSED:
                raise InvalidTransitionError(
                    f"Cannot back out session {session.key}: session is {session.status.value}"
                )

            was_active = session.is_active
            old_position = session.queue_position
            status = SessionStatus.PAUSED if action == BackoutAction.PAUSE else SessionStatus.FAILED
            stored = await tx.update(
                session.model_copy(
                    update={
                        "status": status,
                        "backout_reason": reason,
                        "backout_timestamp": utc_now(),
                        "queue_position": None,
                    }
                ),
                expected_version,
            )

            promoted = None
            if old_position is not None:
                await self._shift_queue(tx, project_id, after=old_position, delta=-1)
            if was_active:
                promoted = await self._promote_next(tx, project_id)

        LOGGER.info(
            "Session %s backed out (%s, %s)%s",
            stored.key,
            action.value,
            reason.value,
            f"; promoted {promoted.key}" if promoted else "",
        )
        return BackoutOutcome(session=stored, promoted_session=promoted)

    async def resume(self, project_id: str, feature_id: str, expected_version: int) -> ResumeOutcome:
        """Resume a paused session, or put it at the front of the queue."""
        async with self.store.transaction() as tx:
            session = await self._load(tx, project_id, feature_id)
            _require_version(session, expected_version)
            if session.status != SessionStatus.PAUSED:
                raise InvalidTransitionError(
                    f"Cannot resume session {session.key}: session is {session.status.value}"
                )

            siblings = await tx.list_project(project_id)
            slot_taken = any(sibling.is_active for sibling in siblings if sibling.key != session.key)
            cleared = {"backout_reason": None, "backout_timestamp": None}
            if slot_taken:
                await self._shift_queue(tx, project_id, after=0, delta=1)
                update = {**cleared, "status": SessionStatus.QUEUED, "queue_position": 1}
            else:
                update = {**cleared, "status": STAGE_STATUS[session.current_stage], "queue_position": None}
            stored = await tx.update(session.model_copy(update=update), expected_version)

        LOGGER.info("Session %s resumed as %s", stored.key, stored.status.value)
        return ResumeOutcome(session=stored, was_queued=slot_taken)

    # ------------------------------------------------------------------
    # Queue maintenance
    # ------------------------------------------------------------------
    async def _shift_queue(self, tx: SessionTransaction, project_id: str, *, after: int, delta: int) -> None:
        for sibling in await tx.list_project(project_id):
            if sibling.status != SessionStatus.QUEUED or sibling.queue_position is None:
                continue
            if sibling.queue_position > after:
                await tx.update(
                    sibling.model_copy(update={"queue_position": sibling.queue_position + delta}),
                    sibling.data_version,
                )

    async def _promote_next(self, tx: SessionTransaction, project_id: str) -> Optional[Session]:
        siblings = await tx.list_project(project_id)
        if any(sibling.is_active for sibling in siblings):
            return None
        queued = sorted(
            (sibling for sibling in siblings if sibling.status == SessionStatus.QUEUED),
            key=lambda sibling: sibling.queue_position or 0,
        )
        if not queued:
            return None
        head = queued[0]
        promoted = await tx.update(
            head.model_copy(update={"status": STAGE_STATUS[head.current_stage], "queue_position": None}),
            head.data_version,
        )
        await self._shift_queue(tx, project_id, after=head.queue_position or 0, delta=-1)
        return promoted


__all__ = [
    "BackoutOutcome",
    "GateVerdict",
    "PlanGateResult",
    "ResumeOutcome",
    "SessionStageMachine",
    "StageTransition",
]
