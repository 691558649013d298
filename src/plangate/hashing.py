"""Content hashes for plan steps and whole plans.

Step hashes let an implementation run skip steps whose text has not changed
since they were completed. Plan hashes, stored as a snapshot before PR
review, detect whether the plan was edited while the review ran.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from pydantic import ValidationError

from .errors import CorruptDocumentError
from .plan.schema import PlanModel
from .storage import JsonStore, PathLike
from .utils.text import normalize_whitespace

LOGGER = logging.getLogger(__name__)

PLAN_SNAPSHOT_FILENAME = ".plan-snapshot.json"
STEP_HASH_LENGTH = 16
PLAN_HASH_LENGTH = 32


def _sha256(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def compute_step_content_hash(title: str | None, description: str | None = None) -> str:
    """Hash normalized ``title|description``; cosmetic whitespace edits do not change it."""
    content = f"{normalize_whitespace(title)}|{normalize_whitespace(description)}"
    return _sha256(content)[:STEP_HASH_LENGTH]


def compute_step_hash(step: Mapping[str, Any]) -> str:
    return compute_step_content_hash(step.get("title"), step.get("description"))


def is_step_content_unchanged(step: Mapping[str, Any]) -> bool:
    """``True`` only when the step carries a hash matching its current text."""
    stored = step.get("contentHash")
    if not stored:
        return False
    return stored == compute_step_hash(step)


def with_content_hash(step: Mapping[str, Any]) -> Dict[str, Any]:
    """Return a copy of ``step`` with ``contentHash`` set from its text."""
    return {**step, "contentHash": compute_step_hash(step)}


def compute_plan_hash(plan: Mapping[str, Any]) -> str:
    """Hash the steps of ``plan`` independent of their order in the document."""
    projected = [
        {
            "id": str(step.get("id", "")),
            "title": normalize_whitespace(step.get("title")),
            "description": normalize_whitespace(step.get("description")),
            "status": step.get("status") or "",
            "complexity": step.get("complexity") or "",
        }
        for step in plan.get("steps") or []
        if isinstance(step, Mapping)
    ]
    projected.sort(key=lambda item: item["id"])
    content = json.dumps(projected, separators=(",", ":"), ensure_ascii=False)
    return _sha256(content)[:PLAN_HASH_LENGTH]


def plans_differ(before: str, after: str) -> bool:
    return before != after


def plan_version_of(plan: Mapping[str, Any]) -> int:
    """Numeric plan revision: ``planVersion`` when present, else the review count."""
    version = plan.get("planVersion")
    if isinstance(version, int):
        return version
    meta = plan.get("meta")
    if isinstance(meta, Mapping) and isinstance(meta.get("reviewCount"), int):
        return meta["reviewCount"]
    return 0


class PlanSnapshot(PlanModel):
    hash: str
    saved_at: str
    plan_version: int = 0


@dataclass(slots=True)
class PlanDrift:
    """Comparison of the current plan against the saved snapshot."""

    changed: bool
    before_hash: str
    after_hash: str


def _snapshot_path(session_dir: PathLike) -> str:
    return f"{session_dir}/{PLAN_SNAPSHOT_FILENAME}"


async def save_plan_snapshot(
    store: JsonStore,
    session_dir: PathLike,
    plan_hash: str,
    plan_version: int,
) -> PlanSnapshot:
    snapshot = PlanSnapshot(
        hash=plan_hash,
        saved_at=datetime.now(timezone.utc).isoformat(),
        plan_version=plan_version,
    )
    await store.write_json(_snapshot_path(session_dir), snapshot.to_document())
    LOGGER.info("Saved plan snapshot %s for %s", plan_hash, session_dir)
    return snapshot


async def load_plan_snapshot(store: JsonStore, session_dir: PathLike) -> Optional[PlanSnapshot]:
    """Return the saved snapshot, or ``None`` when it is missing or unreadable."""
    path = _snapshot_path(session_dir)
    try:
        data = await store.read_json(path)
    except CorruptDocumentError as error:
        LOGGER.warning("Ignoring unreadable plan snapshot %s: %s", path, error.reason)
        return None
    if data is None:
        return None
    try:
        return PlanSnapshot.model_validate(data)
    except ValidationError:
        LOGGER.warning("Ignoring malformed plan snapshot %s", path)
        return None


async def delete_plan_snapshot(store: JsonStore, session_dir: PathLike) -> bool:
    return await store.delete(_snapshot_path(session_dir))


async def has_plan_changed_since_snapshot(
    store: JsonStore,
    session_dir: PathLike,
    plan: Mapping[str, Any],
) -> Optional[PlanDrift]:
    """Compare ``plan`` with the snapshot; ``None`` when no snapshot exists."""
    snapshot = await load_plan_snapshot(store, session_dir)
    if snapshot is None:
        return None
    current = compute_plan_hash(plan)
    return PlanDrift(
        changed=plans_differ(snapshot.hash, current),
        before_hash=snapshot.hash,
        after_hash=current,
    )


__all__ = [
    "PLAN_SNAPSHOT_FILENAME",
    "PlanDrift",
    "PlanSnapshot",
    "compute_plan_hash",
    "compute_step_content_hash",
    "compute_step_hash",
    "delete_plan_snapshot",
    "has_plan_changed_since_snapshot",
    "is_step_content_unchanged",
    "load_plan_snapshot",
    "plan_version_of",
    "plans_differ",
    "save_plan_snapshot",
    "with_content_hash",
]
