"""Locate and assemble plan documents inside a session directory.

Two layouts are supported. A consolidated ``plan.json`` always wins; failing
that, a decomposed ``plan/`` directory is stitched together from one document
per section and one file per step. Documents that cannot be parsed are
treated as absent so that callers see a single "no plan" outcome instead of
a parse exception.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import PurePosixPath
from typing import Any, Dict, Mapping, Optional

from ..errors import CorruptDocumentError
from ..storage import JsonStore, PathLike
from ..utils.text import slugify

LOGGER = logging.getLogger(__name__)

PLAN_FILE = "plan.json"
PLAN_DIR = "plan"
STEPS_DIR = "steps"
META_FILE = "meta.json"
DEPENDENCIES_FILE = "dependencies.json"
TEST_COVERAGE_FILE = "test-coverage.json"
ACCEPTANCE_FILE = "acceptance-mapping.json"

COMPOSABLE_SECTIONS: tuple[str, ...] = ("meta", "steps", "dependencies", "testCoverage", "acceptanceMapping")
DEFAULT_PLAN_VERSION = "1.0.0"


class PlanSource(str, Enum):
    """Where a loaded plan came from."""

    CONSOLIDATED = "consolidated"
    DECOMPOSED = "decomposed"
    NONE = "none"


@dataclass(slots=True)
class LoadedPlan:
    plan: Optional[Dict[str, Any]]
    source: PlanSource
    legacy: bool = False

    @property
    def found(self) -> bool:
        return self.plan is not None


def _utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _join(base: PathLike, *parts: str) -> str:
    return str(PurePosixPath(str(base)).joinpath(*parts))


def is_composable_plan(plan: Any) -> bool:
    """Return ``True`` when every composable section key is present."""
    return isinstance(plan, Mapping) and all(key in plan for key in COMPOSABLE_SECTIONS)


def upgrade_legacy_plan(
    legacy: Mapping[str, Any],
    *,
    dependencies: Optional[Mapping[str, Any]] = None,
    test_coverage: Optional[Mapping[str, Any]] = None,
    acceptance_mapping: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """Convert a flat legacy plan into the composable shape.

    Sections missing from disk are replaced with stand-ins. Empty
    dependencies are valid; the empty test framework and empty mapping list
    are not, so an upgraded plan still surfaces concrete section errors.
    """

    created_at = legacy.get("createdAt") or _utc_iso()
    meta = {
        "version": str(legacy.get("version") or DEFAULT_PLAN_VERSION),
        "sessionId": legacy.get("sessionId") or "",
        "createdAt": created_at,
        "updatedAt": legacy.get("updatedAt") or created_at,
        "isApproved": bool(legacy.get("isApproved", False)),
        "reviewCount": legacy.get("reviewCount", 0),
    }
    return {
        "meta": meta,
        "steps": list(legacy.get("steps") or []),
        "dependencies": dict(dependencies)
        if dependencies is not None
        else {"stepDependencies": [], "externalDependencies": []},
        "testCoverage": dict(test_coverage)
        if test_coverage is not None
        else {"framework": "", "requiredTestTypes": [], "stepCoverage": []},
        "acceptanceMapping": dict(acceptance_mapping)
        if acceptance_mapping is not None
        else {"mappings": [], "updatedAt": _utc_iso()},
    }


class PlanLoader:
    """Read plans through a :class:`JsonStore`."""

    def __init__(self, store: JsonStore) -> None:
        self.store = store

    async def _read(self, path: str) -> Optional[Any]:
        try:
            return await self.store.read_json(path)
        except CorruptDocumentError as error:
            LOGGER.warning("Ignoring unreadable plan document %s: %s", path, error.reason)
            return None

    async def _read_mapping(self, path: str) -> Optional[Dict[str, Any]]:
        data = await self._read(path)
        if data is None:
            return None
        if not isinstance(data, dict):
            LOGGER.warning("Ignoring plan document %s: expected an object, found %s", path, type(data).__name__)
            return None
        return data

    async def load(self, session_dir: PathLike) -> LoadedPlan:
        """Return the session's plan using the first layout that exists."""
        consolidated = await self._read_mapping(_join(session_dir, PLAN_FILE))
        if consolidated is not None:
            if "meta" not in consolidated and "steps" in consolidated:
                LOGGER.info("Upgrading legacy plan layout in %s", session_dir)
                upgraded = upgrade_legacy_plan(
                    consolidated,
                    dependencies=await self._read_mapping(_join(session_dir, DEPENDENCIES_FILE)),
                    test_coverage=await self._read_mapping(_join(session_dir, TEST_COVERAGE_FILE)),
                    acceptance_mapping=await self._read_mapping(_join(session_dir, ACCEPTANCE_FILE)),
                )
                return LoadedPlan(plan=upgraded, source=PlanSource.CONSOLIDATED, legacy=True)
            if not is_composable_plan(consolidated):
                LOGGER.debug("Plan in %s is missing one or more sections", session_dir)
            return LoadedPlan(plan=consolidated, source=PlanSource.CONSOLIDATED)

        decomposed = await self._load_decomposed(session_dir)
        if decomposed is not None:
            return LoadedPlan(plan=decomposed, source=PlanSource.DECOMPOSED)

        LOGGER.debug("No plan found in %s", session_dir)
        return LoadedPlan(plan=None, source=PlanSource.NONE)

    async def _load_decomposed(self, session_dir: PathLike) -> Optional[Dict[str, Any]]:
        plan_dir = _join(session_dir, PLAN_DIR)
        if not await self.store.exists(plan_dir):
            return None

        steps_dir = _join(plan_dir, STEPS_DIR)
        steps: list[Any] = []
        for name in await self.store.list_dir(steps_dir):
            if not name.endswith(".json"):
                continue
            step = await self._read(_join(steps_dir, name))
            if step is not None:
                steps.append(step)

        return {
            "meta": await self._read_mapping(_join(plan_dir, META_FILE)),
            "steps": steps,
            "dependencies": await self._read_mapping(_join(plan_dir, DEPENDENCIES_FILE)),
            "testCoverage": await self._read_mapping(_join(plan_dir, TEST_COVERAGE_FILE)),
            "acceptanceMapping": await self._read_mapping(_join(plan_dir, ACCEPTANCE_FILE)),
        }

    async def write_consolidated(self, session_dir: PathLike, plan: Mapping[str, Any]) -> None:
        await self.store.write_json(_join(session_dir, PLAN_FILE), dict(plan))

    async def write_decomposed(self, session_dir: PathLike, plan: Mapping[str, Any]) -> list[str]:
        """Explode ``plan`` into the ``plan/`` layout; returns the step file names.

        Step files no longer referenced by the plan are removed.
        """

        plan_dir = _join(session_dir, PLAN_DIR)
        steps_dir = _join(plan_dir, STEPS_DIR)

        sections = {
            META_FILE: plan.get("meta"),
            DEPENDENCIES_FILE: plan.get("dependencies"),
            TEST_COVERAGE_FILE: plan.get("testCoverage"),
            ACCEPTANCE_FILE: plan.get("acceptanceMapping"),
        }
        for file_name, section in sections.items():
            if section is not None:
                await self.store.write_json(_join(plan_dir, file_name), section)

        written: list[str] = []
        for index, step in enumerate(plan.get("steps") or [], start=1):
            step_id = step.get("id") if isinstance(step, Mapping) else None
            file_name = f"{index:03d}-{slugify(step_id)}.json"
            await self.store.write_json(_join(steps_dir, file_name), step)
            written.append(file_name)

        for stale in await self.store.list_dir(steps_dir):
            if stale.endswith(".json") and stale not in written:
                await self.store.delete(_join(steps_dir, stale))
        return written


__all__ = [
    "COMPOSABLE_SECTIONS",
    "LoadedPlan",
    "PLAN_DIR",
    "PLAN_FILE",
    "PlanLoader",
    "PlanSource",
    "is_composable_plan",
    "upgrade_legacy_plan",
]
