"""Edit-and-resubmit documents used to revise an existing plan.

When a plan fails validation the generator does not rewrite the whole plan.
It drops one or more ``new-*.json`` documents into the plan directory and
:func:`apply_revisions` merges them into the current plan. Merging is pure:
the input plan is never mutated.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Type, TypeVar

from pydantic import Field, ValidationError

from ..errors import CorruptDocumentError
from ..storage import JsonStore, PathLike
from .loader import PLAN_DIR, PlanLoader, PlanSource
from .schema import (
    AcceptanceCriteriaStepMapping,
    ExternalDependency,
    PlanModel,
    PlanStep,
    StepDependency,
    StepStatus,
    StepTestCoverage,
)
from .validator import format_validation_error

LOGGER = logging.getLogger(__name__)

NEW_STEPS_FILE = "new-steps.json"
NEW_DEPENDENCIES_FILE = "new-dependencies.json"
NEW_TEST_COVERAGE_FILE = "new-test-coverage.json"
NEW_ACCEPTANCE_FILE = "new-acceptance.json"

ModelT = TypeVar("ModelT", bound=PlanModel)


class NewStepsInput(PlanModel):
    steps: List[PlanStep] = Field(default_factory=list)
    remove_step_ids: List[str] = Field(default_factory=list)


class StepDependencyRef(PlanModel):
    step_id: str
    depends_on: str


class NewDependenciesInput(PlanModel):
    add_step_dependencies: List[StepDependency] = Field(default_factory=list)
    remove_step_dependencies: List[StepDependencyRef] = Field(default_factory=list)
    add_external_dependencies: List[ExternalDependency] = Field(default_factory=list)
    remove_external_dependencies: List[str] = Field(default_factory=list)


class NewTestCoverageInput(PlanModel):
    framework: Optional[str] = None
    required_test_types: Optional[List[str]] = None
    step_coverage: List[StepTestCoverage] = Field(default_factory=list)
    global_coverage_target: Optional[float] = Field(None, ge=0, le=100)


class NewAcceptanceMappingInput(PlanModel):
    mappings: List[AcceptanceCriteriaStepMapping]


@dataclass(slots=True)
class RevisionSet:
    """Revision documents found in a plan directory, plus parse problems."""

    steps: Optional[NewStepsInput] = None
    dependencies: Optional[NewDependenciesInput] = None
    test_coverage: Optional[NewTestCoverageInput] = None
    acceptance: Optional[NewAcceptanceMappingInput] = None
    errors: List[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return all(item is None for item in (self.steps, self.dependencies, self.test_coverage, self.acceptance))


def _upsert(items: List[Dict[str, Any]], key: str, document: Dict[str, Any]) -> None:
    for index, existing in enumerate(items):
        if isinstance(existing, Mapping) and existing.get(key) == document.get(key):
            items[index] = {**existing, **document}
            return
    items.append(document)


def apply_new_steps(plan: Mapping[str, Any], revision: NewStepsInput) -> Dict[str, Any]:
    """Add or update steps by id and drop ``removeStepIds``.

    New steps start ``pending``; updated steps keep their current status.
    References to removed steps elsewhere in the plan are left for the
    validator to report.
    """

    updated = copy.deepcopy(dict(plan))
    steps: List[Dict[str, Any]] = [step for step in updated.get("steps") or [] if isinstance(step, Mapping)]
    by_id = {step.get("id"): index for index, step in enumerate(steps)}

    for step in revision.steps:
        document = step.to_document()
        document.pop("status", None)
        index = by_id.get(step.id)
        if index is None:
            document["status"] = StepStatus.PENDING.value
            by_id[step.id] = len(steps)
            steps.append(document)
        else:
            steps[index] = {**steps[index], **document}

    removed = set(revision.remove_step_ids)
    steps = [step for step in steps if step.get("id") not in removed]
    steps.sort(key=lambda step: step.get("orderIndex", 0) if isinstance(step.get("orderIndex"), int) else 0)
    updated["steps"] = steps
    return updated


def apply_new_dependencies(plan: Mapping[str, Any], revision: NewDependenciesInput) -> Dict[str, Any]:
    updated = copy.deepcopy(dict(plan))
    dependencies = dict(updated.get("dependencies") or {})
    edges: List[Dict[str, Any]] = [
        edge for edge in dependencies.get("stepDependencies") or [] if isinstance(edge, Mapping)
    ]
    externals: List[Dict[str, Any]] = [
        item for item in dependencies.get("externalDependencies") or [] if isinstance(item, Mapping)
    ]

    removals = {(ref.step_id, ref.depends_on) for ref in revision.remove_step_dependencies}
    edges = [edge for edge in edges if (edge.get("stepId"), edge.get("dependsOn")) not in removals]
    existing_pairs = {(edge.get("stepId"), edge.get("dependsOn")) for edge in edges}
    for edge in revision.add_step_dependencies:
        if (edge.step_id, edge.depends_on) not in existing_pairs:
            edges.append(edge.to_document())
            existing_pairs.add((edge.step_id, edge.depends_on))

    dropped = set(revision.remove_external_dependencies)
    externals = [item for item in externals if item.get("name") not in dropped]
    for external in revision.add_external_dependencies:
        _upsert(externals, "name", external.to_document())

    dependencies["stepDependencies"] = edges
    dependencies["externalDependencies"] = externals
    updated["dependencies"] = dependencies
    return updated


def apply_new_test_coverage(plan: Mapping[str, Any], revision: NewTestCoverageInput) -> Dict[str, Any]:
    updated = copy.deepcopy(dict(plan))
    coverage = dict(updated.get("testCoverage") or {})
    coverage.setdefault("framework", "")
    coverage.setdefault("requiredTestTypes", [])
    step_coverage: List[Dict[str, Any]] = list(coverage.get("stepCoverage") or [])

    if revision.framework is not None:
        coverage["framework"] = revision.framework
    if revision.required_test_types is not None:
        coverage["requiredTestTypes"] = list(revision.required_test_types)
    if revision.global_coverage_target is not None:
        coverage["globalCoverageTarget"] = revision.global_coverage_target
    for entry in revision.step_coverage:
        _upsert(step_coverage, "stepId", entry.to_document())

    coverage["stepCoverage"] = step_coverage
    updated["testCoverage"] = coverage
    return updated


def apply_new_acceptance(
    plan: Mapping[str, Any],
    revision: NewAcceptanceMappingInput,
    *,
    updated_at: str,
) -> Dict[str, Any]:
    updated = copy.deepcopy(dict(plan))
    acceptance = dict(updated.get("acceptanceMapping") or {})
    mappings: List[Dict[str, Any]] = list(acceptance.get("mappings") or [])
    for mapping in revision.mappings:
        _upsert(mappings, "criterionId", mapping.to_document())
    acceptance["mappings"] = mappings
    acceptance["updatedAt"] = updated_at
    updated["acceptanceMapping"] = acceptance
    return updated


def apply_revisions(plan: Mapping[str, Any], revisions: RevisionSet, *, updated_at: str) -> Dict[str, Any]:
    """Merge every present revision document into ``plan``."""
    result: Dict[str, Any] = copy.deepcopy(dict(plan))
    if revisions.steps is not None:
        result = apply_new_steps(result, revisions.steps)
    if revisions.dependencies is not None:
        result = apply_new_dependencies(result, revisions.dependencies)
    if revisions.test_coverage is not None:
        result = apply_new_test_coverage(result, revisions.test_coverage)
    if revisions.acceptance is not None:
        result = apply_new_acceptance(result, revisions.acceptance, updated_at=updated_at)
    meta = result.get("meta")
    if isinstance(meta, Mapping) and not revisions.empty:
        result["meta"] = {**meta, "updatedAt": updated_at}
    return result


async def _read_revision(
    store: JsonStore,
    path: str,
    model: Type[ModelT],
    errors: List[str],
) -> Optional[ModelT]:
    try:
        data = await store.read_json(path)
    except CorruptDocumentError as error:
        errors.append(f"{path}: {error.reason}")
        return None
    if data is None:
        return None
    try:
        return model.model_validate(data)
    except ValidationError as error:
        errors.extend(f"{path}: {message}" for message in format_validation_error(error))
        return None


async def load_revision_documents(store: JsonStore, session_dir: PathLike) -> RevisionSet:
    """Read whichever ``new-*.json`` documents exist in the plan directory."""
    plan_dir = f"{session_dir}/{PLAN_DIR}"
    revisions = RevisionSet()
    revisions.steps = await _read_revision(store, f"{plan_dir}/{NEW_STEPS_FILE}", NewStepsInput, revisions.errors)
    revisions.dependencies = await _read_revision(
        store, f"{plan_dir}/{NEW_DEPENDENCIES_FILE}", NewDependenciesInput, revisions.errors
    )
    revisions.test_coverage = await _read_revision(
        store, f"{plan_dir}/{NEW_TEST_COVERAGE_FILE}", NewTestCoverageInput, revisions.errors
    )
    revisions.acceptance = await _read_revision(
        store, f"{plan_dir}/{NEW_ACCEPTANCE_FILE}", NewAcceptanceMappingInput, revisions.errors
    )
    if revisions.errors:
        LOGGER.warning("Rejected %d revision problem(s) in %s", len(revisions.errors), plan_dir)
    return revisions


async def clear_revision_documents(store: JsonStore, session_dir: PathLike) -> int:
    """Delete consumed revision documents; returns how many were removed."""
    plan_dir = f"{session_dir}/{PLAN_DIR}"
    removed = 0
    for name in (NEW_STEPS_FILE, NEW_DEPENDENCIES_FILE, NEW_TEST_COVERAGE_FILE, NEW_ACCEPTANCE_FILE):
        if await store.delete(f"{plan_dir}/{name}"):
            removed += 1
    return removed


@dataclass(slots=True)
class RevisionOutcome:
    """Result of folding revision documents into a stored plan."""

    plan: Optional[Dict[str, Any]]
    applied: bool
    errors: List[str] = field(default_factory=list)


async def revise_stored_plan(loader: PlanLoader, session_dir: PathLike) -> RevisionOutcome:
    """Apply pending revision documents to the plan in ``session_dir``.

    The plan is written back in the layout it was loaded from and consumed
    revision documents are deleted. Nothing is written when any revision
    document is invalid.
    """

    loaded = await loader.load(session_dir)
    revisions = await load_revision_documents(loader.store, session_dir)
    if revisions.errors:
        return RevisionOutcome(plan=loaded.plan, applied=False, errors=list(revisions.errors))
    if revisions.empty:
        return RevisionOutcome(plan=loaded.plan, applied=False)

    revised = apply_revisions(
        loaded.plan or {}, revisions, updated_at=datetime.now(timezone.utc).isoformat()
    )
    if loaded.source == PlanSource.DECOMPOSED:
        await loader.write_decomposed(session_dir, revised)
    else:
        await loader.write_consolidated(session_dir, revised)
    removed = await clear_revision_documents(loader.store, session_dir)
    LOGGER.info("Applied %d revision document(s) to plan in %s", removed, session_dir)
    return RevisionOutcome(plan=revised, applied=True)


__all__ = [
    "NewAcceptanceMappingInput",
    "NewDependenciesInput",
    "NewStepsInput",
    "NewTestCoverageInput",
    "RevisionOutcome",
    "RevisionSet",
    "apply_new_acceptance",
    "apply_new_dependencies",
    "apply_new_steps",
    "apply_new_test_coverage",
    "apply_revisions",
    "clear_revision_documents",
    "load_revision_documents",
    "revise_stored_plan",
]
