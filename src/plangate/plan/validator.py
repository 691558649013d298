"""Deterministic validation of composable plans.

``PlanValidator`` never raises on bad input. Every defect (schema, structure
or content quality) is accumulated into a ``PlanValidationResult`` so that
callers always receive a verdict for each of the five plan sections, even for
``None`` or entirely malformed documents.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Type

from pydantic import BaseModel, ValidationError
from pydantic.alias_generators import to_camel

from .graph import find_parent_cycle, find_unresolved_dependencies
from .schema import (
    PlanAcceptanceMapping,
    PlanDependencies,
    PlanMeta,
    PlanStep,
    PlanStepComplete,
    PlanTestCoverage,
    PlanValidationStatus,
)

LOGGER = logging.getLogger(__name__)

SECTION_NAMES: tuple[str, ...] = ("meta", "steps", "dependencies", "testCoverage", "acceptanceMapping")

SECTION_TITLES: Dict[str, str] = {
    "meta": "Plan Metadata",
    "steps": "Plan Steps",
    "dependencies": "Dependencies",
    "testCoverage": "Test Coverage",
    "acceptanceMapping": "Acceptance Criteria Mapping",
}

_VALUE_ERROR_PREFIX = "Value error, "
_FIELD_PREFIX = re.compile(r"^([a-zA-Z_][a-zA-Z0-9_.]*?):")
_MISSING_PHRASE = re.compile(r"missing\s+([a-zA-Z_][a-zA-Z0-9_ ]*)", re.IGNORECASE)


@dataclass(slots=True)
class SectionValidationResult:
    """Verdict and messages for one plan section."""

    valid: bool
    errors: List[str] = field(default_factory=list)

    @classmethod
    def from_errors(cls, errors: Sequence[str]) -> "SectionValidationResult":
        return cls(valid=not errors, errors=list(errors))

    def to_dict(self) -> Dict[str, Any]:
        return {"valid": self.valid, "errors": list(self.errors)}


@dataclass(slots=True)
class PlanValidationResult:
    """Per-section verdicts; ``overall`` is true only when all five pass."""

    meta: SectionValidationResult
    steps: SectionValidationResult
    dependencies: SectionValidationResult
    test_coverage: SectionValidationResult
    acceptance_mapping: SectionValidationResult

    @property
    def overall(self) -> bool:
        return all(result.valid for _, result in self.sections())

    def sections(self) -> list[tuple[str, SectionValidationResult]]:
        """Return ``(section_name, result)`` pairs in document order."""
        return [
            ("meta", self.meta),
            ("steps", self.steps),
            ("dependencies", self.dependencies),
            ("testCoverage", self.test_coverage),
            ("acceptanceMapping", self.acceptance_mapping),
        ]

    def section(self, name: str) -> SectionValidationResult:
        for section_name, result in self.sections():
            if section_name == name:
                return result
        raise KeyError(name)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {name: result.to_dict() for name, result in self.sections()}
        payload["overall"] = self.overall
        return payload


@dataclass(slots=True)
class IncompleteSectionInfo:
    section: str
    errors: List[str]
    missing_fields: List[str]


def _camel_part(part: Any) -> str:
    # Defaulted fields report the attribute name rather than the alias.
    if isinstance(part, str) and "_" in part:
        return to_camel(part)
    return str(part)


def format_validation_error(error: ValidationError) -> list[str]:
    """Flatten a Pydantic error into ``"field.path: message"`` strings."""
    messages: list[str] = []
    for issue in error.errors():
        message = str(issue.get("msg", "Invalid value"))
        if message.startswith(_VALUE_ERROR_PREFIX):
            message = message[len(_VALUE_ERROR_PREFIX):]
        location = ".".join(_camel_part(part) for part in issue.get("loc", ()))
        messages.append(f"{location}: {message}" if location else message)
    return messages


def _dedupe_preserve_order(items: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for item in items:
        if item in seen:
            continue
        seen.add(item)
        ordered.append(item)
    return ordered


def _step_label(index: int, step: Any) -> str:
    step_id = step.get("id") if isinstance(step, Mapping) else None
    return f"Step {index + 1} ({step_id or 'unknown'})"


def _collect_step_ids(steps: Any) -> list[str]:
    if not isinstance(steps, list):
        return []
    return [
        step["id"]
        for step in steps
        if isinstance(step, Mapping) and isinstance(step.get("id"), str) and step["id"]
    ]


class PlanValidator:
    """Validate composable plan documents section by section.

    With ``require_complexity`` enabled every step must carry a complexity
    rating; this is the stricter rule set used before implementation starts.
    """

    def __init__(self, *, require_complexity: bool = False) -> None:
        self.require_complexity = require_complexity

    def validate_section(
        self,
        data: Any,
        model: Type[BaseModel],
        *,
        section: Optional[str] = None,
    ) -> SectionValidationResult:
        """Validate ``data`` against ``model`` and collect qualified messages."""
        if data is None and section is not None:
            return SectionValidationResult(valid=False, errors=[f"{section} section is missing"])
        try:
            model.model_validate(data)
        except ValidationError as error:
            return SectionValidationResult.from_errors(format_validation_error(error))
        return SectionValidationResult(valid=True)

    def validate_meta(self, meta: Any) -> SectionValidationResult:
        return self.validate_section(meta, PlanMeta, section="meta")

    def validate_steps(self, steps: Any) -> SectionValidationResult:
        """Validate each step plus id uniqueness and the parent hierarchy."""
        return self._validate_steps(steps, PlanStep, aggregate_complexity=False)

    def validate_steps_complete(self, steps: Any) -> SectionValidationResult:
        """Like :meth:`validate_steps` but every step needs a complexity rating.

        Missing ratings are reported once, listing the offending step ids.
        """
        return self._validate_steps(steps, PlanStepComplete, aggregate_complexity=True)

    def _validate_steps(
        self,
        steps: Any,
        model: Type[BaseModel],
        *,
        aggregate_complexity: bool,
    ) -> SectionValidationResult:
        if steps is None:
            return SectionValidationResult(valid=False, errors=["steps section is missing"])
        if not isinstance(steps, list):
            return SectionValidationResult(valid=False, errors=["Steps must be an array"])
        if not steps:
            return SectionValidationResult(valid=False, errors=["Plan must have at least one step"])

        errors: list[str] = []
        lacking_complexity: list[str] = []
        seen_ids: set[str] = set()

        for index, step in enumerate(steps):
            label = _step_label(index, step)
            result = self.validate_section(step, model)
            unrated = aggregate_complexity and isinstance(step, Mapping) and not step.get("complexity")
            if unrated:
                lacking_complexity.append(str(step.get("id") or f"Step {index + 1}"))
            for message in result.errors:
                if unrated and message.startswith("complexity:"):
                    continue
                errors.append(f"{label}: {message}")

            step_id = step.get("id") if isinstance(step, Mapping) else None
            if isinstance(step_id, str) and step_id:
                if step_id in seen_ids:
                    errors.append(f"Duplicate step ID: {step_id}")
                seen_ids.add(step_id)

        errors.extend(self._hierarchy_errors(steps, seen_ids))

        if lacking_complexity:
            errors.append(f"Steps missing complexity rating: {', '.join(lacking_complexity)}")

        return SectionValidationResult.from_errors(errors)

    @staticmethod
    def _hierarchy_errors(steps: list[Any], step_ids: set[str]) -> list[str]:
        errors: list[str] = []
        parents: dict[str, Optional[str]] = {}
        for index, step in enumerate(steps):
            if not isinstance(step, Mapping):
                continue
            step_id = step.get("id")
            parent_id = step.get("parentId")
            if not isinstance(parent_id, str) or not parent_id:
                if isinstance(step_id, str) and step_id:
                    parents.setdefault(step_id, None)
                continue
            label = _step_label(index, step)
            if parent_id == step_id:
                errors.append(f"{label}: parentId must not reference the step itself")
                parents.setdefault(step_id, None)
                continue
            if parent_id not in step_ids:
                errors.append(
                    f'{label}: orphaned parentId "{parent_id}" does not reference a valid step'
                )
            if isinstance(step_id, str) and step_id:
                parents.setdefault(step_id, parent_id)

        cycle = find_parent_cycle(parents)
        if cycle:
            errors.append(f"Circular parent hierarchy detected: {' -> '.join(cycle)}")
        return errors

    def validate_dependencies(self, dependencies: Any, step_ids: Sequence[str]) -> SectionValidationResult:
        """Schema and DAG check first, then every reference must name a real step."""
        schema_result = self.validate_section(dependencies, PlanDependencies, section="dependencies")
        if not schema_result.valid:
            return schema_result
        return SectionValidationResult.from_errors(find_unresolved_dependencies(dependencies, step_ids))

    def validate_test_coverage(self, test_coverage: Any, step_ids: Sequence[str]) -> SectionValidationResult:
        schema_result = self.validate_section(test_coverage, PlanTestCoverage, section="testCoverage")
        if not schema_result.valid:
            return schema_result
        known = set(step_ids)
        errors = [
            f'Test coverage references unknown step "{entry.get("stepId")}"'
            for entry in test_coverage.get("stepCoverage") or []
            if isinstance(entry, Mapping) and entry.get("stepId") not in known
        ]
        return SectionValidationResult.from_errors(errors)

    def validate_acceptance_mapping(self, acceptance_mapping: Any, step_ids: Sequence[str]) -> SectionValidationResult:
        schema_result = self.validate_section(
            acceptance_mapping, PlanAcceptanceMapping, section="acceptanceMapping"
        )
        if not schema_result.valid:
            return schema_result
        known = set(step_ids)
        errors: list[str] = []
        for mapping in acceptance_mapping.get("mappings") or []:
            if not isinstance(mapping, Mapping):
                continue
            criterion_id = mapping.get("criterionId")
            for step_id in mapping.get("implementingStepIds") or []:
                if step_id not in known:
                    errors.append(
                        f'Acceptance criteria "{criterion_id}" references unknown step "{step_id}"'
                    )
        return SectionValidationResult.from_errors(errors)

    def validate_plan(self, plan: Any) -> PlanValidationResult:
        """Validate every section; never raises."""
        document: Mapping[str, Any] = plan if isinstance(plan, Mapping) else {}
        steps = document.get("steps")
        step_ids = _collect_step_ids(steps)

        if self.require_complexity:
            steps_result = self.validate_steps_complete(steps)
        else:
            steps_result = self.validate_steps(steps)

        result = PlanValidationResult(
            meta=self.validate_meta(document.get("meta")),
            steps=steps_result,
            dependencies=self.validate_dependencies(document.get("dependencies"), step_ids),
            test_coverage=self.validate_test_coverage(document.get("testCoverage"), step_ids),
            acceptance_mapping=self.validate_acceptance_mapping(document.get("acceptanceMapping"), step_ids),
        )
        if not result.overall:
            LOGGER.debug(
                "Plan validation failed for sections: %s",
                ", ".join(name for name, section in result.sections() if not section.valid),
            )
        return result

    def get_incomplete_sections(self, plan: Any) -> list[IncompleteSectionInfo]:
        result = self.validate_plan(plan)
        return [
            IncompleteSectionInfo(
                section=name,
                errors=list(section.errors),
                missing_fields=self._extract_missing_fields(section.errors),
            )
            for name, section in result.sections()
            if not section.valid
        ]

    @staticmethod
    def _extract_missing_fields(errors: Sequence[str]) -> list[str]:
        fields: list[str] = []
        for error in errors:
            field_match = _FIELD_PREFIX.match(error)
            if field_match:
                fields.append(field_match.group(1))
            missing_match = _MISSING_PHRASE.search(error)
            if missing_match:
                fields.append(missing_match.group(1).strip())
        return _dedupe_preserve_order(fields)

    def generate_validation_context(self, plan: Any) -> str:
        """Markdown narrative of what is wrong; empty when the plan is valid."""
        incomplete = self.get_incomplete_sections(plan)
        if not incomplete:
            return ""

        lines = [
            "## Plan Validation Issues",
            "",
            "The plan structure is incomplete. Please address the following issues:",
            "",
        ]
        for info in incomplete:
            lines.append(f"### {SECTION_TITLES.get(info.section, info.section)}")
            lines.append("")
            lines.extend(f"- {error}" for error in info.errors)
            lines.append("")

        guidance = self._guidance(incomplete)
        if guidance:
            lines.extend(["## How to Fix", "", *guidance, ""])
        return "\n".join(lines)

    @staticmethod
    def _guidance(incomplete: Sequence[IncompleteSectionInfo]) -> list[str]:
        hints: list[str] = []
        for info in incomplete:
            errors = info.errors

            def mentions(*fragments: str) -> bool:
                return any(all(fragment in error for fragment in fragments) for error in errors)

            if info.section == "steps":
                if mentions("placeholder"):
                    hints.append("- Replace placeholder text (TBD, TODO, etc.) with actual implementation details")
                if mentions("marker patterns"):
                    hints.append("- Remove bracketed marker syntax from step titles and descriptions")
                if mentions("description", "50 characters"):
                    hints.append(
                        "- Expand step descriptions to be at least 50 characters with clear implementation details"
                    )
                if mentions("complexity"):
                    hints.append("- Add complexity ratings (low/medium/high) to all steps to help estimate effort")
                if mentions("orphaned parentId") or mentions("parent hierarchy"):
                    hints.append("- Fix step parent references - ensure parentId values reference existing step IDs")
                if mentions("Duplicate step ID"):
                    hints.append("- Give every step a unique id")
            elif info.section == "dependencies":
                if mentions("Circular"):
                    hints.append("- Remove circular dependencies between steps - ensure the dependency graph is a DAG")
                if mentions("unknown step"):
                    hints.append("- Fix dependency references - ensure all step IDs in dependencies exist in the plan")
            elif info.section == "testCoverage":
                if mentions("framework"):
                    hints.append("- Specify the testing framework to use (e.g., pytest, vitest, jest)")
                if mentions("test type"):
                    hints.append("- Define required test types (e.g., unit, integration, e2e)")
            elif info.section == "acceptanceMapping":
                if mentions("no implementing steps"):
                    hints.append("- Map all acceptance criteria to at least one implementing step")
            elif info.section == "meta":
                if mentions("Version"):
                    hints.append('- Set a version string for the plan (e.g., "1.0.0")')
                if mentions("sessionId"):
                    hints.append("- Ensure sessionId is set correctly")
        return _dedupe_preserve_order(hints)

    @staticmethod
    def create_validation_status(result: PlanValidationResult) -> PlanValidationStatus:
        errors = {name: list(section.errors) for name, section in result.sections() if not section.valid}
        return PlanValidationStatus(
            meta=result.meta.valid,
            steps=result.steps.valid,
            dependencies=result.dependencies.valid,
            test_coverage=result.test_coverage.valid,
            acceptance_mapping=result.acceptance_mapping.valid,
            overall=result.overall,
            errors=errors or None,
        )

    def is_plan_valid(self, plan: Any) -> bool:
        return self.validate_plan(plan).overall


__all__ = [
    "IncompleteSectionInfo",
    "PlanValidationResult",
    "PlanValidator",
    "SECTION_NAMES",
    "SECTION_TITLES",
    "SectionValidationResult",
    "format_validation_error",
]
