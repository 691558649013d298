"""Decide whether a plan may leave the planning stage.

The checker wraps :class:`PlanValidator` with plan discovery and turns a
failed validation into a re-prompt document the generator can act on.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, List, Optional

from ..storage import JsonStore, PathLike
from .loader import PlanLoader, PlanSource
from .validator import SECTION_TITLES, PlanValidationResult, PlanValidator

LOGGER = logging.getLogger(__name__)

REVISION_FILES: tuple[tuple[str, str], ...] = (
    ("new-steps.json", "add or update steps by id, or list `removeStepIds`"),
    ("new-dependencies.json", "add or remove step dependencies and external dependencies"),
    ("new-test-coverage.json", "set the test framework, required test types and per-step coverage"),
    ("new-acceptance.json", "map every acceptance criterion to its implementing steps"),
)

_COMPLEXITY_PATTERN = re.compile(r"Steps missing complexity rating:\s*(.+)$")
_UNMAPPED_PATTERN = re.compile(r'Acceptance criteria "([^"]+)" has no implementing steps')
_DESCRIPTION_PATTERN = re.compile(r"^Step \d+ \(([^)]+)\): description\b.*at least \d+ characters")


@dataclass(slots=True)
class CompletenessResult:
    """Outcome of a completeness check."""

    complete: bool
    missing_context: str
    validation_result: PlanValidationResult
    source: PlanSource = PlanSource.NONE


@dataclass(slots=True)
class RepromptContext:
    """Actionable summary of why a plan must be revised."""

    incomplete_sections: List[str] = field(default_factory=list)
    steps_lacking_complexity: List[str] = field(default_factory=list)
    unmapped_acceptance_criteria: List[str] = field(default_factory=list)
    insufficient_descriptions: List[str] = field(default_factory=list)
    summary: str = ""
    detailed_context: str = ""


def _append_unique(target: List[str], value: str) -> None:
    if value and value not in target:
        target.append(value)


class PlanCompletionChecker:
    """Validate a session's plan and build re-prompt material on failure."""

    def __init__(
        self,
        validator: Optional[PlanValidator] = None,
        loader: Optional[PlanLoader] = None,
    ) -> None:
        self.validator = validator or PlanValidator(require_complexity=True)
        self.loader = loader

    @classmethod
    def from_store(cls, store: JsonStore, validator: Optional[PlanValidator] = None) -> "PlanCompletionChecker":
        return cls(validator=validator, loader=PlanLoader(store))

    async def check_plan_completeness(self, session_dir: PathLike) -> CompletenessResult:
        """Load the plan stored under ``session_dir`` and validate it."""
        if self.loader is None:
            raise ValueError("A PlanLoader is required to check plans stored on disk")
        loaded = await self.loader.load(session_dir)
        if loaded.plan is None:
            return CompletenessResult(
                complete=False,
                missing_context=f"No plan found in {session_dir}",
                validation_result=self.validator.validate_plan(None),
                source=PlanSource.NONE,
            )
        result = self._evaluate(loaded.plan)
        result.source = loaded.source
        LOGGER.debug(
            "Plan in %s (%s%s) complete=%s",
            session_dir,
            loaded.source.value,
            ", legacy" if loaded.legacy else "",
            result.complete,
        )
        return result

    def check_plan_completeness_sync(self, plan: Any) -> CompletenessResult:
        """Validate an already-loaded plan value."""
        if plan is None:
            return CompletenessResult(
                complete=False,
                missing_context="No plan provided",
                validation_result=self.validator.validate_plan(None),
            )
        return self._evaluate(plan)

    def _evaluate(self, plan: Any) -> CompletenessResult:
        validation = self.validator.validate_plan(plan)
        if validation.overall:
            return CompletenessResult(complete=True, missing_context="", validation_result=validation)
        return CompletenessResult(
            complete=False,
            missing_context=self.validator.generate_validation_context(plan),
            validation_result=validation,
        )

    @staticmethod
    def should_return_to_stage2(validation_result: PlanValidationResult) -> bool:
        return not validation_result.overall

    def build_reprompt_context(self, validation_result: PlanValidationResult) -> RepromptContext:
        """Extract offending ids from the validation messages and render them."""
        context = RepromptContext()
        if validation_result.overall:
            context.summary = "Plan validation passed. All sections are complete."
            return context

        for name, section in validation_result.sections():
            if section.valid:
                continue
            context.incomplete_sections.append(name)
            for error in section.errors:
                complexity = _COMPLEXITY_PATTERN.search(error)
                if complexity:
                    for step_id in complexity.group(1).split(","):
                        _append_unique(context.steps_lacking_complexity, step_id.strip())
                unmapped = _UNMAPPED_PATTERN.search(error)
                if unmapped:
                    _append_unique(context.unmapped_acceptance_criteria, unmapped.group(1))
                description = _DESCRIPTION_PATTERN.search(error)
                if description:
                    _append_unique(context.insufficient_descriptions, description.group(1))

        context.summary = self._summarise(context)
        context.detailed_context = self._render(context, validation_result)
        return context

    @staticmethod
    def _summarise(context: RepromptContext) -> str:
        parts = [
            f"{len(context.incomplete_sections)} section(s) need attention "
            f"({', '.join(context.incomplete_sections)})"
        ]
        if context.steps_lacking_complexity:
            parts.append(f"{len(context.steps_lacking_complexity)} step(s) missing complexity ratings")
        if context.unmapped_acceptance_criteria:
            parts.append(f"{len(context.unmapped_acceptance_criteria)} acceptance criteria without implementing steps")
        if context.insufficient_descriptions:
            parts.append(f"{len(context.insufficient_descriptions)} step description(s) too short")
        return "Plan is incomplete: " + "; ".join(parts) + "."

    @staticmethod
    def _render(context: RepromptContext, validation_result: PlanValidationResult) -> str:
        lines = ["## Plan Validation Failed", "", context.summary, "", "### Incomplete Sections", ""]
        for name, section in validation_result.sections():
            if section.valid:
                continue
            lines.append(f"#### {SECTION_TITLES.get(name, name)}")
            lines.append("")
            lines.extend(f"- {error}" for error in section.errors)
            lines.append("")

        if context.steps_lacking_complexity:
            lines.extend(
                [
                    "### Steps Missing Complexity Ratings",
                    "",
                    "Rate each of these steps as low, medium, or high:",
                    *(f"- {step_id}" for step_id in context.steps_lacking_complexity),
                    "",
                ]
            )
        if context.unmapped_acceptance_criteria:
            lines.extend(
                [
                    "### Unmapped Acceptance Criteria",
                    "",
                    "These acceptance criteria are not mapped to any implementing steps:",
                    *(f"- {criterion}" for criterion in context.unmapped_acceptance_criteria),
                    "",
                ]
            )
        if context.insufficient_descriptions:
            lines.extend(
                [
                    "### Steps With Insufficient Descriptions",
                    "",
                    "Expand these descriptions with concrete implementation details:",
                    *(f"- {step_id}" for step_id in context.insufficient_descriptions),
                    "",
                ]
            )

        lines.extend(["### Instructions", "", "Revise the plan by writing these files in the plan directory:"])
        lines.extend(f"- `{file_name}`: {purpose}" for file_name, purpose in REVISION_FILES)
        lines.append("")
        return "\n".join(lines)


__all__ = ["CompletenessResult", "PlanCompletionChecker", "RepromptContext", "REVISION_FILES"]
