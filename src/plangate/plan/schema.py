"""Section rules for composable plans.

Every section of a plan document is described by a Pydantic model. The
validator feeds raw JSON-like data through these models and turns the
resulting ``ValidationError`` entries into field-path qualified messages, so
the messages raised here are the ones a generator sees when it is asked to
repair the plan.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator
from pydantic.alias_generators import to_camel

from ..utils.text import contains_marker_pattern, contains_placeholder, normalize_whitespace
from .graph import has_circular_dependencies

MIN_DESCRIPTION_LENGTH = 50


class PlanModel(BaseModel):
    """Base model mapping snake_case attributes to the camelCase plan keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_document(self) -> Dict[str, Any]:
        """Serialise back to the camelCase JSON document layout."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class StepStatus(str, Enum):
    """Progress states for a single plan step."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    SKIPPED = "skipped"
    NEEDS_REVIEW = "needs_review"


class StepComplexity(str, Enum):
    """Effort rating attached to a plan step."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ExternalDependencyType(str, Enum):
    """Kinds of external dependencies a plan may declare."""

    NPM = "npm"
    PYPI = "pypi"
    API = "api"
    SERVICE = "service"
    FILE = "file"
    OTHER = "other"


def _require_iso_timestamp(value: str, label: str) -> str:
    text = (value or "").strip()
    if not text:
        raise ValueError(f"{label} is required")
    try:
        datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError as error:
        raise ValueError(f"{label} must be an ISO 8601 timestamp") from error
    return value


def _reject_leaked_text(value: str) -> None:
    if contains_placeholder(value):
        raise ValueError("contains placeholder text")
    if contains_marker_pattern(value):
        raise ValueError("contains marker patterns")


class PlanMeta(PlanModel):
    """Version, ownership and approval details of a plan."""

    version: str = Field("", validate_default=True)
    session_id: str = Field("", validate_default=True)
    created_at: str
    updated_at: str
    is_approved: bool = False
    review_count: int = Field(0, ge=0)

    @field_validator("version")
    @classmethod
    def _version_required(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("Version is required")
        return value

    @field_validator("session_id")
    @classmethod
    def _session_required(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("sessionId is required")
        return value

    @field_validator("created_at", "updated_at")
    @classmethod
    def _timestamps_iso(cls, value: str, info: ValidationInfo) -> str:
        return _require_iso_timestamp(value, to_camel(info.field_name))


class PlanStep(PlanModel):
    """One implementation step of a plan."""

    id: str = Field(min_length=1)
    parent_id: Optional[str] = None
    order_index: int = Field(ge=0)
    title: str
    description: str
    status: StepStatus = StepStatus.PENDING
    complexity: Optional[StepComplexity] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    acceptance_criteria_ids: List[str] = Field(default_factory=list)
    estimated_files: List[str] = Field(default_factory=list)
    content_hash: Optional[str] = None

    @field_validator("id")
    @classmethod
    def _id_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Step id is required")
        return value

    @field_validator("title")
    @classmethod
    def _title_is_concrete(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be empty")
        _reject_leaked_text(value)
        return value

    @field_validator("description")
    @classmethod
    def _description_is_concrete(cls, value: str) -> str:
        if len(normalize_whitespace(value)) < MIN_DESCRIPTION_LENGTH:
            raise ValueError(f"must be at least {MIN_DESCRIPTION_LENGTH} characters")
        _reject_leaked_text(value)
        return value


class PlanStepComplete(PlanStep):
    """Step shape required before implementation can begin."""

    complexity: StepComplexity


class StepDependency(PlanModel):
    """Directed edge: ``step_id`` cannot start before ``depends_on`` finishes."""

    step_id: str = Field(min_length=1)
    depends_on: str = Field(min_length=1)
    reason: Optional[str] = None


class ExternalDependency(PlanModel):
    name: str = Field(min_length=1)
    type: ExternalDependencyType
    version: Optional[str] = None
    reason: str
    required_by: List[str]

    @field_validator("reason")
    @classmethod
    def _reason_required(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("External dependency reason is required")
        return value

    @field_validator("required_by")
    @classmethod
    def _required_by_not_empty(cls, value: List[str]) -> List[str]:
        if not value:
            raise ValueError("External dependency must be required by at least one step")
        return value


class PlanDependencies(PlanModel):
    """Inter-step edges plus external requirements."""

    step_dependencies: List[StepDependency]
    external_dependencies: List[ExternalDependency]

    @model_validator(mode="after")
    def _edges_form_dag(self) -> "PlanDependencies":
        result = has_circular_dependencies(self.step_dependencies)
        if result.has_cycle:
            raise ValueError(f"Circular dependency detected: {' -> '.join(result.cycle)}")
        return self


class StepTestCoverage(PlanModel):
    step_id: str = Field(min_length=1)
    required_test_types: List[str] = Field(default_factory=list)
    coverage_target: Optional[float] = Field(None, ge=0, le=100)
    test_cases: List[str] = Field(default_factory=list)


class PlanTestCoverage(PlanModel):
    """Test framework, test types and coverage targets for the plan."""

    framework: str = Field("", validate_default=True)
    required_test_types: List[str] = Field(default_factory=list, validate_default=True)
    step_coverage: List[StepTestCoverage] = Field(default_factory=list)
    global_coverage_target: Optional[float] = Field(None, ge=0, le=100)

    @field_validator("framework")
    @classmethod
    def _framework_required(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("Test framework is required")
        return value

    @field_validator("required_test_types")
    @classmethod
    def _test_types_required(cls, value: List[str]) -> List[str]:
        if not value:
            raise ValueError("At least one required test type must be specified")
        return value


class AcceptanceCriteriaStepMapping(PlanModel):
    criterion_id: str = Field(min_length=1)
    criterion_text: str
    implementing_step_ids: List[str] = Field(default_factory=list)
    is_fully_covered: bool = False

    @model_validator(mode="after")
    def _has_implementing_steps(self) -> "AcceptanceCriteriaStepMapping":
        # An empty list is rejected even when the criterion claims full coverage.
        if not self.implementing_step_ids:
            raise ValueError(f'Acceptance criteria "{self.criterion_id}" has no implementing steps')
        return self


class PlanAcceptanceMapping(PlanModel):
    mappings: List[AcceptanceCriteriaStepMapping]
    updated_at: str

    @field_validator("mappings")
    @classmethod
    def _mappings_not_empty(cls, value: List[AcceptanceCriteriaStepMapping]) -> List[AcceptanceCriteriaStepMapping]:
        if not value:
            raise ValueError("At least one acceptance criteria mapping is required")
        return value

    @field_validator("updated_at")
    @classmethod
    def _updated_at_iso(cls, value: str) -> str:
        return _require_iso_timestamp(value, "updatedAt")


class PlanValidationStatus(PlanModel):
    """Per-section verdicts recomputed on every check."""

    meta: bool = False
    steps: bool = False
    dependencies: bool = False
    test_coverage: bool = False
    acceptance_mapping: bool = False
    overall: bool = False
    errors: Optional[Dict[str, List[str]]] = None


class ComposablePlan(PlanModel):
    """Typed view of a full plan; validation itself works on raw documents."""

    meta: PlanMeta
    steps: List[PlanStep]
    dependencies: PlanDependencies
    test_coverage: PlanTestCoverage
    acceptance_mapping: PlanAcceptanceMapping
    validation_status: Optional[PlanValidationStatus] = None


__all__ = [
    "AcceptanceCriteriaStepMapping",
    "ComposablePlan",
    "ExternalDependency",
    "ExternalDependencyType",
    "MIN_DESCRIPTION_LENGTH",
    "PlanAcceptanceMapping",
    "PlanDependencies",
    "PlanMeta",
    "PlanModel",
    "PlanStep",
    "PlanStepComplete",
    "PlanTestCoverage",
    "PlanValidationStatus",
    "StepComplexity",
    "StepDependency",
    "StepStatus",
    "StepTestCoverage",
]
