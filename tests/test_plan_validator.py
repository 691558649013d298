from __future__ import annotations

import pytest

from plangate.plan.validator import PlanValidator, SECTION_NAMES


def test_valid_plan_passes_every_section(plan_document) -> None:
    result = PlanValidator(require_complexity=True).validate_plan(plan_document)

    assert result.overall
    payload = result.to_dict()
    assert list(payload) == [*SECTION_NAMES, "overall"]
    assert payload["overall"] is True


@pytest.mark.parametrize("plan", [None, {}, "not a plan", 42, []])
def test_malformed_input_never_raises(plan) -> None:
    result = PlanValidator().validate_plan(plan)

    assert not result.overall
    assert result.meta.errors == ["meta section is missing"]
    assert result.steps.errors == ["steps section is missing"]
    assert result.acceptance_mapping.errors == ["acceptanceMapping section is missing"]


def test_stored_validation_status_is_not_trusted(plan_document) -> None:
    plan_document["validationStatus"] = {"overall": True}
    plan_document["testCoverage"]["framework"] = ""

    assert not PlanValidator().is_plan_valid(plan_document)


def test_steps_shape_errors() -> None:
    validator = PlanValidator()

    assert validator.validate_steps({"id": "s1"}).errors == ["Steps must be an array"]
    assert validator.validate_steps([]).errors == ["Plan must have at least one step"]


def test_step_errors_are_prefixed_with_position_and_id(plan_document) -> None:
    steps = plan_document["steps"]
    steps[0]["description"] = "Too short"
    steps[1]["title"] = "TODO"

    result = PlanValidator().validate_steps(steps)

    assert not result.valid
    assert "Step 1 (s1): description: must be at least 50 characters" in result.errors
    assert "Step 2 (s2): title: contains placeholder text" in result.errors


def test_duplicate_ids_and_parent_hierarchy(plan_document) -> None:
    steps = plan_document["steps"]
    duplicate = dict(steps[0])
    steps.append(duplicate)
    steps[1]["parentId"] = "ghost"

    errors = PlanValidator().validate_steps(steps).errors

    assert "Duplicate step ID: s1" in errors
    assert 'Step 2 (s2): orphaned parentId "ghost" does not reference a valid step' in errors


def test_self_parent_and_parent_cycles(plan_document) -> None:
    steps = plan_document["steps"]
    steps[0]["parentId"] = "s1"
    errors = PlanValidator().validate_steps(steps).errors
    assert "Step 1 (s1): parentId must not reference the step itself" in errors

    steps[0]["parentId"] = "s2"
    steps[1]["parentId"] = "s1"
    errors = PlanValidator().validate_steps(steps).errors
    assert "Circular parent hierarchy detected: s1 -> s2 -> s1" in errors


def test_missing_complexity_is_aggregated_only_when_required(plan_document) -> None:
    for step in plan_document["steps"]:
        del step["complexity"]

    assert PlanValidator().validate_plan(plan_document).overall

    result = PlanValidator(require_complexity=True).validate_plan(plan_document)
    assert result.steps.errors == ["Steps missing complexity rating: s1, s2"]


def test_null_complexity_counts_as_missing_rating(plan_document) -> None:
    plan_document["steps"][0]["complexity"] = None
    plan_document["steps"][1]["complexity"] = ""

    errors = PlanValidator().validate_steps_complete(plan_document["steps"]).errors

    assert errors == ["Steps missing complexity rating: s1, s2"]


def test_dependencies_cycle_and_unknown_references(plan_document) -> None:
    validator = PlanValidator()
    dependencies = plan_document["dependencies"]
    dependencies["stepDependencies"].append({"stepId": "s1", "dependsOn": "s2"})

    result = validator.validate_dependencies(dependencies, ["s1", "s2"])
    assert result.errors == ["Circular dependency detected: s1 -> s2 -> s1"]

    dependencies["stepDependencies"] = [{"stepId": "s2", "dependsOn": "s9"}]
    result = validator.validate_dependencies(dependencies, ["s1", "s2"])
    assert result.errors == ['Step dependency 1: dependsOn references unknown step "s9"']


def test_test_coverage_rules(plan_document) -> None:
    validator = PlanValidator()
    coverage = plan_document["testCoverage"]
    coverage["framework"] = ""
    coverage["requiredTestTypes"] = []

    errors = validator.validate_test_coverage(coverage, ["s1", "s2"]).errors
    assert "framework: Test framework is required" in errors
    assert "requiredTestTypes: At least one required test type must be specified" in errors

    coverage["framework"] = "pytest"
    coverage["requiredTestTypes"] = ["unit"]
    coverage["globalCoverageTarget"] = 150
    assert not validator.validate_test_coverage(coverage, ["s1", "s2"]).valid

    coverage["globalCoverageTarget"] = 100
    coverage["stepCoverage"] = [{"stepId": "s7"}]
    assert validator.validate_test_coverage(coverage, ["s1", "s2"]).errors == [
        'Test coverage references unknown step "s7"'
    ]


def test_acceptance_mapping_rules(plan_document) -> None:
    validator = PlanValidator()
    mapping = plan_document["acceptanceMapping"]
    mapping["mappings"][0]["implementingStepIds"] = []

    errors = validator.validate_acceptance_mapping(mapping, ["s1", "s2"]).errors
    assert any('Acceptance criteria "ac-1" has no implementing steps' in error for error in errors)

    mapping["mappings"] = []
    errors = validator.validate_acceptance_mapping(mapping, ["s1", "s2"]).errors
    assert errors == ["mappings: At least one acceptance criteria mapping is required"]

    mapping["mappings"] = [{"criterionId": "ac-2", "criterionText": "x", "implementingStepIds": ["s5"]}]
    errors = validator.validate_acceptance_mapping(mapping, ["s1", "s2"]).errors
    assert errors == ['Acceptance criteria "ac-2" references unknown step "s5"']


def test_missing_section_is_reported_by_name(plan_document) -> None:
    del plan_document["testCoverage"]

    result = PlanValidator().validate_plan(plan_document)

    assert result.test_coverage.errors == ["testCoverage section is missing"]
    assert result.meta.valid and result.steps.valid


def test_validation_context_lists_sections_and_deduplicated_hints(plan_document) -> None:
    validator = PlanValidator()
    assert validator.generate_validation_context(plan_document) == ""

    plan_document["steps"][0]["title"] = "TBD"
    plan_document["steps"][1]["title"] = "FIXME"
    plan_document["testCoverage"]["framework"] = ""

    context = validator.generate_validation_context(plan_document)

    assert context.startswith("## Plan Validation Issues")
    assert "### Plan Steps" in context
    assert "### Test Coverage" in context
    assert "### Dependencies" not in context
    assert "## How to Fix" in context
    assert context.count("Replace placeholder text") == 1
    assert "Specify the testing framework" in context


def test_incomplete_sections_extract_field_names(plan_document) -> None:
    plan_document["testCoverage"]["framework"] = ""

    incomplete = PlanValidator().get_incomplete_sections(plan_document)

    assert [info.section for info in incomplete] == ["testCoverage"]
    assert incomplete[0].missing_fields == ["framework"]


def test_create_validation_status(plan_document) -> None:
    validator = PlanValidator()
    del plan_document["meta"]

    status = validator.create_validation_status(validator.validate_plan(plan_document))

    assert status.meta is False
    assert status.steps is True
    assert status.overall is False
    assert status.errors == {"meta": ["meta section is missing"]}
