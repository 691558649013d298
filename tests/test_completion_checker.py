from __future__ import annotations

import pytest

from plangate.plan.completion import PlanCompletionChecker
from plangate.plan.loader import PlanLoader, PlanSource
from plangate.plan.validator import PlanValidator
from plangate.storage import FileJsonStore


def test_sync_check_without_plan() -> None:
    result = PlanCompletionChecker().check_plan_completeness_sync(None)

    assert not result.complete
    assert result.missing_context == "No plan provided"
    assert not result.validation_result.overall


def test_sync_check_on_valid_plan(plan_document) -> None:
    result = PlanCompletionChecker().check_plan_completeness_sync(plan_document)

    assert result.complete
    assert result.missing_context == ""
    assert not PlanCompletionChecker.should_return_to_stage2(result.validation_result)


def test_default_checker_requires_complexity(plan_document) -> None:
    del plan_document["steps"][0]["complexity"]

    strict = PlanCompletionChecker().check_plan_completeness_sync(plan_document)
    lenient = PlanCompletionChecker(validator=PlanValidator()).check_plan_completeness_sync(plan_document)

    assert not strict.complete
    assert "Steps missing complexity rating: s1" in strict.missing_context
    assert lenient.complete


@pytest.mark.asyncio
async def test_async_check_reports_missing_plan(tmp_path) -> None:
    checker = PlanCompletionChecker.from_store(FileJsonStore())

    result = await checker.check_plan_completeness(tmp_path)

    assert not result.complete
    assert result.missing_context == f"No plan found in {tmp_path}"
    assert result.source == PlanSource.NONE


@pytest.mark.asyncio
async def test_undecodable_plan_bytes_are_reported_as_missing_plan(tmp_path) -> None:
    (tmp_path / "plan.json").write_bytes(b'{"steps": "\xff\xfe"}')
    checker = PlanCompletionChecker.from_store(FileJsonStore())

    result = await checker.check_plan_completeness(tmp_path)

    assert not result.complete
    assert result.missing_context == f"No plan found in {tmp_path}"
    assert result.source == PlanSource.NONE


@pytest.mark.asyncio
async def test_async_check_reads_both_layouts(tmp_path, plan_document) -> None:
    loader = PlanLoader(FileJsonStore())
    checker = PlanCompletionChecker(loader=loader)

    decomposed_dir = tmp_path / "decomposed"
    await loader.write_decomposed(decomposed_dir, plan_document)
    result = await checker.check_plan_completeness(decomposed_dir)
    assert result.complete
    assert result.source == PlanSource.DECOMPOSED

    plan_document["testCoverage"]["requiredTestTypes"] = []
    consolidated_dir = tmp_path / "consolidated"
    await loader.write_consolidated(consolidated_dir, plan_document)
    result = await checker.check_plan_completeness(consolidated_dir)
    assert not result.complete
    assert result.source == PlanSource.CONSOLIDATED
    assert result.missing_context.startswith("## Plan Validation Issues")


@pytest.mark.asyncio
async def test_async_check_requires_loader(tmp_path) -> None:
    with pytest.raises(ValueError):
        await PlanCompletionChecker().check_plan_completeness(tmp_path)


def test_reprompt_context_extracts_offending_ids(plan_document) -> None:
    del plan_document["steps"][0]["complexity"]
    plan_document["steps"][1]["description"] = "Wire it up."
    plan_document["acceptanceMapping"]["mappings"][0]["implementingStepIds"] = []

    checker = PlanCompletionChecker()
    result = checker.check_plan_completeness_sync(plan_document)
    context = checker.build_reprompt_context(result.validation_result)

    assert context.incomplete_sections == ["steps", "acceptanceMapping"]
    assert context.steps_lacking_complexity == ["s1"]
    assert context.insufficient_descriptions == ["s2"]
    assert context.unmapped_acceptance_criteria == ["ac-1"]
    assert context.summary.startswith("Plan is incomplete: 2 section(s) need attention")

    detailed = context.detailed_context
    assert detailed.startswith("## Plan Validation Failed")
    assert "#### Plan Steps" in detailed
    assert "#### Acceptance Criteria Mapping" in detailed
    assert "### Steps Missing Complexity Ratings" in detailed
    assert "### Unmapped Acceptance Criteria" in detailed
    assert "### Steps With Insufficient Descriptions" in detailed
    for file_name in ("new-steps.json", "new-dependencies.json", "new-test-coverage.json", "new-acceptance.json"):
        assert file_name in detailed


def test_reprompt_context_lists_steps_with_null_complexity(plan_document) -> None:
    plan_document["steps"][0]["complexity"] = None

    checker = PlanCompletionChecker()
    result = checker.check_plan_completeness_sync(plan_document)
    context = checker.build_reprompt_context(result.validation_result)

    assert not result.complete
    assert context.steps_lacking_complexity == ["s1"]


def test_reprompt_context_for_valid_plan(plan_document) -> None:
    checker = PlanCompletionChecker()
    result = checker.check_plan_completeness_sync(plan_document)

    context = checker.build_reprompt_context(result.validation_result)

    assert context.summary == "Plan validation passed. All sections are complete."
    assert context.detailed_context == ""
    assert context.incomplete_sections == []
