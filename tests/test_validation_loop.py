from __future__ import annotations

import logging

import pytest

from plangate.validation_loop import CONTEXT_PREVIEW_LENGTH, MAX_PLAN_VALIDATION_ATTEMPTS, ValidationLoopController


def test_should_continue_below_the_limit() -> None:
    loop = ValidationLoopController()

    assert MAX_PLAN_VALIDATION_ATTEMPTS == 3
    assert [loop.should_continue_validation(attempt) for attempt in range(5)] == [True, True, True, False, False]
    assert loop.should_continue_validation(4, max_attempts=5)
    assert not loop.should_continue_validation(1, max_attempts=1)
    assert loop.should_continue_validation(-1)
    assert loop.should_continue_validation(-10)
    assert not loop.should_continue_validation(0, max_attempts=0)


def test_zero_max_attempts_never_continues() -> None:
    loop = ValidationLoopController(max_attempts=0)

    assert not loop.should_continue_validation(0)
    assert loop.should_continue_validation(-1)


def test_negative_max_attempts_is_rejected() -> None:
    with pytest.raises(ValueError):
        ValidationLoopController(max_attempts=-1)


def test_attempt_log_truncates_context_and_records_fields(caplog) -> None:
    logger = logging.getLogger("plangate.tests.loop")
    loop = ValidationLoopController(logger=logger)
    context = "x" * (CONTEXT_PREVIEW_LENGTH + 50)

    with caplog.at_level(logging.INFO, logger="plangate.tests.loop"):
        loop.log_validation_attempt("proj/feat", 1, context=context)

    record = caplog.records[-1]
    assert record.name == "plangate.tests.loop"
    assert "proj/feat: attempt 1/3 failed" in record.getMessage()
    assert record.getMessage().endswith("x" * CONTEXT_PREVIEW_LENGTH + "...")
    assert record.event == "plan_validation_attempt"
    assert record.session_key == "proj/feat"
    assert record.attempt == 1
    assert record.max_attempts == 3


def test_short_context_is_not_marked_truncated(caplog) -> None:
    loop = ValidationLoopController()

    with caplog.at_level(logging.INFO, logger="plangate.validation_loop"):
        loop.log_validation_attempt("proj/feat", 2, 5, "missing framework")

    assert caplog.records[-1].getMessage().endswith("attempt 2/5 failed: missing framework")


def test_success_and_exhaustion_logs(caplog) -> None:
    loop = ValidationLoopController(max_attempts=2)

    with caplog.at_level(logging.INFO, logger="plangate.validation_loop"):
        loop.log_validation_success("proj/feat", 2)
        loop.log_validation_max_attempts_reached("proj/feat")

    success, exhausted = caplog.records[-2:]
    assert "succeeded after 2 attempt(s)" in success.getMessage()
    assert exhausted.levelno == logging.WARNING
    assert "Max attempts (2) reached" in exhausted.getMessage()
