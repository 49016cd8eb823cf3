import pytest

from app.core.errors import (
    GENERIC_FAILURE_MESSAGE,
    AbstentionError,
    CacheError,
    CompileError,
    ExecutorError,
    PersistenceError,
    ValidationError,
    to_safe_failed_reason,
)


@pytest.mark.parametrize(
    "error,expected",
    [
        (ValidationError("Malformed plan"), "Malformed plan"),
        (CompileError("Invalid columns"), "Invalid columns"),
        (AbstentionError("Please rephrase", reason="Fidelity 0.10 is below threshold 0.70"), "Please rephrase"),
        ("Job stalled", "Job stalled"),
        (ExecutorError("quota exceeded for billing account 0042"), GENERIC_FAILURE_MESSAGE),
        (PersistenceError("password authentication failed"), GENERIC_FAILURE_MESSAGE),
        (CacheError("redis down"), GENERIC_FAILURE_MESSAGE),
        (KeyError("question_id"), GENERIC_FAILURE_MESSAGE),
        ("", GENERIC_FAILURE_MESSAGE),
        (None, GENERIC_FAILURE_MESSAGE),
        ({"stack": "..."}, GENERIC_FAILURE_MESSAGE),
    ],
)
def test_to_safe_failed_reason(error, expected):
    assert to_safe_failed_reason(error) == expected


def test_error_codes():
    assert ValidationError("x").code == "INVALID_PLAN"
    assert CompileError("x").code == "COMPILE_ERROR"
    assert isinstance(CompileError("x"), ValidationError)
    abstention = AbstentionError("x", reason="Planner abstained")
    assert abstention.code == "ABSTAINED"
    assert abstention.reason == "Planner abstained"
