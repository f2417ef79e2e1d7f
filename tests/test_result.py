import pytest

from app.services.result import Result


class TestResultSuccess:
    def test_success_creates_ok_result(self):
        result = Result.success("test value")
        assert result.ok is True
        assert result.value == "test value"
        assert result.error is None

    def test_success_without_value(self):
        result = Result.success()
        assert result.ok is True
        assert result.value is None


class TestResultFailure:
    def test_failure_creates_not_ok_result(self):
        result = Result.failure("Lead fetch failed", "lead_fetch_failed")
        assert result.ok is False
        assert result.error == "Lead fetch failed"
        assert result.error_code == "lead_fetch_failed"
        assert result.value is None

    def test_failure_default_code(self):
        result = Result.failure("Error message")
        assert result.error_code == "unknown"

    def test_result_is_immutable(self):
        result = Result.success(1)
        with pytest.raises(AttributeError):
            result.ok = False

