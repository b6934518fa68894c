from omnichat.services.result import Result


class TestResultSuccess:
    def test_success_creates_ok_result(self):
        result = Result.success("uploads/menu.webp")
        assert result.ok is True
        assert result.value == "uploads/menu.webp"
        assert result.error is None

    def test_success_with_none_value(self):
        result = Result.success(None)
        assert result.ok is True
        assert result.value is None


class TestResultFailure:
    def test_failure_creates_not_ok_result(self):
        result = Result.failure("bot was blocked by the user", "telegram_send_failed")
        assert result.ok is False
        assert result.error == "bot was blocked by the user"
        assert result.error_code == "telegram_send_failed"
        assert result.value is None

    def test_failure_default_code(self):
        assert Result.failure("Error message").error_code == "unknown"

    def test_from_exception_keeps_type_name(self):
        result = Result.from_exception(TimeoutError("read timed out"), "download_failed")
        assert result.ok is False
        assert result.error == "TimeoutError: read timed out"
        assert result.error_code == "download_failed"


class TestResultUnwrapOr:
    def test_unwrap_or_returns_value_on_success(self):
        assert Result.success("actual value").unwrap_or("default") == "actual value"

    def test_unwrap_or_returns_default_on_failure(self):
        assert Result.failure("Error", "code").unwrap_or("default") == "default"

    def test_unwrap_or_with_none_value(self):
        assert Result.success(None).unwrap_or("default") is None
