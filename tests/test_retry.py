"""Tests for retry with backoff and error normalization."""

import pytest

from converge.utils.errors import (
    ConvergeError,
    CycleError,
    ErrorCategory,
    ErrorContext,
    ProviderError,
    StateStoreError,
    ValidationError,
    error_handler,
)
from converge.utils.retry import RetryStrategy, with_retry


class Flaky:
    """Raises the queued errors, then returns 'ok'."""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


class TestRetryStrategy:
    """Tests for RetryStrategy."""

    def setup_method(self) -> None:
        self.sleeps = []
        self.strategy = RetryStrategy(
            max_attempts=4, base_delay=1.0, max_delay=3.0, jitter=False, sleep=self.sleeps.append
        )

    def test_success_first_try(self) -> None:
        func = Flaky()
        assert self.strategy.execute_with_retry(func) == "ok"
        assert func.calls == 1
        assert self.sleeps == []

    def test_transient_errors_retried_with_backoff(self) -> None:
        func = Flaky(*[ProviderError("busy", transient=True)] * 3)
        assert self.strategy.execute_with_retry(func) == "ok"
        assert func.calls == 4
        assert self.sleeps == [1.0, 2.0, 3.0]

    def test_network_errors_retried(self) -> None:
        func = Flaky(ConnectionError("reset"), TimeoutError("slow"))
        assert self.strategy.execute_with_retry(func) == "ok"
        assert func.calls == 3

    def test_permanent_error_raised_immediately(self) -> None:
        func = Flaky(ProviderError("denied"))
        with pytest.raises(ProviderError, match="denied"):
            self.strategy.execute_with_retry(func)
        assert func.calls == 1

    def test_attempts_exhausted(self) -> None:
        func = Flaky(*[ProviderError("busy", transient=True)] * 5)
        with pytest.raises(ProviderError):
            self.strategy.execute_with_retry(func)
        assert func.calls == 4

    def test_on_retry_callback(self) -> None:
        seen = []
        func = Flaky(ProviderError("busy", transient=True))
        self.strategy.execute_with_retry(func, on_retry=lambda attempt, error: seen.append(attempt))
        assert seen == [1]

    def test_jitter_bounded(self) -> None:
        strategy = RetryStrategy(base_delay=1.0, jitter=True)
        for _ in range(20):
            assert 1.0 <= strategy.get_delay(1) <= 1.1

    def test_invalid_max_attempts(self) -> None:
        with pytest.raises(ValueError):
            RetryStrategy(max_attempts=0)

    def test_decorator(self) -> None:
        calls = []

        @with_retry(max_attempts=2, base_delay=0, jitter=False)
        def once_flaky():
            calls.append(1)
            if len(calls) == 1:
                raise ProviderError("busy", transient=True)
            return len(calls)

        assert once_flaky() == 2


class TestErrors:
    """Tests for the error hierarchy."""

    def test_cycle_error_message(self) -> None:
        error = CycleError(["app.a", "app.b", "app.a"])
        assert error.message == "Circular dependency detected: app.a -> app.b -> app.a"
        assert error.category == ErrorCategory.DEPENDENCY

    def test_user_message_includes_context_and_suggestions(self) -> None:
        error = ValidationError(
            "bad attribute",
            context=ErrorContext(resource_key="app.web", operation="create"),
            suggestions=["fix it"],
        )
        message = error.to_user_message()
        assert "app.web" in message
        assert "1. fix it" in message
        assert error.to_dict()["context"]["resource_key"] == "app.web"

    def test_state_store_error_default_suggestions(self) -> None:
        assert any("state reset" in s for s in StateStoreError("broken").suggestions)

    def test_handle_exception_passes_through_converge_errors(self) -> None:
        error = ProviderError("x")
        assert error_handler.handle_exception(error) is error

    def test_handle_exception_network_is_transient(self) -> None:
        error = error_handler.handle_exception(ConnectionError("reset"))
        assert isinstance(error, ProviderError)
        assert error.transient

    def test_handle_exception_unexpected_is_permanent(self) -> None:
        error = error_handler.handle_exception(KeyError("k"), ErrorContext(resource_key="app.web"))
        assert isinstance(error, ConvergeError)
        assert not error.transient
        assert error.context.resource_key == "app.web"
