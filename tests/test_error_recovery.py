"""Tests for retries, error mapping and health checks."""

import pytest

from cognitive_workflow.core.error_recovery import HealthChecker, RetryConfig, retry_async
from cognitive_workflow.core.exceptions import (
    ConflictError,
    EmbeddingUnavailableError,
    ExecutionError,
    ExecutionTimeoutError,
    NotFoundError,
    ProviderError,
    SchemaMismatchError,
    create_error_response,
    http_status_for,
    is_transient,
)
from cognitive_workflow.models.core import RetryPolicy


class TestRetry:
    """Retry decisions and backoff."""

    def test_transience(self):
        assert is_transient(ExecutionTimeoutError("slow"))
        assert is_transient(ProviderError("busy", transient=True))
        assert not is_transient(ProviderError("bad request"))
        assert not is_transient(SchemaMismatchError("wrong shape"))
        assert is_transient(ExecutionError("wrapped", cause=ProviderError("busy", transient=True)))
        assert not is_transient(ValueError("plain"))

    def test_backoff_is_exponential_and_capped(self):
        config = RetryConfig.from_policy(RetryPolicy(max_attempts=5, backoff_seconds=1.0, backoff_multiplier=2.0))
        config.max_delay = 3.0

        assert [config.get_delay(attempt) for attempt in (1, 2, 3)] == [1.0, 2.0, 3.0]

    async def test_retry_async_stops_on_success(self):
        attempts = []

        async def operation():
            if len(attempts) < 2:
                raise ExecutionTimeoutError("slow")
            return "done"

        result = await retry_async(operation, RetryConfig(max_attempts=3), "operation", on_attempt=attempts.append)

        assert result == "done"
        assert attempts == [1, 2, 3]

    async def test_retry_async_does_not_retry_permanent_errors(self):
        attempts = []

        async def operation():
            raise SchemaMismatchError("wrong shape")

        with pytest.raises(SchemaMismatchError):
            await retry_async(operation, RetryConfig(max_attempts=3), "operation", on_attempt=attempts.append)

        assert attempts == [1]


class TestErrorMapping:
    def test_http_status_for(self):
        assert http_status_for(NotFoundError("missing")) == 404
        assert http_status_for(ConflictError("duplicate")) == 409
        assert http_status_for(SchemaMismatchError("shape")) == 422
        assert http_status_for(EmbeddingUnavailableError("down")) == 503
        assert http_status_for(ExecutionTimeoutError("slow")) == 504

    def test_error_response(self):
        response = create_error_response(NotFoundError("Workflow 'x' is not registered", instance_id="x"))

        assert response["error"] == "NotFoundError"
        assert response["context"] == {"instance_id": "x"}
        assert response["details"]["category"] == "registry"


class TestHealthChecker:
    async def test_failing_check_marks_unhealthy(self):
        checker = HealthChecker()
        checker.register_check("ok", lambda: {"message": "fine"})

        def broken():
            raise RuntimeError("down")

        checker.register_check("broken", broken)

        results = await checker.run_all_checks()

        assert results["overall_status"] == "unhealthy"
        assert results["checks"]["ok"]["status"] == "healthy"
        assert results["checks"]["broken"]["error_type"] == "RuntimeError"
        assert (await checker.run_check("missing"))["status"] == "error"
