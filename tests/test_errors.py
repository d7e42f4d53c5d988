"""
Error Handling Tests
--------------------
Error classification, caller-side retry and structured logging.
"""

import pytest
import json
import logging
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).parent.parent))

import core.errors
from core.errors import (
    AccessDeniedError, ErrorCategory, MemoryStoreError, NotFoundError, RetryPolicy,
    UnavailableError, ValidationError, call_with_retry,
)
from infra.logging import (
    JSONFormatter, OperationContext, OperationIdFilter, configure_logging, get_logger, get_op_id,
)


class TestErrorTypes:
    """Shared hierarchy."""

    def test_categories(self):
        assert NotFoundError("x").category == ErrorCategory.NOT_FOUND
        assert UnavailableError("x").category == ErrorCategory.UNAVAILABLE
        assert ValidationError("x").category == ErrorCategory.VALIDATION_ERROR

    def test_builtin_compatibility(self):
        assert isinstance(NotFoundError("x"), KeyError)
        assert isinstance(ValidationError("x"), ValueError)

    def test_not_found_str_is_plain_message(self):
        assert str(NotFoundError("conversation c not found")) == "conversation c not found"

    def test_access_denied_details(self):
        error = AccessDeniedError("get_item", "k", "role guest is not allowed")

        assert isinstance(error, MemoryStoreError)
        assert error.details == {
            "operation": "get_item",
            "resource_id": "k",
            "reason": "role guest is not allowed",
        }


class TestRetry:
    """call_with_retry."""

    @pytest.fixture(autouse=True)
    def no_sleep(self, monkeypatch):
        self.sleeps = []
        monkeypatch.setattr(core.errors.time, "sleep", self.sleeps.append)

    def test_success_first_try(self):
        assert call_with_retry(lambda: 5) == 5

    def test_unavailable_retried_then_succeeds(self):
        attempts = []

        def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise UnavailableError("busy")
            return "ok"

        assert call_with_retry(flaky) == "ok"
        assert len(attempts) == 3
        assert self.sleeps == [0.2, 0.4]

    def test_exhausted_retries_reraise(self):
        attempts = []

        def down():
            attempts.append(1)
            raise UnavailableError("down")

        with pytest.raises(UnavailableError):
            call_with_retry(down)

        assert len(attempts) == 3

    def test_not_found_not_retried(self):
        attempts = []

        def missing():
            attempts.append(1)
            raise NotFoundError("gone")

        with pytest.raises(NotFoundError):
            call_with_retry(missing)

        assert len(attempts) == 1

    def test_no_retry_policy(self):
        attempts = []

        def down():
            attempts.append(1)
            raise UnavailableError("down")

        with pytest.raises(UnavailableError):
            call_with_retry(down, policy=RetryPolicy.no_retry())

        assert len(attempts) == 1
        assert self.sleeps == []


class TestLogging:
    """op_id propagation and JSON output."""

    def test_operation_context_nests(self):
        with OperationContext("outer"):
            with OperationContext("inner"):
                assert get_op_id() == "inner"
            assert get_op_id() == "outer"
        assert get_op_id() is None

    def test_json_formatter_includes_op_id_and_extras(self):
        record = logging.LogRecord("agentmem.test", logging.INFO, __file__, 1, "synced %d", (3,), None)
        record.conversation_id = "c-1"

        with OperationContext("op-9"):
            OperationIdFilter().filter(record)

        entry = json.loads(JSONFormatter().format(record))

        assert entry["message"] == "synced 3"
        assert entry["op_id"] == "op-9"
        assert entry["conversation_id"] == "c-1"
        assert entry["level"] == "INFO"

    def test_configure_logging_writes_json_file(self, tmp_path):
        configure_logging(level=logging.DEBUG, log_dir=str(tmp_path), console=False, file=True, force=True)
        try:
            logger = get_logger("memory.test")
            with OperationContext("op-file"):
                logger.info("stored item", extra={"key": "profile"})
            for handler in logging.getLogger("agentmem").handlers:
                handler.flush()

            lines = (tmp_path / "agentmem.log").read_text().splitlines()
            entry = json.loads(lines[-1])
        finally:
            configure_logging(console=False, file=False, force=True)

        assert logger.name == "agentmem.memory.test"
        assert entry["message"] == "stored item"
        assert entry["op_id"] == "op-file"
        assert entry["key"] == "profile"
