"""Tests for the structured logging system (hrms_kernel/logging_config.py)."""

import json
import logging
from decimal import Decimal
from io import StringIO
from uuid import uuid4

import pytest

from hrms_kernel.logging_config import (
    CONTEXT_FIELDS,
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)


@pytest.fixture(autouse=True)
def _clean_logging():
    """Reset logging state between tests, then restore the suite's configuration."""
    reset_logging()
    LogContext.clear()
    yield
    LogContext.clear()
    reset_logging()
    configure_logging(level=logging.DEBUG)


def _make_handler() -> tuple[logging.Handler, StringIO]:
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    return handler, stream


def _parse_log(stream: StringIO) -> dict:
    """Parse the first JSON log line from a stream."""
    line = stream.getvalue().strip().split("\n")[0]
    return json.loads(line)


def _parse_all_logs(stream: StringIO) -> list[dict]:
    """Parse all JSON log lines from a stream."""
    lines = stream.getvalue().strip().split("\n")
    return [json.loads(line) for line in lines if line]


# ---------------------------------------------------------------------------
# StructuredFormatter tests
# ---------------------------------------------------------------------------


class TestStructuredFormatter:
    """Tests for JSON log output format."""

    def test_basic_json_output(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.info("hello")

        record = _parse_log(stream)
        assert record["level"] == "INFO"
        assert record["message"] == "hello"
        assert record["logger"] == "hrms_kernel.test"
        assert "ts" in record

    def test_extra_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.info("claim_submitted", extra={"approval_levels": 2, "status": "PENDING"})

        record = _parse_log(stream)
        assert record["approval_levels"] == 2
        assert record["status"] == "PENDING"

    def test_payout_identifiers_masked(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").warning(
            "bank_details_incomplete",
            extra={"account_number": "123456789012", "pan_number": "ABCDE1234F", "ifsc_code": "HDFC0001234"},
        )

        record = _parse_log(stream)
        assert record["account_number"] == "********9012"
        assert record["pan_number"] == "******234F"
        assert record["ifsc_code"] == "HDFC0001234"

    def test_short_and_missing_identifiers_left_alone(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("payee", extra={"account_number": "1234", "pan_number": None})

        record = _parse_log(stream)
        assert record["account_number"] == "1234"
        assert record["pan_number"] is None

    def test_context_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        LogContext.set(correlation_id="abc-123", claim_id="clm-456")
        logger.info("test_msg")

        record = _parse_log(stream)
        assert record["correlation_id"] == "abc-123"
        assert record["claim_id"] == "clm-456"

    def test_exception_fields(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        try:
            raise ValueError("boom")
        except ValueError:
            logger.error("failed", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_type"] == "ValueError"
        assert record["exc_message"] == "boom"
        assert "traceback" in record

    def test_kernel_exception_code_extracted(self):
        """HRMS kernel exceptions carry .code and structured attributes."""
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        from hrms_kernel.exceptions import InvalidRequestError

        try:
            raise InvalidRequestError("title", "must not be blank")
        except InvalidRequestError:
            logger.error("request_error", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_code"] == "INVALID_REQUEST"
        assert record["exc_type"] == "InvalidRequestError"
        assert record["exc_field"] == "title"
        assert record["exc_reason"] == "must not be blank"

    def test_no_context_fields_when_empty(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.info("bare_message")

        record = _parse_log(stream)
        assert "correlation_id" not in record
        assert "claim_id" not in record

    def test_uuid_and_decimal_serialized(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        uid = uuid4()
        logger.info("with_values", extra={"batch_id": uid, "total_amount": Decimal("1350.50")})

        record = _parse_log(stream)
        assert record["batch_id"] == str(uid)
        assert record["total_amount"] == "1350.50"

    def test_valid_json_every_line(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.info("first")
        logger.warning("second", extra={"k": "v"})
        logger.debug("third")

        logs = _parse_all_logs(stream)
        # default level is INFO so the debug line is dropped
        assert len(logs) == 2
        for record in logs:
            assert "ts" in record
            assert "level" in record
            assert "logger" in record
            assert "message" in record


# ---------------------------------------------------------------------------
# LogContext tests
# ---------------------------------------------------------------------------


class TestLogContext:
    """Tests for context propagation."""

    def test_set_and_get(self):
        LogContext.set(correlation_id="x", batch_id="y")
        ctx = LogContext.get_all()
        assert ctx == {"correlation_id": "x", "batch_id": "y"}

    def test_clear(self):
        LogContext.set(correlation_id="x")
        LogContext.clear()
        assert LogContext.get_all() == {}

    def test_bind_context_manager(self):
        LogContext.set(correlation_id="outer")
        with LogContext.bind(correlation_id="inner"):
            assert LogContext.get_all()["correlation_id"] == "inner"
        assert LogContext.get_all()["correlation_id"] == "outer"

    def test_bind_restores_none(self):
        """bind() restores to None if there was no previous value."""
        assert "claim_id" not in LogContext.get_all()
        with LogContext.bind(claim_id="temp"):
            assert LogContext.get_all()["claim_id"] == "temp"
        assert "claim_id" not in LogContext.get_all()

    def test_bind_stringifies_values(self):
        uid = uuid4()
        with LogContext.bind(employee_id=uid):
            assert LogContext.get_all()["employee_id"] == str(uid)

    def test_additive_set(self):
        LogContext.set(correlation_id="a")
        LogContext.set(actor_id="b")
        ctx = LogContext.get_all()
        assert ctx["correlation_id"] == "a"
        assert ctx["actor_id"] == "b"

    def test_all_fields(self):
        LogContext.set(**{name: name.upper() for name in CONTEXT_FIELDS})
        assert LogContext.get_all() == {name: name.upper() for name in CONTEXT_FIELDS}

    def test_unknown_field_rejected(self):
        with pytest.raises(TypeError, match="unknown log context field"):
            LogContext.set(department_id="d")


# ---------------------------------------------------------------------------
# configure_logging tests
# ---------------------------------------------------------------------------


class TestConfigureLogging:
    """Tests for initialization."""

    def test_idempotent(self):
        h1, _ = _make_handler()
        configure_logging(handler=h1)
        h2, _ = _make_handler()
        configure_logging(handler=h2)  # second call is no-op
        handlers = logging.getLogger("hrms_kernel").handlers
        assert h1 in handlers
        assert h2 not in handlers
        assert sum(isinstance(h.formatter, StructuredFormatter) for h in handlers) == 1

    def test_get_logger_returns_child(self):
        logger = get_logger("modules.expense.service")
        assert logger.name == "hrms_kernel.modules.expense.service"

    def test_logger_hierarchy(self):
        """Child loggers inherit the hrms_kernel root config."""
        handler, stream = _make_handler()
        configure_logging(handler=handler, level=logging.DEBUG)
        child = get_logger("deep.nested.module")
        child.debug("hierarchy_test")

        record = _parse_log(stream)
        assert record["message"] == "hierarchy_test"
        assert record["logger"] == "hrms_kernel.deep.nested.module"
