"""Tests for structured logging with payment context."""
import json
import logging

from paymentauth.logging_config import (
    LogContext,
    PaymentContextFilter,
    StructuredFormatter,
    challenge_id_var,
    generate_request_id,
    reference_var,
    request_id_var,
    setup_logging,
)


def _record(msg="hello", **extra) -> logging.LogRecord:
    record = logging.LogRecord("paymentauth.gate", logging.INFO, __file__, 10, msg, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestLogContext:
    def test_sets_and_resets(self):
        with LogContext(request_id="req_1", challenge_id="ch_1", reference="0xabc"):
            assert request_id_var.get() == "req_1"
            assert challenge_id_var.get() == "ch_1"
            assert reference_var.get() == "0xabc"
        assert request_id_var.get() is None
        assert challenge_id_var.get() is None
        assert reference_var.get() is None

    def test_nested_keeps_outer_values(self):
        with LogContext(request_id="req_1"):
            with LogContext(challenge_id="ch_1"):
                assert request_id_var.get() == "req_1"
                assert challenge_id_var.get() == "ch_1"
            assert challenge_id_var.get() is None
            assert request_id_var.get() == "req_1"


class TestStructuredFormatter:
    def test_json_output_with_context(self):
        record = _record()
        with LogContext(request_id="req_1", reference="0xabc"):
            PaymentContextFilter().filter(record)
        data = json.loads(StructuredFormatter().format(record))
        assert data["message"] == "hello"
        assert data["level"] == "INFO"
        assert data["logger"] == "paymentauth.gate"
        assert data["request_id"] == "req_1"
        assert data["reference"] == "0xabc"
        assert "challenge_id" not in data

    def test_extra_fields(self):
        record = _record(path="/premium")
        data = json.loads(StructuredFormatter().format(record))
        assert data["path"] == "/premium"


class TestSetupLogging:
    def test_configures_package_logger(self):
        setup_logging(level="debug", json_format=False)
        logger = logging.getLogger("paymentauth")
        try:
            assert logger.level == logging.DEBUG
            assert len(logger.handlers) == 1
            assert logger.propagate is False
            setup_logging()
            assert len(logger.handlers) == 1
            assert isinstance(logger.handlers[0].formatter, StructuredFormatter)
        finally:
            for handler in logger.handlers[:]:
                logger.removeHandler(handler)
            logger.propagate = True
            logger.setLevel(logging.NOTSET)


def test_request_id_format():
    request_id = generate_request_id()
    assert request_id.startswith("req_")
    assert len(request_id) == 20
