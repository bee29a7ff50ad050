"""Tests for structured logging and LogContext propagation."""

import json
import logging
import sys
from datetime import date
from io import StringIO
from uuid import uuid4

import pytest

from membership_kernel.domain.member_status import MemberStatus
from membership_kernel.exceptions import InvalidTransitionError
from membership_kernel.logging_config import LogContext, StructuredFormatter, get_logger


def _format(record_factory):
    formatter = StructuredFormatter()
    return json.loads(formatter.format(record_factory()))


def _record(msg="event", exc_info=None, **extra):
    record = logging.LogRecord("membership_kernel.test", logging.INFO, __file__, 1, msg, (), exc_info)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestStructuredFormatter:
    def test_basic_fields(self):
        payload = _format(lambda: _record("member_status_changed"))

        assert payload["message"] == "member_status_changed"
        assert payload["level"] == "INFO"
        assert payload["logger"] == "membership_kernel.test"
        assert "ts" in payload

    def test_extra_values_serialised(self):
        member_id = uuid4()
        payload = _format(
            lambda: _record(
                period_id=member_id,
                effective_date=date(2026, 6, 30),
                to_status=MemberStatus.LEFT,
            )
        )

        assert payload["period_id"] == str(member_id)
        assert payload["effective_date"] == "2026-06-30"
        assert payload["to_status"] == "LEFT"

    def test_context_fields_included(self):
        tenant_id = uuid4()
        with LogContext.bind(tenant_id=tenant_id, run_id="run-1"):
            payload = _format(_record)

        assert payload["tenant_id"] == str(tenant_id)
        assert payload["run_id"] == "run-1"

    def test_kernel_exception_fields(self):
        try:
            raise InvalidTransitionError("LEFT", "ACTIVE", ())
        except InvalidTransitionError:
            payload = _format(lambda: _record(exc_info=sys.exc_info()))

        assert payload["exc_type"] == "InvalidTransitionError"
        assert payload["exc_code"] == "INVALID_TRANSITION"
        assert payload["exc_from_status"] == "LEFT"
        assert "traceback" in payload


class TestLogContext:
    def test_bind_restores_previous_values(self):
        LogContext.set(actor_id="outer")
        with LogContext.bind(actor_id="inner"):
            assert LogContext.get_all()["actor_id"] == "inner"

        assert LogContext.get_all()["actor_id"] == "outer"

    def test_none_values_ignored(self):
        LogContext.set(tenant_id=None)

        assert "tenant_id" not in LogContext.get_all()

    def test_unknown_field_rejected(self):
        with pytest.raises(KeyError):
            LogContext.set(colour="blue")


class TestLoggerHierarchy:
    def test_kernel_loggers_share_prefix(self, captured_logs):
        get_logger("services.example").info("hello", extra={"answer": 42})

        [record] = [r for r in captured_logs() if r["message"] == "hello"]
        assert record["logger"] == "membership_kernel.services.example"
        assert record["answer"] == 42

    def test_stream_handler_output_is_one_json_object_per_line(self):
        stream = StringIO()
        handler = logging.StreamHandler(stream)
        handler.setFormatter(StructuredFormatter())
        logger = logging.getLogger("membership_kernel.test_lines")
        logger.addHandler(handler)
        try:
            logger.info("one")
            logger.info("two")
        finally:
            logger.removeHandler(handler)

        lines = stream.getvalue().strip().split("\n")
        assert [json.loads(line)["message"] for line in lines] == ["one", "two"]
