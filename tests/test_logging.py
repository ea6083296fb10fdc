"""
Tests for Logging Infrastructure
"""
import pytest
import json
import logging
from io import StringIO

from wms_sync.core.logging import (
    ContextFilter,
    JSONFormatter,
    generate_correlation_id,
    get_correlation_id,
    get_logger,
    log_async_operation,
    set_correlation_id,
    set_sync_batch_id,
)


@pytest.fixture
def log_stream() -> StringIO:
    return StringIO()


@pytest.fixture
def json_logger(log_stream: StringIO, request) -> logging.Logger:
    handler = logging.StreamHandler(log_stream)
    handler.setFormatter(JSONFormatter(app_name="wms-sync-test"))
    logger = get_logger(f"test.{request.node.name}")
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    yield logger
    logger.removeHandler(handler)


class TestCorrelationId:
    """Tests for correlation ID management"""

    @pytest.mark.unit
    def test_generate_correlation_id(self):
        cid = generate_correlation_id()

        assert len(cid) == 8
        assert cid.replace("-", "").isalnum()

    @pytest.mark.unit
    def test_set_and_get_correlation_id(self):
        assert set_correlation_id("test1234") == "test1234"
        assert get_correlation_id() == "test1234"

    @pytest.mark.unit
    def test_set_correlation_id_generates_if_none(self):
        result = set_correlation_id(None)

        assert len(result) == 8
        assert get_correlation_id() == result


class TestJSONFormatter:
    """Tests for JSON log formatting"""

    @pytest.mark.unit
    def test_json_format_basic(self, json_logger, log_stream: StringIO):
        json_logger.info("Test message")

        log_entry = json.loads(log_stream.getvalue())

        assert log_entry["level"] == "INFO"
        assert log_entry["message"] == "Test message"
        assert log_entry["app"] == "wms-sync-test"
        assert "timestamp" in log_entry

    @pytest.mark.unit
    def test_json_format_with_correlation_id(self, json_logger, log_stream: StringIO):
        set_correlation_id("testcorr")

        json_logger.info("Correlated message")

        assert json.loads(log_stream.getvalue())["correlation_id"] == "testcorr"

    @pytest.mark.unit
    def test_json_format_with_sync_batch_id(self, json_logger, log_stream: StringIO):
        """רשומות שנכתבות בזמן ריצת באץ' נושאות את מזהה הבאץ'"""
        set_sync_batch_id("sync_20240101_000000_abcd1234")
        try:
            json_logger.info("Inside batch")
        finally:
            set_sync_batch_id(None)
        json_logger.info("Outside batch")

        first, second = [json.loads(line) for line in log_stream.getvalue().splitlines()]
        assert first["sync_batch_id"] == "sync_20240101_000000_abcd1234"
        assert "sync_batch_id" not in second

    @pytest.mark.unit
    def test_json_format_with_exception(self, json_logger, log_stream: StringIO):
        try:
            raise ValueError("Test error")
        except ValueError:
            json_logger.error("Error occurred", exc_info=True)

        log_entry = json.loads(log_stream.getvalue())

        assert log_entry["level"] == "ERROR"
        assert "ValueError" in log_entry["exception"]

    @pytest.mark.unit
    def test_logger_with_extra_data(self, json_logger, log_stream: StringIO):
        json_logger.info("Webhook queued", extra_data={"webhook_id": "w-1", "priority": 1})

        log_entry = json.loads(log_stream.getvalue())

        assert log_entry["extra"] == {"webhook_id": "w-1", "priority": 1}


class TestContextFilter:

    @pytest.mark.unit
    def test_injects_placeholders(self):
        set_correlation_id("abc12345")
        set_sync_batch_id(None)
        record = logging.LogRecord("x", logging.INFO, __file__, 1, "msg", (), None)

        assert ContextFilter().filter(record)
        assert record.correlation_id == "abc12345"
        assert record.sync_batch_id == "-"


class TestAsyncLoggingDecorator:
    """Tests for async operation logging decorator"""

    @pytest.mark.unit
    async def test_log_async_operation_success(self):
        @log_async_operation("test_operation")
        async def success_func():
            return "success"

        assert await success_func() == "success"

    @pytest.mark.unit
    async def test_log_async_operation_failure(self):
        @log_async_operation("failing_operation")
        async def failing_func():
            raise ValueError("Test failure")

        with pytest.raises(ValueError):
            await failing_func()
