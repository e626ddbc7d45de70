"""Tests for structured logging, correlation ids and operation timing."""

import asyncio
import io
import json
import logging

import pytest

from nearbridge.observability import (
    BridgeComponent,
    BridgeLogger,
    StructuredHandler,
    configure_logging,
    correlation_scope,
    generate_correlation_id,
    get_correlation_id,
    timed_operation,
)


def _capture(name: str, structured: bool = True):
    stream = io.StringIO()
    logger = BridgeLogger(name, BridgeComponent.TRANSFER, structured=False)
    logger.logger.handlers = [StructuredHandler(stream, structured=structured)]
    logger.logger.propagate = False
    return logger, stream


def _records(stream):
    return [json.loads(line) for line in stream.getvalue().splitlines()]


class TestCorrelation:

    def test_generated_ids_are_unique(self):
        assert generate_correlation_id() != generate_correlation_id()
        assert generate_correlation_id().startswith("corr-")

    def test_scope_binds_and_restores(self):
        outer = get_correlation_id()
        with correlation_scope("transfer-9") as cid:
            assert cid == "transfer-9"
            assert get_correlation_id() == "transfer-9"
        assert get_correlation_id() == outer

    def test_scope_is_task_local(self):
        async def worker(cid):
            with correlation_scope(cid):
                await asyncio.sleep(0)
                return get_correlation_id()

        async def scenario():
            return await asyncio.gather(worker("a"), worker("b"))

        assert asyncio.run(scenario()) == ["a", "b"]


class TestStructuredHandler:

    def test_record_is_one_json_object(self):
        logger, stream = _capture("json-test")
        with correlation_scope("transfer-1"):
            logger.info("Lock broadcast", tx_hash="0xabc")

        record = _records(stream)[0]
        assert record["message"] == "Lock broadcast"
        assert record["level"] == "info"
        assert record["component"] == "transfer"
        assert record["correlation_id"] == "transfer-1"
        assert record["context"] == {"tx_hash": "0xabc"}
        assert record["logger"] == "nearbridge.transfer.json-test"

    def test_error_code_and_exception(self):
        logger, stream = _capture("error-test")
        try:
            raise ValueError("bad")
        except ValueError:
            logger.error("Failed", error_code="E_BAD", exc_info=True)

        record = _records(stream)[0]
        assert record["error_code"] == "E_BAD"
        assert "ValueError: bad" in record["exception"]

    def test_plain_output(self):
        logger, stream = _capture("plain-test", structured=False)
        with correlation_scope("transfer-2"):
            logger.warning("Wrong network", expected=1, got=5)

        line = stream.getvalue().strip()
        assert "WARNING" in line
        assert "[transfer]" in line
        assert "(transfer-2)" in line
        assert line.endswith("expected=1 got=5")


class TestTimedOperation:

    def test_sync_function(self):
        logger, stream = _capture("timed-sync")

        @timed_operation(logger, "add")
        def add(a, b):
            return a + b

        assert add(1, 2) == 3
        record = _records(stream)[0]
        assert record["operation"] == "add"
        assert record["message"] == "Operation add completed"
        assert record["duration_ms"] >= 0

    def test_coroutine_failure_is_logged_and_raised(self):
        logger, stream = _capture("timed-async")

        @timed_operation(logger, "fetch")
        async def fetch():
            raise ConnectionError("down")

        with pytest.raises(ConnectionError):
            asyncio.run(fetch())
        record = _records(stream)[0]
        assert record["level"] == "warning"
        assert record["message"] == "Operation fetch failed"


class TestConfigureLogging:

    def test_level_and_style_applied(self):
        logger, stream = _capture("configure-test")
        try:
            configure_logging("warning", structured=False)
            logger.info("hidden")
            logger.warning("shown")
            assert stream.getvalue().count("\n") == 1
            assert "shown" in stream.getvalue()
            assert not stream.getvalue().startswith("{")
        finally:
            configure_logging("info", structured=True)
        assert logging.getLogger("nearbridge.transfer.configure-test").level == logging.INFO
