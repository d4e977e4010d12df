"""Tests for structured logging and trace context propagation."""

import asyncio
import json
import logging

import pytest

from machina.observability import (
    clear_trace_context,
    configure_logging,
    get_trace_context,
    set_trace_context,
)
from machina.observability.logging import HumanReadableFormatter, StructuredFormatter, strip_ansi_codes


@pytest.fixture(autouse=True)
def clean_context():
    clear_trace_context()
    yield
    clear_trace_context()


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


def make_record(message="hello", **extra):
    record = logging.LogRecord("machina.test", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_trace_context_merges_and_clears():
    assert get_trace_context() == {}
    set_trace_context(execution_id="abc123")
    set_trace_context(graph="review")
    assert get_trace_context() == {"execution_id": "abc123", "graph": "review"}

    # callers get a copy
    get_trace_context()["graph"] = "changed"
    assert get_trace_context()["graph"] == "review"

    clear_trace_context()
    assert get_trace_context() == {}


@pytest.mark.asyncio
async def test_tasks_inherit_the_context():
    set_trace_context(execution_id="run-1")

    async def child():
        set_trace_context(path_id="path-2")
        return get_trace_context()

    assert await asyncio.create_task(child()) == {"execution_id": "run-1", "path_id": "path-2"}
    assert get_trace_context() == {"execution_id": "run-1"}


def test_structured_formatter_includes_context_and_extras():
    set_trace_context(execution_id="0123456789abcdef", graph="review")
    record = make_record("\033[32mmoved\033[0m", path_id="path-1", node="T", tool=None)

    entry = json.loads(StructuredFormatter().format(record))
    assert entry["message"] == "moved"
    assert entry["level"] == "info"
    assert entry["logger"] == "machina.test"
    assert entry["execution_id"] == "0123456789abcdef"
    assert entry["graph"] == "review"
    assert entry["path_id"] == "path-1"
    assert entry["node"] == "T"
    assert "tool" not in entry
    assert "timestamp" in entry


def test_human_formatter_prefix():
    set_trace_context(execution_id="0123456789abcdef")
    line = HumanReadableFormatter().format(make_record("waiting", path_id="path-3", event="agent"))
    assert "[exec:89abcdef | path:path-3] waiting [agent]" in line
    assert strip_ansi_codes(line).startswith("[INFO    ]")


def test_configure_logging_json(restore_root_logger, monkeypatch):
    monkeypatch.setenv("LOG_FORMAT", "json")
    monkeypatch.delenv("NO_COLOR", raising=False)
    monkeypatch.delenv("FORCE_COLOR", raising=False)
    configure_logging(level="debug")

    root = restore_root_logger
    assert root.level == logging.DEBUG
    assert len(root.handlers) == 1
    assert isinstance(root.handlers[0].formatter, StructuredFormatter)
    assert logging.getLogger("LiteLLM").propagate


def test_configure_logging_human(restore_root_logger, monkeypatch):
    monkeypatch.delenv("LOG_FORMAT", raising=False)
    monkeypatch.delenv("ENV", raising=False)
    configure_logging(level="WARNING", format="human")
    assert isinstance(restore_root_logger.handlers[0].formatter, HumanReadableFormatter)
    assert restore_root_logger.level == logging.WARNING
