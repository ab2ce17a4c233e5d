from __future__ import annotations

import io
import logging

from bridge_core import logging as core_logging
import chat_bridge.server as bridge_server


REQUIRED_KEYS = (
    "conversation_id",
    "project",
    "component",
    "operation",
    "result",
    "duration_ms",
    "error_class",
)


def test_structured_log_filter_injects_required_defaults() -> None:
    record = logging.LogRecord(
        name="chat_bridge",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="hello",
        args=(),
        exc_info=None,
    )

    filter_obj = core_logging.StructuredLogDefaultsFilter()
    assert filter_obj.filter(record) is True
    for key in REQUIRED_KEYS:
        assert hasattr(record, key)


def test_structured_logging_formatter_emits_required_fields() -> None:
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.addFilter(core_logging.StructuredLogDefaultsFilter())
    handler.setFormatter(
        logging.Formatter(
            "conversation_id=%(conversation_id)s project=%(project)s "
            "component=%(component)s operation=%(operation)s result=%(result)s "
            "duration_ms=%(duration_ms)s error_class=%(error_class)s %(message)s"
        )
    )

    logger = logging.getLogger("chat_bridge.structured_contract_test")
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    logger.propagate = False

    logger.info(
        "routed",
        extra=core_logging.log_extra(
            component="router",
            operation="admit",
            result="admitted",
            conversation_id="group-1",
            project="demo",
            duration_ms=12,
        ),
    )

    line = stream.getvalue().strip()
    assert "conversation_id=group-1" in line
    assert "project=demo" in line
    assert "component=router" in line
    assert "operation=admit" in line
    assert "result=admitted" in line
    assert "duration_ms=12" in line
    assert "error_class=" in line


def test_structured_log_filter_redacts_secrets() -> None:
    record = logging.LogRecord(
        name="chat_bridge",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="calling relay with token=%s",
        args=("abc123",),
        exc_info=None,
    )

    core_logging.StructuredLogDefaultsFilter().filter(record)
    assert record.getMessage() == "calling relay with token=[redacted]"


def test_normalize_log_level() -> None:
    assert core_logging.normalize_log_level("WARN") == "warning"
    assert core_logging.normalize_log_level("Debug") == "debug"
    assert core_logging.normalize_log_level("verbose") == "info"
    assert core_logging.normalize_log_level(None) == "info"


def test_configure_domain_log_levels_sets_child_loggers() -> None:
    core_logging.configure_domain_log_levels(
        domains={"Queues": "debug", "": "error", "router": "warn"},
        logger_prefix="chat_bridge_test_domains",
    )
    assert logging.getLogger("chat_bridge_test_domains.queues").level == logging.DEBUG
    assert logging.getLogger("chat_bridge_test_domains.router").level == logging.WARNING


def test_uvicorn_log_level_caps_debug() -> None:
    assert bridge_server._uvicorn_log_level("debug") == "info"
    assert bridge_server._uvicorn_log_level("warning") == "warning"
