from __future__ import annotations

import logging
import re
import sys
from collections.abc import Callable, Mapping
from typing import Any


_REDACT_PATTERN = re.compile(r"(?i)(authorization|token|api_key|password)=([^\s,;]+)")

LOG_LEVEL_CHOICES = ("debug", "info", "warning", "error")

STRUCTURED_FIELDS: dict[str, Any] = {
    "conversation_id": "",
    "project": "",
    "component": "",
    "operation": "",
    "result": "",
    "duration_ms": 0,
    "error_class": "",
}


class StructuredLogDefaultsFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in STRUCTURED_FIELDS.items():
            if not hasattr(record, key):
                setattr(record, key, value)
        try:
            message = record.getMessage()
        except Exception:
            return True
        lowered = message.lower()
        if any(secret_key in lowered for secret_key in ("authorization", "token", "api_key", "password")):
            record.msg = _REDACT_PATTERN.sub(r"\1=[redacted]", message)
            record.args = ()
        return True


def normalize_log_level(value: Any) -> str:
    normalized = str(value or "").strip().lower()
    if normalized == "warn":
        normalized = "warning"
    if normalized not in LOG_LEVEL_CHOICES:
        return "info"
    return normalized


def log_extra(
    *,
    component: str,
    operation: str,
    result: str = "",
    conversation_id: str = "",
    project: str = "",
    duration_ms: int = 0,
    error_class: str = "",
) -> dict[str, Any]:
    return {
        "component": component,
        "operation": operation,
        "result": result,
        "conversation_id": conversation_id,
        "project": project,
        "duration_ms": int(duration_ms),
        "error_class": error_class,
    }


def configure_structured_logger(logger: logging.Logger, *, level: str) -> None:
    handler = logging.StreamHandler(sys.__stderr__)
    handler.addFilter(StructuredLogDefaultsFilter())
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: "
            "conversation_id=%(conversation_id)s project=%(project)s "
            "component=%(component)s operation=%(operation)s result=%(result)s "
            "duration_ms=%(duration_ms)s error_class=%(error_class)s %(message)s"
        )
    )
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.setLevel(getattr(logging, normalize_log_level(level).upper(), logging.INFO))
    logger.propagate = False


def configure_domain_log_levels(
    *,
    domains: Mapping[str, Any] | None,
    logger_prefix: str,
    normalize_level: Callable[[Any], str] = normalize_log_level,
) -> None:
    if not isinstance(domains, Mapping):
        return
    for domain, level_value in domains.items():
        normalized_domain = str(domain or "").strip().lower()
        if not normalized_domain:
            continue
        level = normalize_level(level_value)
        logging.getLogger(f"{logger_prefix}.{normalized_domain}").setLevel(
            getattr(logging, level.upper(), logging.INFO)
        )
