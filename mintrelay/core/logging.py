"""
Logging for the relay service.

Every record carries the HTTP request id; relay records also carry the
wallet, tx hash, relay type, sponsor and nonce so one transaction can be
followed from simulation to receipt.
"""

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Dict, Optional

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

_STRUCTURED_FIELDS = ("wallet", "tx_hash", "event_type", "error_code", "relay_type", "nonce", "sponsor", "drop_id")

_LATENCY_BUCKETS = ((10, "<10ms"), (100, "10-100ms"), (500, "100-500ms"), (1000, "500-1000ms"))


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    rid = request_id_ctx_var.get()
    return rid if rid is not None else default


def latency_bucket_ms(latency_ms: Optional[float]) -> str:
    if latency_ms is None:
        return "unknown"
    for bound, label in _LATENCY_BUCKETS:
        if latency_ms < bound:
            return label
    return ">=1000ms"


def _short(value: Optional[str]) -> str:
    # 0x1234…abcd
    if value and len(value) > 14:
        return f"{value[:6]}…{value[-4:]}"
    return value or ""


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
        }
        for name in _STRUCTURED_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                payload[name] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        parts = [self.formatTime(record, "%H:%M:%S"), record.levelname, record.name]
        rid = getattr(record, "request_id", None)
        if rid:
            parts.append(f"rid={rid}")
        for label, name in (("wallet", "wallet"), ("tx", "tx_hash")):
            value = getattr(record, name, None)
            if value:
                parts.append(f"{label}={_short(value)}")
        line = " ".join(parts) + f" | {record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(env: str = "development") -> None:
    """JSON lines in production, one readable line per record elsewhere. LOG_LEVEL overrides INFO."""
    logger = logging.getLogger("mintrelay")
    logger.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if env.lower() == "production" else PrettyFormatter())
    handler.addFilter(RequestIdFilter())
    logger.handlers = [handler]


def _safe_truncate(value, limit: int = 500):
    try:
        text = str(value)
    except Exception:
        return "<unserializable>"
    return text if len(text) <= limit else text[:limit] + "...<truncated>"


def log_event(
    level: str,
    msg: str,
    *,
    request_id: Optional[str] = None,
    wallet: Optional[str] = None,
    tx_hash: Optional[str] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, object]] = None,
    logger_name: str = "mintrelay",
):
    """Emit one structured event; extra values are stringified and truncated."""
    if not logging.getLogger("mintrelay").handlers:
        configure_logging(os.getenv("ENV", "development"))

    payload = {"request_id": request_id or get_request_id(), "wallet": wallet, "tx_hash": tx_hash}
    if event_type:
        payload["event_type"] = event_type
    if error_code:
        payload["error_code"] = error_code
    for key, value in (extra or {}).items():
        payload[key] = _safe_truncate(value)

    logger = logging.getLogger(logger_name)
    getattr(logger, level, logger.info)(msg, extra=payload)
