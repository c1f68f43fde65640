"""
JSON logging for the API and the Celery workers.

Engine code logs snake_case event names with order context in `extra`;
the formatter lifts the whitelisted keys into the JSON line.
"""
import json
import logging
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler

from cardshop.core.config import Settings, settings

# Set by the HTTP middleware, attached to every record logged while handling the request.
request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)

NOISY_LOGGERS = ("httpx", "httpcore", "celery.app.trace")


class JsonFormatter(logging.Formatter):
    """One JSON object per line: ts, level, logger, message + order context."""

    EXTRA_FIELDS = (
        # order context
        "order_id", "product_id", "card_id", "user_id", "trade_no",
        "status", "previous_order_id", "amount", "paid_amount", "quantity",
        "reason", "count", "error",
        # request context
        "request_id", "path", "method", "status_code", "latency_ms",
        # gateway breaker
        "breaker_name", "old_state", "new_state",
    )

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_id = request_id_var.get()
        if request_id and getattr(record, "request_id", None) is None:
            payload["request_id"] = request_id

        for field in self.EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(config: Settings | None = None) -> None:
    config = config or settings
    formatter = JsonFormatter()

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if config.log_file:
        handlers.append(
            RotatingFileHandler(
                config.log_file,
                maxBytes=config.log_max_bytes,
                backupCount=config.log_backup_count,
            )
        )
    for handler in handlers:
        handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(config.log_level.upper())
    root.handlers = handlers
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
