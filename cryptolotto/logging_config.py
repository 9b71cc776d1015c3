import logging
import json
import sys
from datetime import datetime


class JSONFormatter(logging.Formatter):
    """Structured JSON log formatter."""

    CONTEXT_KEYS = (
        "lottery_id", "round", "ticket_number", "user_id", "payment_method",
        "reference", "quantity", "stream", "msg_id", "status", "winner_ticket_number",
        "tickets_sold",
    )

    def format(self, record):
        log_entry = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key in self.CONTEXT_KEYS:
            if hasattr(record, key):
                log_entry[key] = getattr(record, key)

        # Set by the OpenTelemetry logging instrumentation; "0" outside a span.
        trace_id = getattr(record, "otelTraceID", "0")
        if trace_id != "0":
            log_entry["trace_id"] = trace_id
            log_entry["span_id"] = getattr(record, "otelSpanID", "0")

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def configure_logging(service_name: str, level: str = "INFO"):
    """Configure structured JSON logging for the service."""

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper()))

    # Quiet noisy loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    return logging.getLogger(service_name)
