"""Structured logging for the billing service.

LOG_FORMAT=text (default) prints one readable line per record. LOG_FORMAT=json
emits one object per line, e.g. for a webhook delivery:

    {"timestamp": "2026-10-17T12:00:00+00:00", "level": "INFO",
     "logger": "cashier.services.webhooks",
     "message": "Handling webhook customer.subscription.updated (evt_1)",
     "request_id": "5f0c...", "gateway": "stripe",
     "event_type": "customer.subscription.updated", "event_id": "evt_1"}

Billing context travels in `extra=`; only the keys in BILLING_FIELDS are
copied into the JSON line, so payload dicts never end up in the logs.
"""
from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone

from cashier.middleware.request_id import request_id_var

BILLING_FIELDS = ("gateway", "event_type", "event_id", "gateway_id", "user_id", "payment_id")


class JSONFormatter(logging.Formatter):
    """One JSON object per record with request id and billing context."""

    def format(self, record: logging.LogRecord) -> str:
        log = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        rid = request_id_var.get()
        if rid:
            log["request_id"] = rid
        for key in BILLING_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                log[key] = value
        if record.exc_info and record.exc_info[1]:
            log["exception"] = self.formatException(record.exc_info)
        return json.dumps(log, default=str)


def setup_logging(log_format: str | None = None, log_level: str | None = None) -> None:
    """Install a single stdout handler on the root logger."""
    log_format = log_format or os.getenv("LOG_FORMAT", "text")
    log_level = (log_level or os.getenv("LOG_LEVEL", "INFO")).upper()

    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level, logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)-8s %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        ))
    root.addHandler(handler)

    # Gateway SDKs and the ORM are chatty at INFO
    for name in ("uvicorn.access", "sqlalchemy.engine", "httpx", "braintree"):
        logging.getLogger(name).setLevel(logging.WARNING)
