"""Structured JSON logging for production observability"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict
from pythonjsonlogger import jsonlogger

from lease_billing.domain.models import ClockRunSummary


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter with timestamp and service metadata"""

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = datetime.now(timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["service"] = "lease-billing"


def setup_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging"""
    logger = logging.getLogger()
    logger.setLevel(level)

    # Remove existing handlers
    logger.handlers.clear()

    # JSON handler for stdout
    handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter(
        "%(timestamp)s %(level)s %(name)s %(message)s"
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)


def log_charge_outcome(
    payment_id: str,
    payment_number: str,
    status: str,
    attempt: int,
    duration_ms: float,
    failure_reason: str | None = None,
) -> None:
    """Log structured charge attempt outcome for analysis"""
    logging.info(
        "Charge attempt completed",
        extra={
            "payment_id": payment_id,
            "payment_number": payment_number,
            "step": "charge_complete",
            "status": status,
            "attempt": attempt,
            "failure_reason": failure_reason,
            "duration_ms": duration_ms,
        },
    )


def log_clock_run(summary: ClockRunSummary, duration_ms: float) -> None:
    """Log per-run counters of a billing clock pass"""
    logging.info(
        "Billing clock run completed",
        extra={
            "step": "clock_run_complete",
            "run_date": summary.run_date.isoformat(),
            "schedules_due": summary.schedules_due,
            "charged": summary.charged,
            "succeeded": summary.succeeded,
            "failed": summary.failed,
            "skipped": summary.skipped,
            "payment_method_required": summary.payment_method_required,
            "reminders_sent": summary.reminders_sent,
            "overdue_notices": summary.overdue_notices,
            "late_fees_created": summary.late_fees_created,
            "errors": len(summary.errors),
            "duration_ms": duration_ms,
        },
    )
