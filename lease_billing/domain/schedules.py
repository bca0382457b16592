"""Recurring schedule date arithmetic and validation"""

from datetime import date, timedelta
from decimal import Decimal
from typing import Optional

from lease_billing.domain.exceptions import ScheduleValidationError
from lease_billing.domain.models import SCHEDULABLE_TYPES, Frequency, PaymentType
from lease_billing.utils.date_utils import add_months


def calculate_next_payment_date(
    frequency: Frequency,
    from_date: date,
    day_of_month: Optional[int] = None,
) -> date:
    """
    Next due date after `from_date` for a schedule.

    Monthly schedules with an anchor land on the anchor day of the following
    month, clamped to that month's last day:
        monthly(2024-01-31, anchor=31) -> 2024-02-29
        monthly(2023-01-31, anchor=31) -> 2023-02-28
        monthly(2024-02-29, anchor=31) -> 2024-03-31
    """
    frequency = Frequency(frequency)
    if frequency == Frequency.WEEKLY:
        return from_date + timedelta(weeks=1)
    if frequency == Frequency.MONTHLY:
        return add_months(from_date, 1, anchor_day=day_of_month)
    if frequency == Frequency.QUARTERLY:
        return add_months(from_date, 3)
    return add_months(from_date, 12)


def next_step(schedule) -> Optional[date]:
    """Date the schedule advances to, or None when it would run past its end date"""
    candidate = calculate_next_payment_date(
        schedule.frequency, schedule.next_payment_date, schedule.day_of_month
    )
    if schedule.end_date is not None and candidate > schedule.end_date:
        return None
    return candidate


def period_description(payment_type: PaymentType, due_date: date) -> str:
    period = due_date.strftime("%B %Y")
    if payment_type == PaymentType.RENT:
        return f"Monthly rent for {period}"
    if payment_type == PaymentType.UTILITY:
        return f"Utility payment for {period}"
    if payment_type == PaymentType.MAINTENANCE_FEE:
        return f"Maintenance fee for {period}"
    return f"{payment_type.value.replace('_', ' ').capitalize()} payment for {period}"


def validate_schedule(
    payment_type: str,
    amount: Decimal,
    frequency: str,
    start_date: date,
    end_date: Optional[date],
    next_payment_date: date,
    day_of_month: Optional[int],
    today: Optional[date] = None,
) -> tuple[PaymentType, Frequency]:
    try:
        parsed_type = PaymentType(payment_type)
    except ValueError:
        raise ScheduleValidationError(f"Unknown payment type: {payment_type}")
    if parsed_type not in SCHEDULABLE_TYPES:
        raise ScheduleValidationError(f"Payment type {payment_type} cannot be scheduled")
    try:
        parsed_frequency = Frequency(frequency)
    except ValueError:
        raise ScheduleValidationError(f"Unknown frequency: {frequency}")
    if amount is None or Decimal(amount) <= 0:
        raise ScheduleValidationError("Schedule amount must be positive")
    if end_date is not None and end_date <= start_date:
        raise ScheduleValidationError("End date must be after start date")
    if next_payment_date < start_date:
        raise ScheduleValidationError("Next payment date cannot be before start date")
    today = today or date.today()
    if next_payment_date > add_months(today, 24):
        raise ScheduleValidationError("Next payment date cannot be more than 2 years in the future")
    if day_of_month is not None and not 1 <= day_of_month <= 31:
        raise ScheduleValidationError("Day of month must be between 1 and 31")
    return parsed_type, parsed_frequency
