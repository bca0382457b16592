"""/v1/schedules - recurring payment schedules and on-demand period payments"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from lease_billing.api.dependencies import get_request_id
from lease_billing.api.v1.payments import parse_id, to_payment_response
from lease_billing.api.v1.schemas import MaterializedPaymentResponse, ScheduleCreateRequest, ScheduleResponse
from lease_billing.domain.exceptions import ScheduleInactiveError, ScheduleValidationError
from lease_billing.infrastructure.database.models import PaymentSchedule
from lease_billing.infrastructure.database.repositories import ScheduleRepository
from lease_billing.infrastructure.database.session import get_db
from lease_billing.services.schedules import ScheduleService

router = APIRouter()


def to_schedule_response(schedule: PaymentSchedule) -> ScheduleResponse:
    return ScheduleResponse(
        schedule_id=str(schedule.id),
        lease_agreement_id=schedule.lease_agreement_id,
        payer_id=schedule.payer_id,
        payment_type=schedule.payment_type,
        amount=schedule.amount,
        frequency=schedule.frequency,
        start_date=schedule.start_date,
        end_date=schedule.end_date,
        next_payment_date=schedule.next_payment_date,
        day_of_month=schedule.day_of_month,
        is_active=schedule.is_active,
        auto_pay=schedule.auto_pay,
        description=schedule.description,
    )


def load_schedule(db: Session, schedule_id: str) -> PaymentSchedule:
    schedule = ScheduleRepository(db).get(parse_id(schedule_id, "schedule"))
    if not schedule:
        raise HTTPException(status_code=404, detail="Schedule not found")
    return schedule


@router.post("/schedules", response_model=ScheduleResponse, status_code=201)
def create_schedule(request_body: ScheduleCreateRequest, request: Request, db: Session = Depends(get_db)):
    """Create the recurring schedule of an activated lease"""
    request_id = get_request_id(request)
    try:
        schedule = ScheduleService(db).create_schedule(**request_body.model_dump())
        db.commit()
    except ScheduleValidationError as e:
        db.rollback()
        logging.warning(f"Invalid schedule: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=422, detail=str(e))

    return to_schedule_response(schedule)


@router.get("/schedules/{schedule_id}", response_model=ScheduleResponse)
def get_schedule(schedule_id: str, db: Session = Depends(get_db)):
    return to_schedule_response(load_schedule(db, schedule_id))


@router.post("/schedules/{schedule_id}/deactivate", response_model=ScheduleResponse)
def deactivate_schedule(schedule_id: str, db: Session = Depends(get_db)):
    """Stop producing payments, e.g. when the lease ends"""
    schedule = ScheduleService(db).deactivate(load_schedule(db, schedule_id))
    db.commit()
    return to_schedule_response(schedule)


@router.post("/schedules/{schedule_id}/payments", response_model=MaterializedPaymentResponse)
def create_period_payment(schedule_id: str, db: Session = Depends(get_db)):
    """
    Materialize the payment for the schedule's current period.

    Idempotent: repeating the call returns the existing payment with
    `created: false` and leaves the schedule where it is.
    """
    schedule = load_schedule(db, schedule_id)
    try:
        materialized = ScheduleService(db).create_payment_for_current_period(schedule)
        db.commit()
    except ScheduleInactiveError as e:
        db.rollback()
        raise HTTPException(status_code=409, detail=str(e))

    return MaterializedPaymentResponse(
        created=materialized.created,
        payment=to_payment_response(materialized.payment),
    )
