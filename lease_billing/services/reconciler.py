"""Gateway reconciler - applies gateway-reported outcomes onto the payment ledger

Delivery is at-least-once and unordered, so every handler is written to be
idempotent and commutative with respect to the payment's current status:

- an external event id is claimed once in `gateway_events`; redeliveries are
  no-ops;
- a terminal status (succeeded, refunded, canceled) is never regressed by an
  event describing an earlier logical state;
- a success reported for a payment the ledger already settled with another
  charge, or canceled, is a reconciliation conflict: recorded on the payment
  and on the event record, never applied;
- a success reported for an earlier attempt the payment has moved past (a
  retry attached a newer intent) is also a conflict: the charge is recorded,
  the current attempt is left alone.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from lease_billing.domain.exceptions import ReconciliationConflictError
from lease_billing.domain.models import (
    BillingEvent,
    GatewayEvent,
    GatewayEventKind,
    GatewayIntent,
    PaymentStatus,
)
from lease_billing.domain.payments import (
    TERMINAL_STATUSES,
    begin_retry,
    mark_canceled,
    mark_failed,
    mark_processing,
    mark_succeeded,
    status_of,
)
from lease_billing.infrastructure.clients.gateway import parse_intent, parse_payment_method
from lease_billing.infrastructure.database.models import Payment
from lease_billing.infrastructure.database.repositories import (
    GatewayEventRepository,
    PaymentMethodRepository,
    PaymentRepository,
)
from lease_billing.infrastructure.observability.metrics import webhook_event_counter
from lease_billing.utils.date_utils import utcnow

logger = logging.getLogger(__name__)

# Gateway intent status -> ledger status it implies
INTENT_STATUS_TARGETS: Dict[str, Optional[PaymentStatus]] = {
    "succeeded": PaymentStatus.SUCCEEDED,
    "processing": PaymentStatus.PROCESSING,
    "failed": PaymentStatus.FAILED,
    "requires_payment_method": PaymentStatus.FAILED,
    "canceled": PaymentStatus.CANCELED,
    "requires_confirmation": None,
    "requires_action": None,
}


@dataclass
class ReconcileOutcome:
    outcome: str  # applied | noop | stale | duplicate | ignored | not_found | conflict
    payment: Optional[Payment] = None
    events: List[BillingEvent] = field(default_factory=list)
    detail: Optional[str] = None


class GatewayReconciler:
    def __init__(self, db: Session):
        self.db = db
        self.payments = PaymentRepository(db)
        self.methods = PaymentMethodRepository(db)
        self.event_records = GatewayEventRepository(db)
        self._handlers: Dict[GatewayEventKind, Callable[[dict], ReconcileOutcome]] = {
            kind: getattr(self, name) for kind, name in _DISPATCH.items()
        }

    def handle_event(self, event: GatewayEvent) -> ReconcileOutcome:
        """
        Apply one webhook event. The caller owns the transaction: commit to
        acknowledge, roll back to let the gateway redeliver.

        Raises:
            ConcurrencyConflictError: a concurrent writer changed the payment
        """
        try:
            kind = GatewayEventKind(event.kind)
        except ValueError:
            logger.info("Unhandled gateway event kind", extra={"event_id": event.event_id, "kind": event.kind})
            webhook_event_counter.labels(kind="unknown", outcome="ignored").inc()
            return ReconcileOutcome("ignored", detail=f"unhandled kind {event.kind}")

        record = self.event_records.record(event, object_id=event.data.get("id"))
        if record is None:
            logger.info("Duplicate gateway event", extra={"event_id": event.event_id, "kind": event.kind})
            webhook_event_counter.labels(kind=kind.value, outcome="duplicate").inc()
            return ReconcileOutcome("duplicate")

        outcome = self._handlers[kind](event.data)
        self.event_records.set_outcome(record, outcome.outcome, outcome.detail)
        webhook_event_counter.labels(kind=kind.value, outcome=outcome.outcome).inc()
        logger.info(
            "Gateway event reconciled",
            extra={
                "event_id": event.event_id,
                "kind": kind.value,
                "outcome": outcome.outcome,
                "payment_id": str(outcome.payment.id) if outcome.payment else None,
            },
        )
        return outcome

    def apply_intent(self, payment: Payment, intent: GatewayIntent) -> ReconcileOutcome:
        """Apply a synchronously returned intent the same way a webhook would be"""
        target = INTENT_STATUS_TARGETS.get(intent.status)
        if target is None:
            return ReconcileOutcome("noop", payment=payment, detail=f"intent status {intent.status}")
        return self.reconcile(payment, target, intent)

    def reconcile(self, payment: Payment, target: PaymentStatus, intent: GatewayIntent) -> ReconcileOutcome:
        try:
            if target == PaymentStatus.SUCCEEDED:
                return self._settle(payment, intent)
            if target == PaymentStatus.FAILED:
                return self._fail(payment, intent)
            if target == PaymentStatus.PROCESSING:
                return self._process(payment)
            return self._cancel(payment, intent)
        except ReconciliationConflictError as e:
            return self._record_conflict(payment, intent, str(e))

    def _settle(self, payment: Payment, intent: GatewayIntent) -> ReconcileOutcome:
        current = status_of(payment)
        if current == PaymentStatus.CANCELED:
            raise ReconciliationConflictError(
                f"Gateway reports intent {intent.intent_id} succeeded but payment {payment.payment_number} is canceled"
            )
        if current == PaymentStatus.REFUNDED:
            return ReconcileOutcome("stale", payment=payment)

        events: List[BillingEvent] = []
        # A success may outrun the processing notice; walk the allowed edges
        if current == PaymentStatus.PENDING:
            self.payments.apply_transition(payment, mark_processing(payment))
        elif current == PaymentStatus.FAILED:
            self.payments.apply_transition(payment, begin_retry(payment))

        transition = mark_succeeded(payment, intent.charge_id, paid_at=utcnow())
        self.payments.apply_transition(payment, transition)
        events.extend(transition.events)
        return ReconcileOutcome("noop" if transition.noop else "applied", payment=payment, events=events)

    def _fail(self, payment: Payment, intent: GatewayIntent) -> ReconcileOutcome:
        current = status_of(payment)
        if current in TERMINAL_STATUSES:
            return ReconcileOutcome("stale", payment=payment)
        if current == PaymentStatus.FAILED:
            return ReconcileOutcome("noop", payment=payment)
        transition = mark_failed(payment, intent.failure_message or "Payment failed")
        self.payments.apply_transition(payment, transition)
        return ReconcileOutcome("applied", payment=payment, events=list(transition.events))

    def _process(self, payment: Payment) -> ReconcileOutcome:
        current = status_of(payment)
        if current != PaymentStatus.PENDING:
            return ReconcileOutcome("noop" if current == PaymentStatus.PROCESSING else "stale", payment=payment)
        self.payments.apply_transition(payment, mark_processing(payment))
        return ReconcileOutcome("applied", payment=payment)

    def _cancel(self, payment: Payment, intent: GatewayIntent) -> ReconcileOutcome:
        current = status_of(payment)
        if current == PaymentStatus.CANCELED:
            return ReconcileOutcome("noop", payment=payment)
        if current not in (PaymentStatus.PENDING, PaymentStatus.PROCESSING):
            logger.warning(
                "Ignoring cancellation for payment past cancelable state",
                extra={"payment_id": str(payment.id), "status": payment.status},
            )
            return ReconcileOutcome("stale", payment=payment)
        self.payments.apply_transition(
            payment, mark_canceled(payment, intent.cancellation_reason or "Payment canceled")
        )
        return ReconcileOutcome("applied", payment=payment)

    def _record_conflict(self, payment: Payment, intent: GatewayIntent, detail: str) -> ReconcileOutcome:
        logger.error(
            "Reconciliation conflict",
            extra={"payment_id": str(payment.id), "intent_id": intent.intent_id, "detail": detail},
        )
        metadata = dict(payment.payment_metadata or {})
        metadata["reconciliation_conflicts"] = list(metadata.get("reconciliation_conflicts", [])) + [
            {"intent_id": intent.intent_id, "charge_id": intent.charge_id, "detail": detail}
        ]
        payment.payment_metadata = metadata
        self.db.flush()
        return ReconcileOutcome("conflict", payment=payment, detail=detail)

    def _locate(self, intent: GatewayIntent) -> Tuple[Optional[Payment], bool]:
        """
        Find the payment by intent id, falling back to the payment number the
        engine stamps into intent metadata (a webhook can outrun the
        synchronous response that records the intent id).

        Returns the payment and whether the intent is a superseded attempt,
        i.e. the payment has since been linked to a different intent.
        """
        payment = self.payments.get_by_intent_id(intent.intent_id)
        if payment is not None:
            return payment, False

        payment_number = intent.metadata.get("payment_number")
        if payment_number:
            payment = self.payments.get_by_number(payment_number)
            if payment is not None:
                if payment.gateway_intent_id is None:
                    payment.gateway_intent_id = intent.intent_id
                    self.db.flush()
                    return payment, False
                return payment, True
        logger.warning("No payment found for gateway intent", extra={"intent_id": intent.intent_id})
        return None, False

    def _on_intent(self, data: dict, target: PaymentStatus) -> ReconcileOutcome:
        intent = parse_intent(data)
        payment, superseded = self._locate(intent)
        if payment is None:
            return ReconcileOutcome("not_found", detail=f"intent {intent.intent_id}")
        if superseded:
            return self._on_superseded_intent(payment, target, intent)
        return self.reconcile(payment, target, intent)

    def _on_superseded_intent(self, payment: Payment, target: PaymentStatus, intent: GatewayIntent) -> ReconcileOutcome:
        """
        An earlier attempt (e.g. one that timed out locally before a retry
        attached a new intent) reported an outcome. Money moved on a success,
        so it is recorded as a conflict; any other outcome is stale.
        """
        if target != PaymentStatus.SUCCEEDED:
            return ReconcileOutcome("stale", payment=payment, detail=f"superseded intent {intent.intent_id}")
        return self._record_conflict(
            payment,
            intent,
            f"Gateway reports superseded intent {intent.intent_id} succeeded but payment "
            f"{payment.payment_number} is linked to intent {payment.gateway_intent_id}",
        )

    def _on_intent_succeeded(self, data: dict) -> ReconcileOutcome:
        return self._on_intent(data, PaymentStatus.SUCCEEDED)

    def _on_intent_failed(self, data: dict) -> ReconcileOutcome:
        return self._on_intent(data, PaymentStatus.FAILED)

    def _on_intent_processing(self, data: dict) -> ReconcileOutcome:
        return self._on_intent(data, PaymentStatus.PROCESSING)

    def _on_intent_canceled(self, data: dict) -> ReconcileOutcome:
        return self._on_intent(data, PaymentStatus.CANCELED)

    def _on_payment_method_attached(self, data: dict) -> ReconcileOutcome:
        method = parse_payment_method(data)
        user_id = self.methods.user_for_customer(method.customer_id) if method.customer_id else None
        if user_id is None:
            logger.warning(
                "Payment method attached to unknown customer",
                extra={"payment_method_id": method.payment_method_id, "customer_id": method.customer_id},
            )
            return ReconcileOutcome("not_found", detail=f"customer {method.customer_id}")
        self.methods.upsert_from_gateway(user_id, method)
        return ReconcileOutcome("applied")

    def _on_payment_method_detached(self, data: dict) -> ReconcileOutcome:
        if self.methods.remove_by_gateway_id(data["id"]):
            return ReconcileOutcome("applied")
        return ReconcileOutcome("not_found", detail=f"payment method {data['id']}")


_DISPATCH: Dict[GatewayEventKind, str] = {
    GatewayEventKind.INTENT_SUCCEEDED: "_on_intent_succeeded",
    GatewayEventKind.INTENT_FAILED: "_on_intent_failed",
    GatewayEventKind.INTENT_PROCESSING: "_on_intent_processing",
    GatewayEventKind.INTENT_CANCELED: "_on_intent_canceled",
    GatewayEventKind.PAYMENT_METHOD_ATTACHED: "_on_payment_method_attached",
    GatewayEventKind.PAYMENT_METHOD_DETACHED: "_on_payment_method_detached",
}

_unhandled = set(GatewayEventKind) - set(_DISPATCH)
if _unhandled:
    raise RuntimeError(f"Reconciler has no handler for {sorted(kind.value for kind in _unhandled)}")
