"""Stored payment methods: attach at the gateway, mirror locally, pick the default"""

import logging
from typing import List

from sqlalchemy.orm import Session

from lease_billing.domain.exceptions import PaymentMethodError
from lease_billing.infrastructure.clients.gateway import GatewayClient
from lease_billing.infrastructure.database.models import PaymentMethod
from lease_billing.infrastructure.database.repositories import PaymentMethodRepository

logger = logging.getLogger(__name__)


class PaymentMethodService:
    def __init__(self, db: Session, gateway: GatewayClient):
        self.db = db
        self.gateway = gateway
        self.methods = PaymentMethodRepository(db)

    def list_for_user(self, user_id: str) -> List[PaymentMethod]:
        """Default method first, then newest"""
        return sorted(self.methods.list_for_user(user_id), key=lambda m: not m.is_default)

    async def ensure_customer(self, user_id: str) -> str:
        """
        Gateway customer of the payer, created on first use.

        The link is committed before any method is attached; the idempotency
        key makes a repeated creation return the same customer.
        """
        customer_id = self.methods.customer_for_user(user_id)
        if customer_id is not None:
            return customer_id

        customer_id = await self.gateway.create_customer(user_id, idempotency_key=f"customer-{user_id}")
        self.methods.link_customer(user_id, customer_id)
        self.db.commit()
        logger.info("Gateway customer linked", extra={"user_id": user_id, "customer_id": customer_id})
        return customer_id

    async def attach(self, user_id: str, gateway_payment_method_id: str, make_default: bool = False) -> PaymentMethod:
        """
        Attach a tokenized method to the payer's gateway customer and mirror it.

        Raises:
            PaymentMethodError: the method already belongs to another payer
            GatewayError: the gateway rejected or could not process the attach
        """
        existing = self.methods.get_by_gateway_id(gateway_payment_method_id)
        if existing is not None and existing.user_id != user_id:
            raise PaymentMethodError(f"Payment method {gateway_payment_method_id} belongs to another payer")

        customer_id = await self.ensure_customer(user_id)
        data = await self.gateway.attach_payment_method(gateway_payment_method_id, customer_id)
        method = self.methods.upsert_from_gateway(user_id, data)
        if make_default:
            self.methods.set_default(method)

        logger.info(
            "Payment method attached",
            extra={"user_id": user_id, "payment_method_id": str(method.id), "is_default": method.is_default},
        )
        return method

    def make_default(self, method: PaymentMethod) -> PaymentMethod:
        return self.methods.set_default(method)

    async def detach(self, method: PaymentMethod) -> None:
        """
        Detach at the gateway, then drop the mirror row.

        Raises:
            PaymentMethodError: the default cannot go while other methods remain
            GatewayError: the gateway rejected or could not process the detach
        """
        if method.is_default and len(self.methods.list_for_user(method.user_id)) > 1:
            raise PaymentMethodError("Cannot delete the default payment method; set another default first")

        await self.gateway.detach_payment_method(method.gateway_payment_method_id)
        self.methods.remove_by_gateway_id(method.gateway_payment_method_id)
        logger.info("Payment method detached", extra={"user_id": method.user_id, "payment_method_id": str(method.id)})
