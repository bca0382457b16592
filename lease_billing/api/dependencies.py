"""Dependency injection for FastAPI endpoints"""

from typing import Callable

from fastapi import Request
from sqlalchemy.orm import Session

from lease_billing.infrastructure.clients.gateway import GatewayClient
from lease_billing.infrastructure.clients.notifications import NotificationClient
from lease_billing.infrastructure.database.session import SessionLocal
from lease_billing.services.dispatcher import BillingEventDispatcher


def get_request_id(request: Request) -> str:
    """Extract request ID from request state"""
    return getattr(request.state, "request_id", "unknown")


def get_gateway_client() -> GatewayClient:
    """Provide payment gateway client instance"""
    return GatewayClient()


def get_dispatcher() -> BillingEventDispatcher:
    """Provide billing event dispatcher backed by the notification webhook"""
    return BillingEventDispatcher(NotificationClient())


def get_session_factory() -> Callable[[], Session]:
    """Session factory for work that opens its own transactions (billing clock)"""
    return SessionLocal
