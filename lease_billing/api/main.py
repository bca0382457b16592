"""FastAPI application factory"""

from fastapi import FastAPI
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

from lease_billing.api.middleware import RequestIDMiddleware, MetricsMiddleware
from lease_billing.api.v1 import billing, payment_methods, payments, schedules, webhooks
from lease_billing.infrastructure.observability.logging import setup_logging
from lease_billing.config import settings

# Setup structured logging
setup_logging(settings.log_level)


def create_app() -> FastAPI:
    """Create and configure FastAPI application"""
    app = FastAPI(
        title="Lease Billing",
        description="Recurring lease billing and payment reconciliation service",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIDMiddleware)

    # Health check endpoint
    @app.get("/health")
    def health_check():
        return {"status": "ok", "service": settings.service_name}

    # Prometheus metrics endpoint
    @app.get("/metrics")
    def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # Register API routers
    app.include_router(schedules.router, prefix="/v1", tags=["schedules"])
    app.include_router(payments.router, prefix="/v1", tags=["payments"])
    app.include_router(payment_methods.router, prefix="/v1", tags=["payment_methods"])
    app.include_router(webhooks.router, prefix="/v1", tags=["webhooks"])
    app.include_router(billing.router, prefix="/v1", tags=["billing"])

    return app


app = create_app()
