"""
FastAPI application factory.

The host application owns authentication. It passes an identity_resolver
that returns the verified {tenant_id, user_id, user_email} for a request
(or None); the result is attached to request.state.identity, which is the
only source of tenant scope for the entitlement dependencies.
"""

import logging
from typing import Any, Callable, Mapping, Optional

from fastapi import FastAPI, Request

from tenant_entitlements.api.routes import billing_webhooks, entitlements
from tenant_entitlements.entitlements.engine import EntitlementEngine

logger = logging.getLogger(__name__)

IdentityResolver = Callable[[Request], Optional[Mapping[str, Any]]]


def create_app(
    engine: EntitlementEngine,
    identity_resolver: Optional[IdentityResolver] = None,
) -> FastAPI:
    app = FastAPI(title="Tenant Entitlements", docs_url=None, redoc_url=None)
    app.state.entitlement_engine = engine

    if identity_resolver is not None:
        @app.middleware("http")
        async def attach_identity(request: Request, call_next):
            request.state.identity = identity_resolver(request)
            return await call_next(request)

    app.include_router(billing_webhooks.router)
    app.include_router(entitlements.router)

    logger.info("Entitlement API configured", extra={"catalog_version": engine.catalog.version})
    return app
