"""
API Dependencies module.

Provides shared FastAPI dependencies for route handlers.
"""

from tenant_entitlements.api.dependencies.entitlements import (
    decision_to_http_exception,
    entitlements_summary,
    get_engine,
    get_tenant_scope,
    require_capability,
)

__all__ = [
    "decision_to_http_exception",
    "entitlements_summary",
    "get_engine",
    "get_tenant_scope",
    "require_capability",
]
