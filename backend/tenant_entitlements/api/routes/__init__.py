# API routes
from tenant_entitlements.api.routes import billing_webhooks
from tenant_entitlements.api.routes import entitlements

__all__ = ["billing_webhooks", "entitlements"]
