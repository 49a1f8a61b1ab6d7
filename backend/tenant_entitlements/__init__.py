"""
Tenant subscription and entitlement engine.

Decides, for every tenant-scoped operation, whether the tenant's current
subscription permits it, and keeps subscription state in step with the
billing provider's webhooks.
"""

__version__ = "1.0.0"
