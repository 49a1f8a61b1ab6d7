"""HTTP surface for the entitlement engine."""
