"""
Entitlement enforcement.

- catalog: Closed, versioned tier catalog (limits, features, rate limits)
- decision: Decision value returned by authorize()
- rate_limiter: Fixed-window per-tenant, per-endpoint-class counters
- engine: EntitlementEngine, the single entry point
- errors: Exceptional conditions (denials are Decisions, not exceptions)
"""
