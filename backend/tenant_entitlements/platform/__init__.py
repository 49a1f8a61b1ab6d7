"""
Platform-level modules for multi-tenant enforcement.

- audit: Append-only audit trail with retry, buffering and PII redaction
- tenant_guard: Tenant scope construction and cross-tenant checks
- keyed_lock: Per-key in-process locks
"""
