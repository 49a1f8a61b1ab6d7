"""
Background jobs module.
"""

from tenant_entitlements.jobs.expiry_sweep import PeriodicSweeper, run_sweep

__all__ = ["PeriodicSweeper", "run_sweep"]
