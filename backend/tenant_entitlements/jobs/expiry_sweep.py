"""
Expiry sweep job.

Expires lapsed trials and grace periods that no authorize() call has
touched, replays buffered audit entries and drops elapsed rate windows.

The sweep is idempotent and resumable: subscriptions are transitioned one
at a time in id order, and a re-run simply finds whatever is still due.

Usage:
    python -m tenant_entitlements.jobs.expiry_sweep          # one pass
    python -m tenant_entitlements.jobs.expiry_sweep --loop   # every interval

Configuration:
- ENTITLEMENT_SWEEP_INTERVAL_SECONDS: Seconds between passes (default: 300)
- ENTITLEMENT_SWEEP_BATCH_SIZE: Subscriptions per batch (default: 100)
"""

import argparse
import logging
import signal
import threading
from datetime import datetime
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


def run_sweep(engine, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Run one sweep pass.

    Returns:
        Statistics dictionary with job results
    """
    result = engine.expire_due_subscriptions(now=now)
    flushed = engine.audit_writer.flush_buffer()
    purged = engine.rate_limiter.purge_expired()
    stats = {
        **result.to_dict(),
        "audit_entries_flushed": flushed,
        "audit_entries_pending": engine.audit_writer.pending,
        "rate_windows_purged": purged,
    }
    logger.info("Sweep pass complete", extra=stats)
    return stats


class PeriodicSweeper:
    """
    Runs run_sweep on its own timer thread.

    Safe to run alongside request handling: every transition goes through
    the same per-subscription lock and version check as authorize().
    """

    def __init__(self, engine, interval_seconds: Optional[int] = None):
        self.engine = engine
        self.interval_seconds = interval_seconds or engine.settings.sweep_interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="expiry-sweeper", daemon=True)
        self._thread.start()
        logger.info("Expiry sweeper started", extra={"interval_seconds": self.interval_seconds})

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
        logger.info("Expiry sweeper stopped")

    def run_once(self) -> Dict[str, Any]:
        return run_sweep(self.engine)

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception as e:
                # Keep the timer alive; the next pass retries whatever is still due
                logger.error("Sweep pass failed", extra={"error": str(e)}, exc_info=True)
            self._stop.wait(self.interval_seconds)


def build_engine_from_settings():
    """Wire an EntitlementEngine against the configured database."""
    from tenant_entitlements.database.session import get_session_factory
    from tenant_entitlements.entitlements.engine import EntitlementEngine
    from tenant_entitlements.repositories.subscription_store import SqlAlchemySubscriptionStore

    return EntitlementEngine(SqlAlchemySubscriptionStore(get_session_factory()))


def main(argv=None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    parser = argparse.ArgumentParser(description="Expire lapsed trials and grace periods")
    parser.add_argument("--loop", action="store_true", help="Keep running on the sweep interval")
    args = parser.parse_args(argv)

    engine = build_engine_from_settings()
    if not args.loop:
        stats = run_sweep(engine)
        return 1 if stats["errors"] else 0

    sweeper = PeriodicSweeper(engine)
    stopped = threading.Event()

    def _handle_signal(signum, frame):
        logger.info("Shutdown signal received", extra={"signal": signum})
        stopped.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    sweeper.start()
    stopped.wait()
    sweeper.stop(timeout=30)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
