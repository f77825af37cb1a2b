"""
Shipment Status Worker - scheduled courier status sweep.

Polls every active shipment's courier at the times in
WORKER_SCHEDULE_TIMES (default: 06:00,12:00,18:00) and reconciles any
change into shipment, order and notification state.

Flow (per scheduled run):
1. Reload the provider registry from delivery_providers (unchanged
   providers keep their adapter, breaker state and courier token)
2. Select non-terminal shipments younger than TRACKING_MAX_AGE_DAYS
3. For each: check status with its courier, reconcile the change
4. Log the sweep summary

Manual refreshes and courier webhooks go through FulfillmentAPI directly;
the worker only covers shipments nobody asked about.

Usage:
    python worker.py            # run continuously
    python worker.py --once     # one sweep, then exit
    python worker.py --init-db  # create missing tables, then exit
"""

import asyncio
import signal
import sys
import logging
from datetime import datetime, timedelta, time as dt_time
from typing import Optional, Dict, Any, List

from config import settings

# Setup logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def parse_schedule_times(schedule_str: str) -> List[dt_time]:
    """Parse comma-separated schedule times (HH:MM format)."""
    times = []
    for time_str in schedule_str.split(","):
        time_str = time_str.strip()
        if time_str:
            try:
                hour, minute = map(int, time_str.split(":"))
                times.append(dt_time(hour=hour, minute=minute))
            except ValueError:
                logger.warning(f"Invalid schedule time format: {time_str}")
    return sorted(times)


def get_next_scheduled_time(schedule_times: List[dt_time], now: Optional[datetime] = None) -> Optional[datetime]:
    """Get the next scheduled run time."""
    if not schedule_times:
        return None

    now = now or datetime.now()
    today = now.date()

    # Find next time today
    for t in schedule_times:
        scheduled = datetime.combine(today, t)
        if scheduled > now:
            return scheduled

    # All times today have passed, get first time tomorrow
    tomorrow = today + timedelta(days=1)
    return datetime.combine(tomorrow, schedule_times[0])


class ShipmentStatusWorker:
    """
    Standalone worker for the scheduled shipment status sweep.

    Each sweep is one unit of work in its own session; a failed sweep is
    logged and the loop carries on to the next scheduled time.
    """

    def __init__(self, poll_interval: int = None):
        self.poll_interval = poll_interval or settings.WORKER_POLL_INTERVAL
        self.running = True
        self.schedule_times = parse_schedule_times(settings.WORKER_SCHEDULE_TIMES)
        self._last_scheduled_run: Optional[datetime] = None

        # Import here so schedule helpers stay importable without a database
        from db.session import get_session
        from services.provider_registry import ProviderRegistry

        self.get_session = get_session
        self.registry = ProviderRegistry()

    def run_sweep(self) -> Dict[str, Any]:
        """
        Run one complete status sweep.

        Returns:
            Sweep summary dict
        """
        from services.fulfillment_api import FulfillmentAPI

        logger.info("=" * 80)
        logger.info("Starting Shipment Status Sweep")
        logger.info("=" * 80)

        try:
            with self.get_session() as db:
                self.registry.reload(db)
                api = FulfillmentAPI(db, self.registry)
                summary = api.sweep_active_shipments()

            logger.info("=" * 80)
            logger.info(
                f"Sweep Complete: {summary['total']} checked, {summary['updated']} updated, "
                f"{summary['failed']} failed"
            )
            logger.info("=" * 80)
            return summary

        except Exception as e:
            logger.error(f"Sweep failed: {e}", exc_info=True)
            return {"status": "error", "error": str(e)}

    def should_run_scheduled(self, now: Optional[datetime] = None) -> bool:
        """Check if it's time to run a scheduled sweep."""
        if not self.schedule_times:
            return False

        now = now or datetime.now()

        for scheduled_time in self.schedule_times:
            if now.hour == scheduled_time.hour and now.minute == scheduled_time.minute:
                # Avoid running multiple times in the same minute
                last = self._last_scheduled_run
                if last and last.date() == now.date() and last.hour == now.hour and last.minute == now.minute:
                    return False
                return True

        return False

    def test_connections(self) -> bool:
        """Test the database connection."""
        from db.session import test_connection as db_test

        logger.info("Testing database connection...")
        if db_test():
            logger.info("Database connection successful")
            return True
        logger.error("Database connection test failed")
        return False

    async def run(self):
        """Main worker loop: sleep, sweep at scheduled times."""
        logger.info("=" * 80)
        logger.info("Shipment Status Worker Starting")
        logger.info("=" * 80)
        logger.info(f"Database: {settings.DATABASE_URL.split('@')[-1]}")
        logger.info(f"Poll Interval: {self.poll_interval}s")
        logger.info(f"Schedule Times: {', '.join(t.strftime('%H:%M') for t in self.schedule_times)}")

        next_scheduled = get_next_scheduled_time(self.schedule_times)
        if next_scheduled:
            logger.info(f"Next Scheduled Run: {next_scheduled.strftime('%Y-%m-%d %H:%M')}")

        logger.info("=" * 80)

        # Test connection on startup
        if not self.test_connections():
            logger.error("Exiting due to connection failure")
            return

        logger.info(f"Worker running. Checking schedule every {self.poll_interval}s...")

        while self.running:
            try:
                if self.should_run_scheduled():
                    logger.info("Scheduled sweep triggered")
                    self._last_scheduled_run = datetime.now()
                    await asyncio.to_thread(self.run_sweep)

                    next_scheduled = get_next_scheduled_time(self.schedule_times)
                    if next_scheduled:
                        logger.info(f"Next Scheduled Run: {next_scheduled.strftime('%Y-%m-%d %H:%M')}")

                await asyncio.sleep(self.poll_interval)

            except Exception as e:
                logger.error(f"Worker error: {e}", exc_info=True)
                await asyncio.sleep(self.poll_interval)

        logger.info("Worker stopped")

    def stop(self):
        """Signal worker to stop."""
        self.running = False


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point."""
    argv = sys.argv[1:] if argv is None else argv
    if "--init-db" in argv:
        from db.session import init_db
        init_db()
        return 0

    worker = ShipmentStatusWorker()

    if "--once" in argv:
        summary = worker.run_sweep()
        return 1 if summary.get("status") == "error" else 0

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        worker.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        asyncio.run(worker.run())
    except KeyboardInterrupt:
        logger.info("Worker stopped by user")
    except Exception as e:
        logger.error(f"Worker failed: {e}", exc_info=True)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
