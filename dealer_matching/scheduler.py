"""
Scheduler module for Dealer Matching.

Uses APScheduler for the one maintenance job the engine needs:
- Daily at 2am UTC: rebuild learned profiles of dealers active in the last
  day, so any interaction whose live learning update failed is reflected.

Quota counters need no job: each day's counter simply stops being read.
"""

import logging
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

from .pipeline import MatchingService

logger = logging.getLogger(__name__)


def run_rebuild_job(service: MatchingService = None) -> int:
    """Wrapper for the rebuild to handle logging."""
    logger.info("Starting learned preference rebuild...")
    try:
        service = service or MatchingService()
        rebuilt = service.rebuild_recent(days=1)
        logger.info(f"Rebuild job refreshed {rebuilt} profiles")
        return rebuilt
    except Exception as e:
        logger.error(f"Rebuild job failed: {e}")
        return 0


def create_scheduler() -> BlockingScheduler:
    """
    Create and configure the APScheduler.

    Returns:
        Configured BlockingScheduler
    """
    scheduler = BlockingScheduler(timezone="UTC")

    scheduler.add_job(
        run_rebuild_job,
        trigger=CronTrigger(hour=2, minute=0, timezone="UTC"),
        id="rebuild_learned_preferences",
        name="Rebuild learned preferences from the interaction log",
        replace_existing=True,
        max_instances=1,
    )

    logger.info("Scheduler configured with 1 job")
    return scheduler


def start_scheduler() -> None:
    """Start the scheduler (blocking)."""
    scheduler = create_scheduler()

    logger.info("Starting Dealer Matching scheduler...")
    logger.info("Press Ctrl+C to stop")

    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler stopped")


# =============================================================================
# CLI ENTRY POINT
# =============================================================================

def main():
    """CLI entry point for the scheduler."""
    import argparse

    parser = argparse.ArgumentParser(description="Dealer Matching Scheduler")
    parser.add_argument(
        "--mode",
        choices=["schedule", "once"],
        default="schedule",
        help="Mode to run: schedule (continuous), once (single rebuild)"
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging level"
    )

    args = parser.parse_args()

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    if args.mode == "schedule":
        start_scheduler()
    else:
        run_rebuild_job()


if __name__ == "__main__":
    main()
