# File: coshare_booking/main.py
"""
Entry point of the booking core worker

Runs the periodic jobs: recurrence generation and checkout reminders.

    python -m coshare_booking.main --once
    python -m coshare_booking.main --interval 600 --groups groups.json

The groups file maps group ids to members:
    {"g1": [{"user_id": "u1", "ownership_share": "0.6", "role": "admin"}, ...]}
"""

from typing import Dict, List, Optional, Sequence
import argparse
import json
import logging
import os
import sys
import threading

from .config import BookingSettings
from .domain.models import GroupMember
from .infrastructure.factories import ServiceFactory
from .infrastructure.providers import StaticGroupContextProvider


def setup_logging(level: str = "INFO", log_dir: Optional[str] = "logs"):
    """Setup application logging configuration"""
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        handlers.append(logging.FileHandler(os.path.join(log_dir, 'booking_core.log')))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers
    )
    return logging.getLogger(__name__)


def load_groups(path: str) -> StaticGroupContextProvider:
    """Read group memberships from a JSON file"""
    with open(path, encoding="utf-8") as handle:
        raw = json.load(handle)

    groups: Dict[str, List[GroupMember]] = {
        group_id: [
            GroupMember(
                user_id=member["user_id"],
                ownership_share=member["ownership_share"],
                role=member.get("role", "member")
            )
            for member in members
        ]
        for group_id, members in raw.items()
    }
    return StaticGroupContextProvider(groups)


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Co-owned vehicle booking worker")
    parser.add_argument("--once", action="store_true",
                        help="run the generation and reminder sweeps once and exit")
    parser.add_argument("--interval", type=float, default=None,
                        help="seconds between sweeps (default: BOOKING_SWEEP_INTERVAL_SECONDS)")
    parser.add_argument("--groups", default=None, help="JSON file with group memberships")
    parser.add_argument("--log-level", default="INFO")
    parser.add_argument("--log-dir", default="logs", help="directory of the log file; empty disables it")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None, stop_event: Optional[threading.Event] = None) -> int:
    """Main entry point for the worker"""
    args = parse_args(argv)
    logger = setup_logging(args.log_level, args.log_dir or None)

    try:
        settings = BookingSettings.from_env()
        group_context = load_groups(args.groups) if args.groups else StaticGroupContextProvider()
        app = ServiceFactory(settings, group_context).build()
    except (ValueError, OSError) as e:
        logger.error(f"Failed to start booking core: {e}")
        return 1

    interval = args.interval or settings.recurrence.sweep_interval_seconds
    stop_event = stop_event or threading.Event()
    logger.info(f"Booking core started (interval {interval}s, once={args.once})")

    try:
        while True:
            try:
                app.run_sweeps()
            except Exception as e:
                # A failed pass is retried on the next tick
                logger.error(f"Sweep failed: {e}", exc_info=True)
                if args.once:
                    return 1

            if args.once or stop_event.wait(interval):
                break
    except KeyboardInterrupt:
        logger.info("Stopped by user")
    finally:
        app.close()
        logger.info("Booking core shutting down...")

    return 0


if __name__ == "__main__":
    sys.exit(main())
