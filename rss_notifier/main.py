"""Main entry point for the RSS notifier."""

import argparse
import logging
import os
import signal
import sys

from .config import AppConfig, load_config
from .errors import InvalidFeedUrl, PersistenceError
from .models import SmtpProfile
from .registry import FeedRegistry, SettingsStore, init_db
from .scheduler import PollScheduler

# Configure logging
log_level = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, log_level, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)]
)
logger = logging.getLogger(__name__)


def build_scheduler(config: AppConfig) -> PollScheduler:
    """Create the database if needed and wire the scheduler."""
    logger.info(f"Initializing database at {config.db_path}...")
    init_db(config.db_path)
    registry = FeedRegistry(config.db_path)
    settings = SettingsStore(config.db_path, fallback=config.smtp)
    return PollScheduler(registry, settings, config)


def cmd_run(config: AppConfig, args) -> int:
    scheduler = build_scheduler(config)

    def _shutdown(signum, frame):
        logger.info(f"Received signal {signum}, stopping...")
        scheduler.request_stop()

    signal.signal(signal.SIGTERM, _shutdown)
    try:
        scheduler.run_forever()
    except KeyboardInterrupt:
        logger.info("Interrupted, stopping...")
    finally:
        scheduler.stop(wait=True)
    return 0


def cmd_once(config: AppConfig, args) -> int:
    scheduler = build_scheduler(config)
    try:
        outcomes = scheduler.tick(wait=True)
    finally:
        scheduler.stop(wait=True)
    failed = [o for o in outcomes if o.status == "failed"]
    logger.info(f"Tick completed: {len(outcomes)} feed(s), {len(failed)} failed")
    return 1 if failed else 0


def cmd_poll(config: AppConfig, args) -> int:
    scheduler = build_scheduler(config)
    try:
        outcome = scheduler.poll_now(args.feed_id)
    finally:
        scheduler.stop(wait=True)
    if outcome is None:
        logger.error(f"Feed {args.feed_id} not found")
        return 1
    return 0 if outcome.succeeded else 1


def cmd_add(config: AppConfig, args) -> int:
    init_db(config.db_path)
    feed = FeedRegistry(config.db_path).add_feed(args.name, args.url)
    print(f"{feed.id}\t{feed.name}\t{feed.url}")
    return 0


def cmd_update(config: AppConfig, args) -> int:
    init_db(config.db_path)
    if not FeedRegistry(config.db_path).update_feed(args.feed_id, args.name, args.url):
        logger.error(f"Feed {args.feed_id} not found")
        return 1
    return 0


def cmd_list(config: AppConfig, args) -> int:
    init_db(config.db_path)
    for feed in FeedRegistry(config.db_path).list_feeds():
        marker = feed.marker.serialize() if feed.marker else "-"
        print(f"{feed.id}\t{feed.name}\t{feed.url}\t{marker}")
    return 0


def cmd_remove(config: AppConfig, args) -> int:
    init_db(config.db_path)
    if not FeedRegistry(config.db_path).remove_feed(args.feed_id):
        logger.error(f"Feed {args.feed_id} not found")
        return 1
    return 0


def cmd_reset(config: AppConfig, args) -> int:
    init_db(config.db_path)
    count = FeedRegistry(config.db_path).reset_markers(args.feed_id)
    logger.info(f"Cleared marker of {count} feed(s); the next poll sets a new baseline")
    return 0


def cmd_set_smtp(config: AppConfig, args) -> int:
    init_db(config.db_path)
    profile = SmtpProfile(
        host=args.host,
        port=args.port,
        username=args.user or "",
        password=args.password or os.getenv("SMTP_AUTH_PASSWORD", ""),
        from_email=args.from_email,
        from_name=args.from_name or "",
        to_email=args.to_email,
    )
    SettingsStore(config.db_path).save_smtp_profile(profile)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rss-notifier",
        description="Poll RSS/Atom feeds and send an email for every new entry"
    )
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("run", help="Poll all feeds every POLLING_TIME_SEC seconds (default)")
    sub.add_parser("once", help="Run a single polling cycle and exit")

    poll = sub.add_parser("poll", help="Poll one feed immediately")
    poll.add_argument("feed_id", type=int)

    add = sub.add_parser("add", help="Register a feed")
    add.add_argument("name")
    add.add_argument("url")

    update = sub.add_parser("update", help="Change the name and URL of a feed")
    update.add_argument("feed_id", type=int)
    update.add_argument("name")
    update.add_argument("url")

    sub.add_parser("list", help="List registered feeds and their markers")

    remove = sub.add_parser("remove", help="Remove a feed")
    remove.add_argument("feed_id", type=int)

    reset = sub.add_parser(
        "reset",
        help="Clear markers (all feeds, or one) so the next poll sets a new baseline"
    )
    reset.add_argument("feed_id", type=int, nargs="?", default=None)

    smtp = sub.add_parser("set-smtp", help="Store the SMTP profile used for notifications")
    smtp.add_argument("--host", required=True)
    smtp.add_argument("--port", type=int, default=587)
    smtp.add_argument("--user", default=None)
    smtp.add_argument(
        "--password",
        default=None,
        help="SMTP password (defaults to the SMTP_AUTH_PASSWORD env var)"
    )
    smtp.add_argument("--from-email", dest="from_email", required=True)
    smtp.add_argument("--from-name", dest="from_name", default=None)
    smtp.add_argument("--to-email", dest="to_email", required=True)
    return parser


COMMANDS = {
    "run": cmd_run,
    "once": cmd_once,
    "poll": cmd_poll,
    "add": cmd_add,
    "update": cmd_update,
    "list": cmd_list,
    "remove": cmd_remove,
    "reset": cmd_reset,
    "set-smtp": cmd_set_smtp,
}


def main(argv=None) -> int:
    """Main entry point with command-line argument parsing."""
    args = build_parser().parse_args(argv)
    command = COMMANDS[args.command or "run"]
    try:
        config = load_config()
        return command(config, args)
    except (ValueError, InvalidFeedUrl, PersistenceError) as e:
        logger.error(f"{e}")
        return 1
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
