import argparse
import sys

from zurihealth.config import settings
from zurihealth.database import PersistenceContext
from zurihealth.errors import ZuriHealthError
from zurihealth.logging_setup import get_logger, setup_logging
from zurihealth.migrations.engine import MigrationEngine

logger = get_logger("zurihealth.migrate")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Manage the record store schema")
    parser.add_argument("--database-url", default=None, help="Overrides DATABASE_URL")
    commands = parser.add_subparsers(dest="command", required=True)

    upgrade = commands.add_parser("upgrade", help="Apply pending migrations")
    upgrade.add_argument("--to", dest="target", default=None, help="Stop after this migration key")

    downgrade = commands.add_parser("downgrade", help="Revert applied migrations")
    group = downgrade.add_mutually_exclusive_group(required=True)
    group.add_argument("--to", dest="target", default=None, help="Revert everything newer than this key")
    group.add_argument("--steps", type=int, default=None, help="Revert this many migrations")
    group.add_argument("--all", action="store_true", help="Revert every migration")

    commands.add_parser("status", help="List migrations and their ledger state")
    commands.add_parser("verify", help="Check the live schema against the registry")

    clear = commands.add_parser("clear-failed", help="Clear the failure flag on a migration")
    clear.add_argument("key", help="Migration key")
    clear.add_argument("--mark-applied", action="store_true",
                       help="Record the step as applied instead of pending")
    return parser


def run(args, engine) -> None:
    migrations = MigrationEngine(engine)

    if args.command == "upgrade":
        keys = migrations.upgrade(args.target)
        print(f"Applied {len(keys)} migration(s)")
    elif args.command == "downgrade":
        keys = migrations.downgrade(target=args.target, steps=args.steps)
        print(f"Reverted {len(keys)} migration(s)")
    elif args.command == "status":
        for step in migrations.status():
            line = f"{step['key']}  {step['status']:<8}  {step['name']}"
            if step["error"]:
                line = f"{line}  ({step['error']})"
            print(line)
    elif args.command == "verify":
        migrations.verify()
        print("Schema matches the registry")
    elif args.command == "clear-failed":
        migrations.clear_failed(args.key, mark_applied=args.mark_applied)
        print(f"Cleared failure flag on {args.key}")


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(settings.LOG_LEVEL, settings.LOG_DIR or None)

    with PersistenceContext(args.database_url) as context:
        try:
            run(args, context.engine)
        except ZuriHealthError as exc:
            logger.error("%s: %s", exc.kind, exc.message)
            if exc.details:
                logger.error("Details: %s", exc.details)
            print(f"Error: {exc.message}", file=sys.stderr)
            return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
