"""
Cache maintenance: prune negative query records and expired match records.

The sync engine never deletes from the cache collections; this tool does,
on demand.

Usage:
    # How many expired matches would go (either window passed):
    python -m tools.cache_maintenance matches --dry-run

    # Delete matches whose fixture window passed, 1000 at most:
    python -m tools.cache_maintenance matches --ttl-field fixture --limit 1000 --yes

    # Wipe the negative query records:
    python -m tools.cache_maintenance empty-queries --yes

    # Collection counts:
    python -m tools.cache_maintenance stats
"""

import argparse
import asyncio
import logging
import os
import sys

# Add backend to Python path so we can import metegol modules
sys.path.insert(0, "backend")

# Default to local MongoDB when not set
if "MONGO_URI" not in os.environ:
    os.environ["MONGO_URI"] = "mongodb://localhost:27017"

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-7s  %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger("cache_maintenance")


def _confirm(message: str, assume_yes: bool) -> bool:
    if assume_yes:
        return True
    answer = input(f"{message} (y/N): ").strip().lower()
    return answer in ("y", "yes")


async def run(args: argparse.Namespace) -> int:
    import metegol.database as _db
    from metegol.services import cache_maintenance

    await _db.connect_db()
    log.info("Connected to MongoDB: %s", _db.db.name)
    try:
        if args.command == "stats":
            stats = await cache_maintenance.collection_stats()
            for name, entry in stats["collections"].items():
                log.info("  %-14s %d%s", name, entry["total_entries"],
                         f"  ({entry['error']})" if "error" in entry else "")
            return 0

        if args.command == "matches":
            description = "all match records" if args.all else f"expired match records ({args.ttl_field})"
        else:
            description = "negative query records" if args.only_negative else "all query records"

        if not args.dry_run and not _confirm(f"This deletes {description}. Continue?", args.yes):
            log.info("Aborted.")
            return 1

        if args.command == "matches":
            result = await cache_maintenance.clear_expired_matches(
                ttl_field=args.ttl_field,
                delete_all=args.all,
                dry_run=args.dry_run,
                limit=args.limit,
                batch_size=args.batch_size,
            )
        else:
            result = await cache_maintenance.clean_empty_queries(
                dry_run=args.dry_run,
                limit=args.limit,
                batch_size=args.batch_size,
                only_negative=args.only_negative,
            )

        if result.dry_run:
            log.info("DRY RUN: %d %s would be deleted", result.matched, description)
        else:
            log.info("Deleted %d %s", result.deleted, description)
        return 0
    finally:
        await _db.close_db()


def main():
    parser = argparse.ArgumentParser(description="Prune metegol cache collections")
    sub = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (
        ("matches", "Delete match records whose freshness window passed"),
        ("empty-queries", "Delete negative query records"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("--dry-run", action="store_true", help="Count without deleting")
        cmd.add_argument("--yes", action="store_true", help="Do not ask for confirmation")
        cmd.add_argument("--batch-size", type=int, default=500, help="Documents per delete batch")
        cmd.add_argument("--limit", type=int, default=None, help="Stop after deleting this many")
        if name == "matches":
            cmd.add_argument(
                "--ttl-field", choices=["fixture", "details", "both"], default="both",
                help="Which expiry decides 'expired' (default: both)",
            )
            cmd.add_argument("--all", action="store_true", help="Delete every match record")
        else:
            cmd.add_argument(
                "--only-negative", action="store_true",
                help="Keep records that saw matches",
            )

    sub.add_parser("stats", help="Print per-collection document counts")

    args = parser.parse_args()
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
