"""
Command line entry point.
  python -m studio_lifecycle.main init-schema   create tables and indexes (idempotent)
  python -m studio_lifecycle.main transitions   print the status registry
"""
import argparse
import asyncio
import logging
import sys

import asyncpg

from studio_lifecycle.config import settings
from studio_lifecycle.statuses import STATUS_ENUMS, VALID_TRANSITIONS, initial_status, terminal_statuses
from studio_lifecycle.store.postgres import init_schema

logger = logging.getLogger(__name__)


async def _init_schema(database_url: str) -> None:
    pool = await asyncpg.create_pool(database_url, min_size=1, max_size=1, command_timeout=settings.db_command_timeout)
    try:
        await init_schema(pool)
    finally:
        await pool.close()
    logger.info("Schema ready.")


def format_registry() -> str:
    lines = []
    for entity_type, table in VALID_TRANSITIONS.items():
        terminal = terminal_statuses(entity_type)
        lines.append(f"{entity_type.value} (initial {initial_status(entity_type).value})")
        for status in STATUS_ENUMS[entity_type]:
            targets = ", ".join(sorted(t.value for t in table.get(status, ()))) or "-"
            marker = " [terminal]" if status in terminal else ""
            lines.append(f"  {status.value} -> {targets}{marker}")
    return "\n".join(lines)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="studio-lifecycle")
    sub = parser.add_subparsers(dest="command", required=True)
    init = sub.add_parser("init-schema", help="create tables and indexes")
    init.add_argument("--database-url", default=settings.database_url)
    sub.add_parser("transitions", help="print legal status transitions")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        stream=sys.stdout,
    )

    if args.command == "init-schema":
        asyncio.run(_init_schema(args.database_url))
    elif args.command == "transitions":
        print(format_registry())
    return 0


if __name__ == "__main__":
    sys.exit(main())
