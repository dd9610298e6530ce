#!/usr/bin/env python3
"""Apply db/schema.sql to the configured Postgres database in one transaction."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
from pathlib import Path

import asyncpg  # type: ignore[import-untyped]

SCHEMA_PATH = Path(__file__).resolve().parents[1] / "db" / "schema.sql"

logger = logging.getLogger("migrate")


def resolve_database_url(explicit: str | None) -> str:
    url = explicit or os.getenv("NOTIFIER_DATABASE_URL") or os.getenv("DATABASE_URL")
    if not url:
        raise SystemExit("database url required: pass --database-url or set NOTIFIER_DATABASE_URL")
    return url


async def apply_schema(database_url: str, schema_path: Path = SCHEMA_PATH) -> None:
    sql = schema_path.read_text(encoding="utf-8")
    conn = await asyncpg.connect(dsn=database_url)
    try:
        async with conn.transaction():
            await conn.execute(sql)
    finally:
        await conn.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Apply the notifier schema.")
    parser.add_argument("--database-url", help="Postgres DSN (defaults to NOTIFIER_DATABASE_URL)")
    parser.add_argument("--schema", type=Path, default=SCHEMA_PATH, help="Schema file to apply")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    asyncio.run(apply_schema(resolve_database_url(args.database_url), args.schema))
    logger.info("migration complete schema=%s", args.schema)


if __name__ == "__main__":
    main()
