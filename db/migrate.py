#!/usr/bin/env python3
"""
Alert engine schema migration runner.

Usage:
    python3 db/migrate.py [--dry-run]

Reads DATABASE_URL from environment. Applies db/migrations/*.sql in numeric
filename order, one transaction per file, recording each version in
alert_schema_migrations. Already-applied versions are skipped.
Exits non-zero on any error.
"""

import logging
import os
import re
import sys
from pathlib import Path

import psycopg2

logging.basicConfig(
    level=logging.INFO,
    format='{"ts":"%(asctime)s","level":"%(levelname)s","msg":"%(message)s"}',
    datefmt="%Y-%m-%dT%H:%M:%SZ",
)
logger = logging.getLogger("migrator")

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

# Separate from the schema_migrations table other services in this database use.
CREATE_TRACKING_TABLE = """
CREATE TABLE IF NOT EXISTS alert_schema_migrations (
    version     TEXT        NOT NULL PRIMARY KEY,
    filename    TEXT        NOT NULL,
    applied_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""


def get_connection():
    db_url = os.environ.get("DATABASE_URL")
    if not db_url:
        logger.error("DATABASE_URL environment variable is not set")
        sys.exit(1)
    logger.info("Connecting to database")
    return psycopg2.connect(db_url)


def get_migration_files(directory: Path = MIGRATIONS_DIR) -> list[tuple[str, Path]]:
    files: list[tuple[str, Path]] = []
    for file_path in directory.glob("*.sql"):
        match = re.match(r"^(\d+)", file_path.name)
        if match:
            files.append((match.group(1), file_path))
    return sorted(files, key=lambda item: int(item[0]))


def pending_migrations(conn, migration_files: list[tuple[str, Path]]) -> list[tuple[str, Path]]:
    with conn.cursor() as cur:
        cur.execute("SELECT version FROM alert_schema_migrations")
        applied = {row[0] for row in cur.fetchall()}
    return [(version, path) for version, path in migration_files if version not in applied]


def run_migrations(conn, dry_run: bool = False) -> int:
    conn.autocommit = False
    with conn.cursor() as cur:
        cur.execute(CREATE_TRACKING_TABLE)
        conn.commit()

    migration_files = get_migration_files()
    if not migration_files:
        logger.warning(f"No migration files found in {MIGRATIONS_DIR}")
        return 0

    pending = pending_migrations(conn, migration_files)
    if dry_run:
        for _, file_path in pending:
            logger.info(f"Pending {file_path.name}")
        return 0

    applied_count = 0
    for version, file_path in pending:
        logger.info(f"Applying {file_path.name}")
        sql = file_path.read_text(encoding="utf-8")
        try:
            with conn.cursor() as cur:
                cur.execute(sql)
                cur.execute(
                    "INSERT INTO alert_schema_migrations (version, filename) VALUES (%s, %s)",
                    (version, file_path.name),
                )
            conn.commit()
            logger.info(f"Applied {file_path.name} successfully")
            applied_count += 1
        except psycopg2.Error as exc:
            conn.rollback()
            logger.error(f"Migration {file_path.name} FAILED: {exc}")
            sys.exit(1)

    return applied_count


def main():
    dry_run = "--dry-run" in sys.argv[1:]
    logger.info("Starting migration runner")
    conn = get_connection()
    try:
        applied = run_migrations(conn, dry_run=dry_run)
        logger.info(f"Migration complete. {applied} migration(s) applied.")
    finally:
        conn.close()
    sys.exit(0)


if __name__ == "__main__":
    main()
