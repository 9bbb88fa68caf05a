"""
Helper script to apply the database schema from schema.sql.

Schema application requires direct Postgres access. If your machine cannot
reach the database, paste schema.sql into your provider's SQL editor instead.
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

import psycopg2

from .config import get_db_config
from .telemetry import configure_logging

logger = logging.getLogger(__name__)

DEFAULT_SCHEMA_PATH = Path(__file__).with_name("schema.sql")


def apply_schema(schema_path: Optional[Path] = None) -> None:
    """Read and execute the SQL schema file."""
    path = Path(schema_path or DEFAULT_SCHEMA_PATH)
    if not path.exists():
        raise FileNotFoundError(f"Schema file not found at {path}")

    sql_content = path.read_text(encoding="utf-8")

    cfg = get_db_config()
    logger.info("Applying schema from %s...", path)

    conn = psycopg2.connect(cfg.url)
    try:
        with conn.cursor() as cur:
            cur.execute(sql_content)
        conn.commit()
        logger.info("Schema applied successfully.")
    finally:
        conn.close()


def main() -> None:
    configure_logging()
    parser = argparse.ArgumentParser(description="Apply the asset pipeline schema")
    parser.add_argument("--schema", type=Path, default=None, help="Path to an alternative schema file")
    args = parser.parse_args()

    try:
        apply_schema(args.schema)
    except psycopg2.OperationalError as exc:
        logger.error("Failed to connect to database: %s", exc)
        logger.info("Schema SQL is ready at: %s", (args.schema or DEFAULT_SCHEMA_PATH).absolute())
        sys.exit(1)


if __name__ == "__main__":
    main()
