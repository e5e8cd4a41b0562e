"""Upgrade the document store schema with Alembic (forward only; no downgrade).

Usage:
  python scripts/migrate_upgrade_head.py              # to head
  python scripts/migrate_upgrade_head.py --sql        # print SQL, touch nothing

DATABASE_URL comes from the environment or `.env` (see app.core.config).
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from alembic import command
from alembic.config import Config


ROOT = Path(__file__).resolve().parents[1]
BACKEND_DIR = ROOT / "backend"
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from app.core.config import settings_from_env  # noqa: E402
from app.core.errors import ConfigurationError  # noqa: E402


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Upgrade raw/canonical/run-outcome tables to the latest revision.")
    p.add_argument("--revision", default="head")
    p.add_argument("--sql", action="store_true", help="Offline mode: print the DDL instead of running it.")
    args = p.parse_args(argv)

    try:
        url = settings_from_env().require_database_url()
    except ConfigurationError as ex:
        print(f"{ex} (set env var or create .env).")
        return 2

    cfg = Config(str(BACKEND_DIR / "alembic.ini"))
    cfg.set_main_option("script_location", str(BACKEND_DIR / "alembic"))
    cfg.set_main_option("sqlalchemy.url", url)

    print(f"Upgrading schema to {args.revision}…")
    command.upgrade(cfg, args.revision, sql=args.sql)
    print("PASS: raw_records, canonical_records, resource_states, run_outcomes upgraded.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
