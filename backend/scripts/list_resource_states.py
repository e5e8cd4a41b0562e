"""Print persisted resource versions, reference list sizes and the most recent run outcomes.

Usage:
  python backend/scripts/list_resource_states.py [--runs 10]
"""

import argparse
import sys
from pathlib import Path

# Add backend to path
BASE_DIR = Path(__file__).resolve().parents[1]
if str(BASE_DIR) not in sys.path:
    sys.path.insert(0, str(BASE_DIR))

from app.core.config import settings_from_env  # noqa: E402
from app.core.store import Collection, DocumentStore  # noqa: E402


def inspect(runs: int) -> None:
    settings = settings_from_env()
    settings.require_database_url()
    with DocumentStore.from_settings(settings) as store:
        for s in store.find(Collection.RESOURCE_STATES):
            staged = store.count(Collection.RAW, {"resource_id": s["id"]})
            canonical = store.count(Collection.CANONICAL, {"resource_id": s["id"]})
            print(
                f"[{s['id']}] version: {s['last_known_version']}, modified: {s['last_modified']}, "
                f"checked: {s['last_checked_at']}, ingested: {s['last_ingested_at']}, "
                f"staged: {staged}, canonical: {canonical}"
            )

        for kind in ("threat", "invasive", "conservation_unit"):
            print(f"reference {kind}: {store.count(Collection.REFERENCE, {'kind': kind})} rows")

        outcomes = sorted(store.find(Collection.RUN_OUTCOMES), key=lambda o: o["started_at"], reverse=True)
        for o in outcomes[:runs]:
            counts = ", ".join(f"{k}={v}" for k, v in sorted(o["counts"].items()) if v)
            print(
                f"{o['started_at']} {o['process_type']:<18} {o['resource_id'] or '-':<40} "
                f"{o['status']:<8} {o['duration_seconds']:.1f}s {counts}"
            )


if __name__ == "__main__":
    p = argparse.ArgumentParser()
    p.add_argument("--runs", type=int, default=10)
    inspect(p.parse_args().runs)
