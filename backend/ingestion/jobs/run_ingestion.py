from __future__ import annotations

"""Ingestion entry point: version check -> stream archive -> raw staging -> reconcile.

STRICT:
- Writes only raw_records, resource_states and run_outcomes.
- Never touches canonical_records (that is the transform job).
- Failure isolated per resource; a failed resource makes the exit code 1.

Run:
  python ingestion/jobs/run_ingestion.py --resource lista_especies_flora_brasil
  python ingestion/jobs/run_ingestion.py --all --dry-run
  python ingestion/jobs/run_ingestion.py --resource X --check-only
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

# Ensure `backend/` is on sys.path so `import app...` works when run from repo root.
BASE_DIR = Path(__file__).resolve().parents[2]
if str(BASE_DIR) not in sys.path:
    sys.path.insert(0, str(BASE_DIR))

from app.core.config import settings_from_env  # noqa: E402
from app.core.errors import ConfigurationError, PipelineError  # noqa: E402
from app.core.store import DocumentStore  # noqa: E402
from app.jobs.pipeline import PipelineService  # noqa: E402
from ingestion.core.raw_ingest import IngestOptions, IngestResult, IngestStatus  # noqa: E402
from ingestion.core.resource_registry import load_resources_yaml  # noqa: E402


UTC = timezone.utc
logger = logging.getLogger("biodiv.ingestion")
logger.setLevel(logging.INFO)

# Ensure logs are visible when run from cron / console.
if not logging.getLogger().handlers:
    logging.basicConfig(level=logging.INFO, format="%(message)s")


def _log(event: dict) -> None:
    # Structured logs only; never log raw record content.
    logger.info(json.dumps(event, ensure_ascii=False, default=str))


def _summary(result: IngestResult) -> dict:
    return {
        "event": "ingestion_resource_summary",
        "resource_id": result.resource_id,
        "status": result.status.value,
        "ipt_version": result.ipt_version,
        "document_count": result.document_count,
        "duration_seconds": round(result.duration, 3),
        "run_id": result.run_id,
        "error": result.error,
        **result.processing_stats.to_dict(),
        "error_refs": [e.record_ref for e in result.errors[:20]],
    }


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    p = argparse.ArgumentParser(add_help=True, description="Ingest provider snapshots into raw staging.")
    target = p.add_mutually_exclusive_group(required=True)
    target.add_argument("--resource", action="append", help="Resource id from the registry (repeatable).")
    target.add_argument("--all", action="store_true", help="All enabled resources in the registry.")
    p.add_argument("--force", action="store_true", help="Ingest even when the provider version is unchanged.")
    p.add_argument("--dry-run", action="store_true", help="Count everything, write nothing.")
    p.add_argument("--kingdom", action="append", help="Only read this kingdom (repeatable).")
    p.add_argument("--check-only", action="store_true", help="Only run the version check.")
    return p.parse_args(argv)


async def _run(args: argparse.Namespace) -> int:
    settings = settings_from_env()
    settings.require_database_url()
    registry = load_resources_yaml(settings.sources_path)
    resource_ids = args.resource or [r.resource_id for r in registry.enabled_resources()]
    if args.all and args.kingdom:
        # --all with --kingdom only covers resources that publish one of those kingdoms.
        wanted = {k.strip().lower() for k in args.kingdom}
        resource_ids = [
            rid for rid in resource_ids if wanted & {k.lower() for k in registry.get(rid).kingdoms}
        ]
    started_at = datetime.now(tz=UTC).isoformat()

    totals = {"resources": 0, "succeeded": 0, "skipped": 0, "failed": 0}
    with DocumentStore.from_settings(settings) as store:
        service = PipelineService(settings, store, registry)
        for resource_id in resource_ids:
            totals["resources"] += 1
            try:
                if args.check_only:
                    check = await service.check_version(resource_id)
                    _log(
                        {
                            "event": "version_check",
                            "resource_id": resource_id,
                            "current_version": check.current_version,
                            "previous_version": check.previous_version,
                            "needs_update": check.needs_update,
                            "update_priority": check.update_priority,
                            "last_modified": check.last_modified,
                        }
                    )
                    totals["succeeded"] += 1
                    continue

                options = IngestOptions(force=args.force, dry_run=args.dry_run, kingdom_filter=args.kingdom)
                result = await service.ingest(resource_id, options)
            except PipelineError as ex:
                totals["failed"] += 1
                _log(
                    {
                        "event": "ingestion_resource_error",
                        "resource_id": resource_id,
                        "error_type": type(ex).__name__,
                        "error": str(ex)[:300],
                    }
                )
                continue

            _log(_summary(result))
            if result.status is IngestStatus.FAILURE:
                totals["failed"] += 1
            elif result.status is IngestStatus.SKIPPED:
                totals["skipped"] += 1
            else:
                totals["succeeded"] += 1

    _log({"event": "ingestion_run_summary", "started_at": started_at, "dry_run": args.dry_run, **totals})
    return 1 if totals["failed"] else 0


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    try:
        return asyncio.run(_run(args))
    except ConfigurationError as ex:
        _log({"event": "ingestion_configuration_error", "setting": ex.setting, "error": str(ex)})
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
