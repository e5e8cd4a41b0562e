from __future__ import annotations

"""Transform entry point: raw staging -> canonical records.

STRICT:
- READ raw_records and reference_records.
- UPSERT canonical_records (one per assigned id).
- INSERT one run_outcomes row per run (not in dry runs).
- No network access.

Run:
  python transform/job/run_transform.py
  python transform/job/run_transform.py --resource lista_especies_flora_brasil --force
  python transform/job/run_transform.py --count-only
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

# Ensure `backend/` is importable as top-level `app`.
BASE_DIR = Path(__file__).resolve().parents[2]
if str(BASE_DIR) not in sys.path:
    sys.path.insert(0, str(BASE_DIR))

from app.core.config import settings_from_env  # noqa: E402
from app.core.errors import ConfigurationError  # noqa: E402
from app.core.store import DocumentStore  # noqa: E402
from transform.core.mapping import MAPPING_VERSION  # noqa: E402
from transform.core.transform import TransformOptions, TransformPipeline, TransformStatus  # noqa: E402


logger = logging.getLogger("biodiv.transform")
logger.setLevel(logging.INFO)
if not logging.getLogger().handlers:
    logging.basicConfig(level=logging.INFO, format="%(message)s")


def _log(event: dict) -> None:
    logger.info(json.dumps(event, ensure_ascii=False, default=str))


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    p = argparse.ArgumentParser(add_help=True, description="Map staged raw records into canonical records.")
    p.add_argument("--resource", default=None, help="Only records of this resource id.")
    p.add_argument("--record-type", choices=("taxon", "occurrence"), default=None)
    p.add_argument("--batch-size", type=int, default=None)
    p.add_argument("--pipeline-version", default=MAPPING_VERSION)
    p.add_argument("--all-records", action="store_true", help="Do not skip records already at this pipeline version.")
    p.add_argument("--force", action="store_true", help="Re-map records even when already at this version.")
    p.add_argument("--dry-run", action="store_true", help="Map and classify, write nothing.")
    p.add_argument("--no-enrich", action="store_true", help="Skip the reference list enrichment.")
    p.add_argument("--count-only", action="store_true", help="Only report how many records are pending.")
    return p.parse_args(argv)


async def _run(args: argparse.Namespace) -> int:
    settings = settings_from_env()
    settings.require_database_url()
    options = TransformOptions(
        resource_filter=args.resource,
        record_type=args.record_type,
        only_unprocessed=not args.all_records,
        pipeline_version=args.pipeline_version,
        batch_size=args.batch_size or settings.default_batch_size,
        force_reprocess=args.force,
        dry_run=args.dry_run,
        enrich=not args.no_enrich,
    )

    with DocumentStore.from_settings(settings) as store:
        pipeline = TransformPipeline(store, runner_id=settings.runner_id, script_version=settings.script_version)
        pending = await pipeline.count_pending(options)
        _log({"event": "transform_pending", "pending": pending, **options.model_dump()})
        if args.count_only:
            return 0
        result = await pipeline.transform(options)

    _log(
        {
            "event": "transform_run_summary",
            "status": result.status.value,
            "pipeline_version": result.pipeline_version,
            "success_count": result.success_count,
            "fallback_count": result.fallback_count,
            "failure_count": result.failure_count,
            "skipped_count": result.skipped_count,
            "duration_seconds": round(result.duration, 3),
            "run_id": result.run_id,
            "error": result.error,
            "error_refs": [e.record_ref for e in result.processing_errors[:20]],
        }
    )
    return 1 if result.status is TransformStatus.FAILURE else 0


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    try:
        return asyncio.run(_run(args))
    except ConfigurationError as ex:
        _log({"event": "transform_configuration_error", "setting": ex.setting, "error": str(ex)})
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
