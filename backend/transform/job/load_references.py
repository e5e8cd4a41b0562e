from __future__ import annotations

"""Load one reference list (red list, invasive species, conservation units).

STRICT:
- WRITES reference_records only; every row of the same (kind, source) is replaced.
- The file is YAML or JSON: a list of field-maps, or a mapping with a `records` list.

Run:
  python transform/job/load_references.py --kind threat --source plantaeAmeacada --file plantae.yaml
  python transform/job/load_references.py --kind conservation_unit --source catalogoucs --file ucs.json --dry-run
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

import yaml

# Ensure `backend/` is importable as top-level `app`.
BASE_DIR = Path(__file__).resolve().parents[2]
if str(BASE_DIR) not in sys.path:
    sys.path.insert(0, str(BASE_DIR))

from app.core.config import settings_from_env  # noqa: E402
from app.core.errors import ConfigurationError, StorageError  # noqa: E402
from app.core.store import DocumentStore  # noqa: E402
from transform.core.enrichment import ReferenceKind, load_reference_documents  # noqa: E402


logger = logging.getLogger("biodiv.references")
logger.setLevel(logging.INFO)
if not logging.getLogger().handlers:
    logging.basicConfig(level=logging.INFO, format="%(message)s")


def _log(event: dict) -> None:
    logger.info(json.dumps(event, ensure_ascii=False, default=str))


def read_reference_file(path: Path) -> list[Any]:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as ex:
        raise ConfigurationError(f"Cannot read reference file {path}: {ex}") from ex
    except yaml.YAMLError as ex:
        raise ConfigurationError(f"Reference file {path} is not valid YAML/JSON: {ex}") from ex

    if isinstance(raw, dict):
        raw = raw.get("records")
    if not isinstance(raw, list):
        raise ConfigurationError(f"Reference file {path} must hold a list of records (or a `records` list).")
    return raw


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    p = argparse.ArgumentParser(add_help=True, description="Load a reference list used by the transform.")
    p.add_argument("--kind", required=True, choices=[k.value for k in ReferenceKind])
    p.add_argument("--source", required=True, help="List name, e.g. plantaeAmeacada, invasoras, catalogoucs.")
    p.add_argument("--file", required=True, type=Path)
    p.add_argument("--dry-run", action="store_true", help="Parse and count, write nothing.")
    return p.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    try:
        documents = read_reference_file(args.file)
        settings = settings_from_env()
        settings.require_database_url()
        with DocumentStore.from_settings(settings) as store:
            loaded = load_reference_documents(
                store, ReferenceKind(args.kind), args.source, documents, dry_run=args.dry_run
            )
    except ConfigurationError as ex:
        _log({"event": "references_configuration_error", "setting": ex.setting, "error": str(ex)})
        return 2
    except StorageError as ex:
        _log({"event": "references_storage_error", "error": str(ex)[:300]})
        return 1

    _log(
        {
            "event": "references_loaded",
            "kind": args.kind,
            "source": args.source,
            "file": str(args.file),
            "records": loaded,
            "skipped": len(documents) - loaded,
            "dry_run": args.dry_run,
        }
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
