#!/usr/bin/env python3
"""
Import an Apple Health export into a local data directory.

Usage:
    1. Export your Health data: Health app → Profile → Export All Health Data
    2. Unzip the export (creates apple_health_export folder)
    3. Run: python import_health_export.py /path/to/apple_health_export --user-id me

Metric histories are written to <data-dir>/data/<user-id>/<metric>.json using
the same layout as the storage bucket.
"""

import argparse
import logging
import sys
from pathlib import Path

from healthsync.config.settings import ENABLED_METRICS, SINGLE_PASS
from healthsync.exceptions import ProcessingError
from healthsync.ingestion.metric_extractors import EXTRACTORS
from healthsync.ingestion.processor import HealthDataProcessor
from healthsync.storage.blob_store import LocalBlobStore

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s"
)


def find_export_xml(export_path: Path):
    """Locate export.xml given the file itself or the unzipped folder."""
    if not export_path.is_dir():
        return export_path if export_path.exists() else None

    xml_candidates = [
        export_path / "export.xml",
        export_path / "apple_health_export" / "export.xml",
    ]
    for candidate in xml_candidates:
        if candidate.exists():
            return candidate
    return None


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Import an Apple Health export.xml")
    parser.add_argument("export_path", help="export.xml or the unzipped apple_health_export folder")
    parser.add_argument("--user-id", required=True, help="User the data belongs to")
    parser.add_argument("--data-dir", default="cache", help="Local data directory (default: cache)")
    parser.add_argument("--metrics", nargs="+", choices=sorted(EXTRACTORS), default=ENABLED_METRICS,
                        help="Metrics to extract, in order")
    parser.add_argument("--single-pass", action="store_true", default=SINGLE_PASS,
                        help="Read the export once for all metrics")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    export_path = Path(args.export_path)

    if export_path.suffix == ".zip":
        print(f"Please unzip {export_path} first, then run with the unzipped folder.")
        sys.exit(1)

    xml_path = find_export_xml(export_path)
    if xml_path is None:
        print(f"Could not find export.xml at {export_path}")
        sys.exit(1)

    print(f"\n{'='*60}")
    print("Apple Health Export Import")
    print(f"{'='*60}")
    print(f"Source: {xml_path}")
    print(f"Size: {xml_path.stat().st_size / 1024 / 1024:.1f} MB")
    print(f"Metrics: {', '.join(args.metrics)}")
    print(f"\nThis may take several minutes for large exports...")
    print(f"{'='*60}\n")

    processor = HealthDataProcessor(
        LocalBlobStore(args.data_dir),
        source_store=LocalBlobStore(xml_path.parent)
    )

    try:
        status = processor.process(
            xml_path.name,
            args.user_id,
            metrics=args.metrics,
            single_pass=args.single_pass
        )
    except ProcessingError as e:
        print(f"\nERROR: {e}")
        sys.exit(1)

    print(f"\n{'='*60}")
    print("SUCCESS!")
    print(f"{'='*60}")
    print(f"Records processed: {status.records_processed:,}")
    print(f"New data points: {status.points_saved:,} in {status.batches_saved} batches")
    for metric, summary in status.passes.items():
        note = f" (stopped early: {summary.stop_reason})" if summary.stopped_early else ""
        print(f"  {metric}: {summary.valid:,} valid, {summary.points_saved:,} saved{note}")
    print(f"\nData written to: {Path(args.data_dir) / 'data' / args.user_id}")


if __name__ == "__main__":
    main()
