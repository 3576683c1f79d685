"""Extract canonical metric points from Apple Health <Record> fragments."""

import logging
import math
import re
import threading
import time
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from healthsync.config.settings import (
    EARLY_STOP_CHECK_SECONDS,
    EARLY_STOP_ENABLED,
    EARLY_STOP_MAX_STALL_SECONDS,
    EARLY_STOP_NO_RECORDS_CEILING,
    EARLY_STOP_UNCHANGED_CHECKS,
)
from healthsync.ingestion.record_tokenizer import STOP_PROCESSING
from healthsync.ingestion.status import PassSummary
from healthsync.storage.blob_store import BlobStore
from healthsync.storage.health_store import fetch_all_health_data, save_data
from healthsync.timestamps import format_timestamp, parse_timestamp

logger = logging.getLogger(__name__)

# Skip reasons returned by MetricExtractor.process
SKIP_TYPE = "invalid_type"
SKIP_VALUE = "invalid_value"
SKIP_DATE = "invalid_date"
SKIP_DUPLICATE = "duplicate"

DATE_FIELDS = ("startDate", "creationDate", "endDate")

_TYPE_ATTR = re.compile(r'\stype="([^"]*)"')


def round_half_up(value: float, decimals: int):
    """Round to ``decimals`` places with halves going up (72.5 -> 73)."""
    if decimals == 0:
        return int(math.floor(value + 0.5))
    factor = 10 ** decimals
    return math.floor(value * factor + 0.5) / factor


def parse_record_fragment(fragment: str) -> List[Dict[str, str]]:
    """
    Parse a wrapped fragment into attribute dicts, one per <Record>.

    Raises:
        xml.etree.ElementTree.ParseError: The fragment is not well-formed
    """
    root = ET.fromstring(fragment)
    return [dict(elem.attrib) for elem in root.iter("Record")]


class MetricExtractor:
    """Validate and normalise one HealthKit quantity type."""

    metric = ""
    record_type = ""
    label = ""
    batch_size = 50
    check_every_records = 10000
    decimals = 2

    def matches_fragment(self, fragment: str) -> bool:
        """Cheap substring test so unrelated records are never parsed."""
        return self.record_type in fragment

    def transform(self, value: float):
        return round_half_up(value, self.decimals)

    def parse_value(self, raw) -> Optional[float]:
        if raw is None:
            return None
        try:
            value = float(raw)
        except (TypeError, ValueError):
            return None
        if not math.isfinite(value):
            return None
        return value

    def resolve_date(self, record: Dict[str, Any]) -> Optional[str]:
        """First of startDate / creationDate / endDate that parses, as ISO-8601."""
        for field_name in DATE_FIELDS:
            timestamp = parse_timestamp(record.get(field_name))
            if timestamp is not None:
                return format_timestamp(timestamp)
        return None

    def process(self, record: Dict[str, Any], seen_dates: Set[str]) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
        """
        Turn a parsed record into a data point.

        Args:
            record: Attributes of one <Record>
            seen_dates: Dates already persisted or accepted in this pass;
                updated when the record is accepted

        Returns:
            (point, None) on acceptance, (None, skip_reason) otherwise
        """
        if record.get("type") != self.record_type:
            return None, SKIP_TYPE

        value = self.parse_value(record.get("value"))
        if value is None:
            return None, SKIP_VALUE

        date = self.resolve_date(record)
        if date is None:
            return None, SKIP_DATE

        if date in seen_dates:
            return None, SKIP_DUPLICATE

        seen_dates.add(date)
        return {"date": date, "value": self.transform(value)}, None


class WeightExtractor(MetricExtractor):
    """Body mass in kg, 2 decimals, no unit conversion."""

    metric = "weight"
    record_type = "HKQuantityTypeIdentifierBodyMass"
    label = "weight"


class BodyFatExtractor(MetricExtractor):
    """Body fat: the export stores a fraction, we persist a percentage."""

    metric = "bodyFat"
    record_type = "HKQuantityTypeIdentifierBodyFatPercentage"
    label = "body fat"

    def transform(self, value: float):
        return round_half_up(value * 100, 2)


class HRVExtractor(MetricExtractor):
    metric = "hrv"
    record_type = "HKQuantityTypeIdentifierHeartRateVariabilitySDNN"
    label = "HRV"
    check_every_records = 50000


class HeartRateExtractor(MetricExtractor):
    """Heart rate is high frequency: whole bpm, large batches."""

    metric = "heartRate"
    record_type = "HKQuantityTypeIdentifierHeartRate"
    label = "heart rate"
    batch_size = 2000
    check_every_records = 50000
    decimals = 0


class VO2MaxExtractor(MetricExtractor):
    metric = "vo2max"
    record_type = "HKQuantityTypeIdentifierVO2Max"
    label = "VO2 max"


EXTRACTORS = {
    extractor.metric: extractor
    for extractor in (WeightExtractor, BodyFatExtractor, HRVExtractor, HeartRateExtractor, VO2MaxExtractor)
}


def build_extractors(metrics: List[str]) -> List[MetricExtractor]:
    """Instantiate extractors for ``metrics``, keeping the given order."""
    unknown = [metric for metric in metrics if metric not in EXTRACTORS]
    if unknown:
        raise ValueError(f"Unknown metric types: {', '.join(unknown)}")
    return [EXTRACTORS[metric]() for metric in metrics]


@dataclass
class EarlyStopPolicy:
    """
    When to give up on a pass before the end of the export.

    Exports group records by type, so once a metric's records stop appearing
    the rest of the file rarely holds more of them. An export that
    interleaves types evenly would be cut short; disable the policy for those.
    """

    enabled: bool = EARLY_STOP_ENABLED
    check_every_records: Optional[int] = None  # None: the extractor's own interval
    check_every_seconds: float = EARLY_STOP_CHECK_SECONDS
    max_unchanged_checks: int = EARLY_STOP_UNCHANGED_CHECKS
    no_records_ceiling: int = EARLY_STOP_NO_RECORDS_CEILING
    max_stall_seconds: float = EARLY_STOP_MAX_STALL_SECONDS


class EarlyStopMonitor:
    """Periodic checks of a pass's valid-record count."""

    def __init__(self, policy: EarlyStopPolicy, check_every_records: int, now: float):
        self.policy = policy
        self.check_every_records = policy.check_every_records or check_every_records
        self.last_check = now
        self.last_valid = 0
        self.unchanged_checks = 0

    def resume(self, now: float) -> None:
        """Restart the clock between checks, e.g. after a stream retry."""
        self.last_check = now

    def is_due(self, records_seen: int, now: float) -> bool:
        return (records_seen % self.check_every_records == 0
                or now - self.last_check >= self.policy.check_every_seconds)

    def evaluate(self, records_seen: int, valid: int, now: float) -> Optional[str]:
        """Run one check. Returns a stop reason, or None to keep going."""
        elapsed = now - self.last_check
        self.last_check = now

        if not self.policy.enabled:
            return None

        if elapsed > self.policy.max_stall_seconds:
            return f"no progress for {elapsed:.0f}s"

        if valid == 0:
            if records_seen >= self.policy.no_records_ceiling:
                return f"no matching records in the first {records_seen:,} records"
            return None

        if valid == self.last_valid:
            self.unchanged_checks += 1
            if self.unchanged_checks >= self.policy.max_unchanged_checks:
                return f"no new records in {self.unchanged_checks} consecutive checks"
        else:
            self.unchanged_checks = 0
            self.last_valid = valid
        return None


class MetricPass:
    """
    One extractor applied to one traversal of the export.

    Seeds its duplicate set from the stored history, buffers accepted points
    and flushes them in batches, and decides when the pass can stop early.
    """

    def __init__(
        self,
        extractor: MetricExtractor,
        store: BlobStore,
        user_id: str,
        policy: Optional[EarlyStopPolicy] = None,
        save_options: Optional[Dict[str, Any]] = None,
        on_batch_saved: Optional[Callable[["MetricPass", int], None]] = None,
        cancel_event: Optional[threading.Event] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.extractor = extractor
        self.store = store
        self.user_id = user_id
        self.policy = policy or EarlyStopPolicy()
        self.save_options = save_options or {}
        self.on_batch_saved = on_batch_saved
        self.cancel_event = cancel_event
        self.clock = clock

        self.summary = PassSummary(metric=extractor.metric)
        self.seen_dates: Set[str] = set()
        self.pending: List[Dict[str, Any]] = []
        self.monitor = None
        self.started_at = None
        # Records handed to this pass in the current read of the export
        self.position = 0
        self.replaying = False

    @property
    def stopped(self) -> bool:
        return self.summary.stopped_early

    def start(self) -> None:
        label = self.extractor.label
        logger.info(f"Fetching existing {label} records...")
        existing = fetch_all_health_data(self.store, self.extractor.metric, self.user_id)
        self.seen_dates = {point["date"] for point in existing}
        logger.info(f"Found {len(existing)} existing {label} records")

        self.started_at = self.clock()
        self.monitor = EarlyStopMonitor(self.policy, self.extractor.check_every_records, self.started_at)

    def restart(self) -> None:
        """
        Rewind after the export stream was reopened from the start.

        Records up to the furthest point already reached were handled in an
        earlier attempt and are skipped, so they neither count twice nor
        look like a run of records with nothing new to the early stop checks.
        """
        logger.info(f"Re-reading export for {self.extractor.label}, skipping "
                    f"{self.summary.records_seen:,} records already handled")
        self.position = 0
        self.replaying = True

    def handle(self, fragment: str):
        """Record handler for process_record_stream."""
        summary = self.summary
        self.position += 1
        if self.position <= summary.records_seen:
            return None

        now = self.clock()
        if self.replaying:
            self.replaying = False
            self.monitor.resume(now)

        summary.records_seen += 1
        record_type = _TYPE_ATTR.search(fragment)
        if record_type:
            summary.seen_types.add(record_type.group(1))

        if self.extractor.matches_fragment(fragment):
            self._extract(fragment)
        else:
            summary.invalid_type += 1

        if self.monitor.is_due(summary.records_seen, now):
            self._log_progress(now)
            reason = self.monitor.evaluate(summary.records_seen, summary.valid, now)
            if reason:
                summary.stopped_early = True
                summary.stop_reason = reason
                logger.info(f"Stopping {self.extractor.label} pass: {reason}")
                return STOP_PROCESSING
        return None

    def _extract(self, fragment: str) -> None:
        summary = self.summary
        try:
            records = parse_record_fragment(fragment)
        except ET.ParseError as e:
            summary.unparseable += 1
            logger.debug(f"Skipping unparseable record: {e}")
            return

        for record in records:
            point, reason = self.extractor.process(record, self.seen_dates)
            if point is None:
                if reason == SKIP_TYPE:
                    summary.invalid_type += 1
                elif reason == SKIP_VALUE:
                    summary.invalid_value += 1
                elif reason == SKIP_DATE:
                    summary.invalid_date += 1
                else:
                    summary.duplicates += 1
                continue

            self.pending.append(point)
            summary.valid += 1
            if len(self.pending) >= self.extractor.batch_size:
                self.flush()

    def flush(self) -> int:
        """Persist pending points. Returns how many were new to storage."""
        if not self.pending:
            return 0

        logger.info(f"Saving batch of {len(self.pending)} {self.extractor.label} records...")
        added = save_data(
            self.store,
            self.extractor.metric,
            self.user_id,
            self.pending,
            cancel_event=self.cancel_event,
            **self.save_options
        )
        self.pending = []
        self.summary.batches_saved += 1
        self.summary.points_saved += added

        if self.on_batch_saved:
            self.on_batch_saved(self, added)
        return added

    def finish(self) -> PassSummary:
        """Flush the final partial batch and log the pass summary."""
        self.flush()
        summary = self.summary

        if summary.valid == 0:
            logger.warning(f"No new {self.extractor.label} records were found")

        elapsed = self.clock() - self.started_at if self.started_at is not None else 0.0
        logger.info(
            f"{self.extractor.label} processing complete: "
            f"{summary.records_seen:,} records seen, {summary.valid:,} valid, "
            f"{summary.invalid_value:,} invalid values, {summary.invalid_date:,} invalid dates, "
            f"{summary.duplicates:,} duplicates, {summary.unparseable:,} unparseable, "
            f"{summary.batches_saved} batches saved in {elapsed:.1f}s"
            + (f" (stopped early: {summary.stop_reason})" if summary.stopped_early else "")
        )
        logger.info(f"{self.extractor.label} record types seen: {', '.join(sorted(summary.seen_types)) or 'none'}")
        return summary

    def _log_progress(self, now: float) -> None:
        summary = self.summary
        elapsed = now - self.started_at
        rate = summary.records_seen / elapsed if elapsed > 0 else 0.0
        logger.info(
            f"{self.extractor.label} progress: {summary.records_seen:,} records processed, "
            f"{summary.valid:,} valid, {len(self.pending)} pending "
            f"({len(summary.seen_types)} record types seen, {rate:,.0f} records/s)"
        )
