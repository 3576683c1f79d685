"""Run the metric passes for one uploaded Apple Health export.

By default each enabled metric gets its own full traversal of the export, in
a fixed order (weight, body fat, HRV). With ``single_pass`` every record is
dispatched to all extractors during one traversal instead, which reads the
file once rather than once per metric.
"""

import logging
import threading
import time
from typing import Callable, List, Optional

from healthsync.config.settings import ENABLED_METRICS, GCS_UPLOADS_PREFIX, SINGLE_PASS
from healthsync.exceptions import ProcessingError
from healthsync.ingestion.metric_extractors import (
    EarlyStopPolicy,
    MetricExtractor,
    MetricPass,
    build_extractors,
)
from healthsync.ingestion.record_tokenizer import STOP_PROCESSING, process_record_stream
from healthsync.ingestion.status import ProcessingStatus
from healthsync.storage.blob_store import BlobStore, GCSBlobStore

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProcessingStatus], None]


def user_id_from_upload_key(key: str) -> Optional[str]:
    """Extract the user id from an ``uploads/{user_id}/...`` key."""
    if not key.startswith(GCS_UPLOADS_PREFIX):
        return None
    parts = key[len(GCS_UPLOADS_PREFIX):].split("/")
    if len(parts) < 2 or not parts[0]:
        return None
    return parts[0]


class HealthDataProcessor:
    """Drive extractors over an export stored in a blob store."""

    def __init__(
        self,
        store: BlobStore,
        source_store: Optional[BlobStore] = None,
        policy: Optional[EarlyStopPolicy] = None,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Args:
            store: Where per-user metric histories live
            source_store: Where the export lives (defaults to ``store``)
            policy: Early stop policy shared by all passes
            progress_callback: Called with the status after every state
                change and batch flush
            cancel_event: When set, the running pass stops with
                ProcessingCancelled
            clock: Monotonic clock (replaced in tests)
            sleep: Sleep function used between retries (replaced in tests)
        """
        self.store = store
        self.source_store = source_store or store
        self.policy = policy or EarlyStopPolicy()
        self.progress_callback = progress_callback
        self.cancel_event = cancel_event
        self.clock = clock
        self.sleep = sleep

    def _notify(self, status: ProcessingStatus) -> None:
        if not self.progress_callback:
            return
        try:
            self.progress_callback(status)
        except Exception as e:
            logger.error(f"Progress callback failed: {e}")

    def _new_pass(self, extractor: MetricExtractor, user_id: str, status: ProcessingStatus) -> MetricPass:
        def on_batch_saved(metric_pass: MetricPass, added: int) -> None:
            status.record_batch(metric_pass.summary, added)
            self._notify(status)

        return MetricPass(
            extractor,
            self.store,
            user_id,
            policy=self.policy,
            save_options={"sleep": self.sleep},
            on_batch_saved=on_batch_saved,
            cancel_event=self.cancel_event,
            clock=self.clock
        )

    def _stream(self, source_key: str, handler, on_retry=None) -> int:
        return process_record_stream(
            self.source_store,
            source_key,
            handler,
            cancel_event=self.cancel_event,
            on_retry=on_retry,
            sleep=self.sleep
        )

    def _run_metric_pass(self, source_key: str, user_id: str, extractor: MetricExtractor,
                         status: ProcessingStatus) -> None:
        logger.info(f"=== Starting {extractor.label} processing ===")
        status.enter_metric(extractor.metric)
        self._notify(status)

        metric_pass = self._new_pass(extractor, user_id, status)
        metric_pass.start()
        self._stream(source_key, metric_pass.handle, on_retry=metric_pass.restart)
        summary = metric_pass.finish()

        status.record_progress(summary)
        self._notify(status)
        logger.info(f"{extractor.label} processing completed successfully")

    def _run_single_pass(self, source_key: str, user_id: str, extractors: List[MetricExtractor],
                         status: ProcessingStatus) -> None:
        labels = ", ".join(extractor.label for extractor in extractors)
        logger.info(f"=== Starting single pass for {labels} ===")

        passes = [self._new_pass(extractor, user_id, status) for extractor in extractors]
        for metric_pass in passes:
            metric_pass.start()

        def dispatch(fragment: str):
            for metric_pass in passes:
                if not metric_pass.stopped:
                    metric_pass.handle(fragment)
            if all(metric_pass.stopped for metric_pass in passes):
                return STOP_PROCESSING
            return None

        def restart_all() -> None:
            for metric_pass in passes:
                metric_pass.restart()

        self._stream(source_key, dispatch, on_retry=restart_all)

        for metric_pass in passes:
            status.record_progress(metric_pass.finish())
        self._notify(status)

    def process(
        self,
        source_key: str,
        user_id: str,
        metrics: Optional[List[str]] = None,
        single_pass: bool = SINGLE_PASS,
        status: Optional[ProcessingStatus] = None
    ) -> ProcessingStatus:
        """
        Extract every enabled metric from an export and persist it.

        Per-metric passes report ``processing <metric>`` while they run. In
        single-pass mode all metrics advance together, so the status stays
        ``processing`` until it completes; per-metric progress is in
        ``status.passes``.

        Args:
            source_key: Key of the export.xml in the source store
            user_id: Owner of the data
            metrics: Metric types to extract, in order (defaults to
                ENABLED_METRICS)
            single_pass: Read the export once for all metrics
            status: Status object to update (a new one is created if omitted)

        Returns:
            The completed ProcessingStatus

        Raises:
            ProcessingError: A pass failed; ``status`` on the exception is in
                the error state. Metrics saved before the failure are kept.
        """
        if not user_id:
            raise ValueError("User ID is required")

        status = status or ProcessingStatus()
        extractors = build_extractors(list(metrics) if metrics is not None else ENABLED_METRICS)

        logger.info(f"Starting health data processing for user {user_id}: {source_key}")
        status.start()
        self._notify(status)

        current = None
        try:
            if single_pass:
                self._run_single_pass(source_key, user_id, extractors, status)
            else:
                for extractor in extractors:
                    current = extractor
                    self._run_metric_pass(source_key, user_id, extractor, status)
        except Exception as e:
            stage = f"{current.label} processing" if current else "Processing"
            logger.error(f"=== Processing error === {stage} failed: {e}")
            status.fail(str(e))
            self._notify(status)
            raise ProcessingError(f"{stage} failed: {e}", status=status) from e

        status.complete()
        self._notify(status)
        logger.info(
            f"=== Processing complete === {status.records_processed:,} records processed, "
            f"{status.batches_saved} batches saved, {status.points_saved:,} new points"
        )
        return status


def process_health_data(
    source_key: str,
    user_id: Optional[str] = None,
    store: Optional[BlobStore] = None,
    metrics: Optional[List[str]] = None,
    single_pass: bool = SINGLE_PASS,
    **kwargs
) -> ProcessingStatus:
    """
    Convenience function to process one uploaded export.

    Args:
        source_key: Key of the export, e.g. ``uploads/{user_id}/export.xml``
        user_id: Owner of the data (derived from source_key if omitted)
        store: Blob store (defaults to the configured GCS bucket)
        metrics: Metric types to extract, in order
        single_pass: Read the export once for all metrics
        **kwargs: Passed to HealthDataProcessor

    Returns:
        The completed ProcessingStatus
    """
    user_id = user_id or user_id_from_upload_key(source_key)
    if not user_id:
        raise ValueError(f"Cannot determine user ID for {source_key}")

    processor = HealthDataProcessor(store or GCSBlobStore(), **kwargs)
    return processor.process(source_key, user_id, metrics=metrics, single_pass=single_pass)
