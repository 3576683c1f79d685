"""Processing status reported for one export ingestion job."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Set


class ProcessingState(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSING_WEIGHT = "processing weight"
    PROCESSING_BODY_FAT = "processing body fat"
    PROCESSING_HRV = "processing hrv"
    PROCESSING_HEART_RATE = "processing heart rate"
    PROCESSING_VO2MAX = "processing vo2max"
    COMPLETED = "completed"
    ERROR = "error"


METRIC_STATES = {
    "weight": ProcessingState.PROCESSING_WEIGHT,
    "bodyFat": ProcessingState.PROCESSING_BODY_FAT,
    "hrv": ProcessingState.PROCESSING_HRV,
    "heartRate": ProcessingState.PROCESSING_HEART_RATE,
    "vo2max": ProcessingState.PROCESSING_VO2MAX,
}

_TERMINAL_STATES = {ProcessingState.COMPLETED, ProcessingState.ERROR}


@dataclass
class PassSummary:
    """Counters for one metric over one traversal of the export."""

    metric: str
    records_seen: int = 0
    valid: int = 0
    invalid_type: int = 0
    invalid_value: int = 0
    invalid_date: int = 0
    duplicates: int = 0
    unparseable: int = 0
    batches_saved: int = 0
    points_saved: int = 0
    stopped_early: bool = False
    stop_reason: Optional[str] = None
    seen_types: Set[str] = field(default_factory=set)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metric": self.metric,
            "recordsSeen": self.records_seen,
            "valid": self.valid,
            "invalidType": self.invalid_type,
            "invalidValue": self.invalid_value,
            "invalidDate": self.invalid_date,
            "duplicates": self.duplicates,
            "unparseable": self.unparseable,
            "batchesSaved": self.batches_saved,
            "pointsSaved": self.points_saved,
            "stoppedEarly": self.stopped_early,
            "stopReason": self.stop_reason,
            "seenTypes": sorted(self.seen_types),
        }


@dataclass
class ProcessingStatus:
    """
    Progress of the coordinator through its metric passes.

    ``status`` moves pending -> processing -> processing <metric> (once per
    metric) -> completed, or to error from any non-terminal state.
    ``records_processed`` is the number of export records read, i.e. the
    furthest any pass got into the file.
    """

    records_processed: int = 0
    batches_saved: int = 0
    points_saved: int = 0
    status: ProcessingState = ProcessingState.PENDING
    error: Optional[str] = None
    passes: Dict[str, PassSummary] = field(default_factory=dict)

    @property
    def is_finished(self) -> bool:
        return self.status in _TERMINAL_STATES

    def _transition(self, new_state: ProcessingState) -> None:
        if self.is_finished:
            raise ValueError(f"Cannot move from {self.status.value} to {new_state.value}")
        if new_state is ProcessingState.PROCESSING and self.status is not ProcessingState.PENDING:
            raise ValueError(f"Cannot start processing from {self.status.value}")
        if new_state is not ProcessingState.ERROR and self.status is ProcessingState.PENDING \
                and new_state is not ProcessingState.PROCESSING:
            raise ValueError(f"Cannot move from pending to {new_state.value}")
        self.status = new_state

    def start(self) -> None:
        self._transition(ProcessingState.PROCESSING)

    def enter_metric(self, metric: str) -> None:
        self._transition(METRIC_STATES[metric])

    def complete(self) -> None:
        self._transition(ProcessingState.COMPLETED)

    def fail(self, message: str) -> None:
        self._transition(ProcessingState.ERROR)
        self.error = message

    def record_batch(self, summary: PassSummary, added: int) -> None:
        self.batches_saved += 1
        self.points_saved += added
        self.record_progress(summary)

    def record_progress(self, summary: PassSummary) -> None:
        self.passes[summary.metric] = summary
        self.records_processed = max(self.records_processed, summary.records_seen)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "recordsProcessed": self.records_processed,
            "batchesSaved": self.batches_saved,
            "pointsSaved": self.points_saved,
            "status": self.status.value,
            "passes": {metric: summary.to_dict() for metric, summary in self.passes.items()},
        }
        if self.error is not None:
            data["error"] = self.error
        return data
