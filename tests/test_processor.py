"""Tests for the ingestion coordinator and processing status."""

import threading

import pytest

from healthsync.exceptions import PersistenceError, ProcessingCancelled, ProcessingError
from healthsync.ingestion.metric_extractors import EarlyStopPolicy
from healthsync.ingestion.processor import (
    HealthDataProcessor,
    process_health_data,
    user_id_from_upload_key,
)
from healthsync.ingestion.status import PassSummary, ProcessingState, ProcessingStatus

SOURCE_KEY = "uploads/u1/export.xml"
WEIGHT = "HKQuantityTypeIdentifierBodyMass"
BODY_FAT = "HKQuantityTypeIdentifierBodyFatPercentage"
HRV = "HKQuantityTypeIdentifierHeartRateVariabilitySDNN"
HEART_RATE = "HKQuantityTypeIdentifierHeartRate"
STEPS = "HKQuantityTypeIdentifierStepCount"


@pytest.fixture
def make_processor(store, sleeps):
    """Processor factory with a frozen clock and recorded sleeps."""
    def factory(**kwargs):
        kwargs.setdefault("clock", lambda: 0.0)
        kwargs.setdefault("sleep", sleeps.append)
        return HealthDataProcessor(kwargs.pop("store", store), **kwargs)
    return factory


@pytest.fixture
def upload(store, export):
    """Put an export built from record lines at SOURCE_KEY."""
    def put(records):
        store.put_bytes(SOURCE_KEY, export(records))
    return put


@pytest.fixture
def mixed_export(record):
    """Export with weight, body fat, HRV, heart rate and step records."""
    return [
        record(WEIGHT, "70.456", start="2024-01-02 08:00:00 +0000"),
        record(STEPS, "1200", start="2024-01-02 09:00:00 +0000"),
        record(WEIGHT, "70.1", start="2024-01-01 08:00:00 +0000", metadata=True),
        record(BODY_FAT, "0.183", start="2024-01-01 08:00:00 +0000"),
        record(BODY_FAT, "0.181", start="2024-01-02 08:00:00 +0000"),
        record(HRV, "45.678", start="2024-01-01 07:00:00 +0000", metadata=True),
        record(HEART_RATE, "72.6", start="2024-01-01 07:00:00 +0000"),
    ]


class TestScenario:
    """Test suite for the malformed and duplicate record scenario."""

    @pytest.fixture
    def scenario(self, upload, record):
        upload([
            record(WEIGHT, "68.2", start="2024-01-01T10:00:00Z"),
            record(WEIGHT, start="2024-01-01T11:00:00Z"),
            record(WEIGHT, "68.5", start="2024-01-01T10:00:00Z"),
        ])

    @pytest.mark.parametrize("metrics", [["weight"], None])
    def test_first_seen_wins(self, scenario, store, make_processor, metrics):
        status = make_processor().process(SOURCE_KEY, "u1", metrics=metrics)

        assert store.get_json("data/u1/weight.json") == [{"date": "2024-01-01T10:00:00Z", "value": 68.2}]
        assert status.records_processed == 3
        assert status.points_saved == 1
        assert status.status is ProcessingState.COMPLETED

    def test_skip_counters(self, scenario, make_processor):
        status = make_processor().process(SOURCE_KEY, "u1", metrics=["weight"])

        summary = status.passes["weight"]
        assert summary.valid == 1
        assert summary.invalid_value == 1
        assert summary.duplicates == 1


class TestHealthDataProcessor:
    """Test suite for HealthDataProcessor."""

    def test_transforms_persisted(self, upload, mixed_export, store, make_processor):
        upload(mixed_export)

        make_processor().process(SOURCE_KEY, "u1")

        assert store.get_json("data/u1/weight.json") == [
            {"date": "2024-01-01T08:00:00Z", "value": 70.1},
            {"date": "2024-01-02T08:00:00Z", "value": 70.46},
        ]
        assert [point["value"] for point in store.get_json("data/u1/bodyFat.json")] == [18.3, 18.1]
        assert store.get_json("data/u1/hrv.json") == [{"date": "2024-01-01T07:00:00Z", "value": 45.68}]

    def test_default_passes_read_export_per_metric(self, upload, mixed_export, store, make_processor):
        upload(mixed_export)

        make_processor().process(SOURCE_KEY, "u1")

        assert store.stream_opens == [SOURCE_KEY] * 3
        assert "data/u1/heartRate.json" not in store.objects

    def test_seen_types(self, upload, mixed_export, make_processor):
        upload(mixed_export)

        status = make_processor().process(SOURCE_KEY, "u1", metrics=["weight"])

        assert status.passes["weight"].seen_types == {WEIGHT, STEPS, BODY_FAT, HRV, HEART_RATE}
        assert status.to_dict()["passes"]["weight"]["seenTypes"] == sorted([WEIGHT, STEPS, BODY_FAT, HRV, HEART_RATE])

    def test_heart_rate_when_enabled(self, upload, mixed_export, store, make_processor):
        upload(mixed_export)

        make_processor().process(SOURCE_KEY, "u1", metrics=["heartRate"])

        assert store.get_json("data/u1/heartRate.json") == [{"date": "2024-01-01T07:00:00Z", "value": 73}]

    def test_non_numeric_value_does_not_abort(self, upload, record, store, make_processor):
        upload([
            record(WEIGHT, "N/A", start="2024-01-01 08:00:00 +0000"),
            record(WEIGHT, "70.2", start="2024-01-02 08:00:00 +0000"),
        ])

        make_processor().process(SOURCE_KEY, "u1", metrics=["weight"])

        assert store.get_json("data/u1/weight.json") == [{"date": "2024-01-02T08:00:00Z", "value": 70.2}]

    def test_idempotent(self, upload, mixed_export, store, make_processor):
        upload(mixed_export)
        make_processor().process(SOURCE_KEY, "u1")
        first = {key: value for key, value in store.objects.items() if key.startswith("data/")}
        writes = len(store.writes)

        status = make_processor().process(SOURCE_KEY, "u1")

        assert {key: value for key, value in store.objects.items() if key.startswith("data/")} == first
        assert len(store.writes) == writes
        assert status.points_saved == 0

    def test_sub_second_timestamps_distinct(self, upload, record, store, make_processor):
        upload([
            record(WEIGHT, "70.2", start="2024-01-01T10:00:00.250Z"),
            record(WEIGHT, "70.1", start="2024-01-01T10:00:00Z"),
        ])

        make_processor().process(SOURCE_KEY, "u1", metrics=["weight"])

        assert [point["date"] for point in store.get_json("data/u1/weight.json")] == [
            "2024-01-01T10:00:00Z", "2024-01-01T10:00:00.250Z"
        ]

    def test_merges_with_legacy_history(self, upload, record, store, make_processor):
        store.put_json("data/u1/bodyfat.json", [{"date": "2024-01-01T08:00:00.000Z", "value": 18.0}])
        upload([
            record(BODY_FAT, "0.2", start="2024-01-01 08:00:00 +0000"),
            record(BODY_FAT, "0.19", start="2024-01-03 08:00:00 +0000"),
        ])

        status = make_processor().process(SOURCE_KEY, "u1", metrics=["bodyFat"])

        assert store.get_json("data/u1/bodyFat.json") == [
            {"date": "2024-01-01T08:00:00Z", "value": 18.0},
            {"date": "2024-01-03T08:00:00Z", "value": 19.0},
        ]
        assert status.passes["bodyFat"].duplicates == 1

    def test_batches(self, upload, record, store, make_processor):
        upload([
            record(WEIGHT, "70.0", start=f"2024-01-01 {i // 60:02d}:{i % 60:02d}:00 +0000")
            for i in range(120)
        ])

        status = make_processor().process(SOURCE_KEY, "u1", metrics=["weight"])

        assert status.batches_saved == 3
        assert status.points_saved == 120
        assert store.writes == ["data/u1/weight.json"] * 3
        assert len(store.get_json("data/u1/weight.json")) == 120

    def test_stream_retry(self, upload, mixed_export, store, make_processor, sleeps):
        upload(mixed_export)
        store.stream_failures = 1
        store.stream_fail_after = 100

        status = make_processor().process(SOURCE_KEY, "u1", metrics=["weight"])

        assert status.status is ProcessingState.COMPLETED
        assert len(store.get_json("data/u1/weight.json")) == 2
        assert sleeps == [2.0]

    def test_unknown_metric(self, make_processor):
        with pytest.raises(ValueError):
            make_processor().process(SOURCE_KEY, "u1", metrics=["steps"])


class TestEarlyStop:
    """Test suite for early termination of a pass."""

    @pytest.fixture
    def sparse_export(self, upload, record):
        """Three weights, a long run of steps, then a straggler weight."""
        records = [record(WEIGHT, "70.0", start=f"2024-01-0{day} 08:00:00 +0000") for day in (1, 2, 3)]
        records += [record(STEPS, "100", start="2024-01-05 08:00:00 +0000") for _ in range(30)]
        records.append(record(WEIGHT, "71.0", start="2024-01-09 08:00:00 +0000"))
        upload(records)

    def policy(self, enabled=True):
        return EarlyStopPolicy(
            enabled=enabled,
            check_every_records=5,
            check_every_seconds=1e9,
            max_unchanged_checks=2,
            no_records_ceiling=1000,
            max_stall_seconds=1e9,
        )

    def test_pass_stops(self, sparse_export, store, make_processor):
        status = make_processor(policy=self.policy()).process(SOURCE_KEY, "u1", metrics=["weight"])

        summary = status.passes["weight"]
        assert summary.stopped_early
        assert summary.records_seen == 15
        assert len(store.get_json("data/u1/weight.json")) == 3
        assert status.status is ProcessingState.COMPLETED

    def test_disabled(self, sparse_export, store, make_processor):
        status = make_processor(policy=self.policy(enabled=False)).process(SOURCE_KEY, "u1", metrics=["weight"])

        assert not status.passes["weight"].stopped_early
        assert status.records_processed == 34
        assert len(store.get_json("data/u1/weight.json")) == 4

    def test_stream_retry_does_not_trigger_stop(self, upload, record, store, make_processor, sleeps):
        """Test records re-read after a stream error are not mistaken for a dry spell."""
        records = []
        for i in range(100):
            records.append(record(WEIGHT, "70.0", start=f"2024-01-01 {i // 60:02d}:{i % 60:02d}:00 +0000"))
            records += [record(STEPS, "100", start="2024-01-05 08:00:00 +0000") for _ in range(4)]
        upload(records)
        store.stream_failures = 1
        store.stream_fail_after = len(store.objects[SOURCE_KEY]) * 6 // 10
        policy = EarlyStopPolicy(
            check_every_records=10,
            check_every_seconds=1e9,
            max_unchanged_checks=3,
            no_records_ceiling=100000,
            max_stall_seconds=1e9,
        )

        status = make_processor(policy=policy).process(SOURCE_KEY, "u1", metrics=["weight"])

        summary = status.passes["weight"]
        assert sleeps == [2.0]
        assert not summary.stopped_early
        assert summary.records_seen == 500
        assert summary.duplicates == 0
        assert len(store.get_json("data/u1/weight.json")) == 100

    def test_stream_retry_in_single_pass(self, upload, record, store, make_processor):
        records = []
        for i in range(40):
            records.append(record(WEIGHT, "70.0", start=f"2024-01-01 00:{i:02d}:00 +0000"))
            records.append(record(BODY_FAT, "0.2", start=f"2024-01-01 00:{i:02d}:00 +0000"))
            records += [record(STEPS, "100", start="2024-01-05 08:00:00 +0000") for _ in range(3)]
        upload(records)
        store.stream_failures = 1
        store.stream_fail_after = len(store.objects[SOURCE_KEY]) // 2
        policy = EarlyStopPolicy(check_every_records=10, check_every_seconds=1e9, max_unchanged_checks=2,
                                 no_records_ceiling=100000, max_stall_seconds=1e9)

        status = make_processor(policy=policy).process(
            SOURCE_KEY, "u1", metrics=["weight", "bodyFat"], single_pass=True
        )

        assert status.records_processed == 200
        assert len(store.get_json("data/u1/weight.json")) == 40
        assert len(store.get_json("data/u1/bodyFat.json")) == 40

    def test_stall_detected_with_clock(self, sparse_export, store, make_processor):
        ticks = iter(range(0, 10000, 400))
        policy = EarlyStopPolicy(check_every_records=10000, check_every_seconds=1, max_stall_seconds=300)

        status = make_processor(policy=policy, clock=lambda: float(next(ticks))).process(
            SOURCE_KEY, "u1", metrics=["weight"]
        )

        assert "no progress" in status.passes["weight"].stop_reason


class TestFailures:
    """Test suite for error propagation and cancellation."""

    def test_persistence_failure_stops_pipeline(self, upload, mixed_export, store, make_processor, sleeps):
        upload(mixed_export)
        store.failing_write_keys.add("data/u1/weight.json")
        seen = []

        with pytest.raises(ProcessingError) as exc_info:
            make_processor(progress_callback=lambda status: seen.append(status.status)).process(SOURCE_KEY, "u1")

        error = exc_info.value
        assert isinstance(error.__cause__, PersistenceError)
        assert "weight processing failed" in str(error)
        assert error.status.status is ProcessingState.ERROR
        assert error.status.error
        assert seen[-1] is ProcessingState.ERROR
        assert "data/u1/bodyFat.json" not in store.reads
        assert sleeps == [1.0, 1.0]

    def test_earlier_metrics_kept(self, upload, mixed_export, store, make_processor):
        upload(mixed_export)
        store.failing_write_keys.add("data/u1/bodyFat.json")

        with pytest.raises(ProcessingError):
            make_processor().process(SOURCE_KEY, "u1")

        assert len(store.get_json("data/u1/weight.json")) == 2
        assert "data/u1/hrv.json" not in store.reads

    def test_missing_export(self, make_processor):
        with pytest.raises(ProcessingError) as exc_info:
            make_processor().process("uploads/u1/missing.xml", "u1")

        assert exc_info.value.status.status is ProcessingState.ERROR

    def test_cancelled(self, upload, mixed_export, make_processor):
        upload(mixed_export)
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(ProcessingError) as exc_info:
            make_processor(cancel_event=cancel).process(SOURCE_KEY, "u1")

        assert isinstance(exc_info.value.__cause__, ProcessingCancelled)

    def test_callback_errors_ignored(self, upload, mixed_export, make_processor):
        upload(mixed_export)

        def callback(status):
            raise RuntimeError("dashboard offline")

        status = make_processor(progress_callback=callback).process(SOURCE_KEY, "u1")

        assert status.status is ProcessingState.COMPLETED


class TestSinglePass:
    """Test suite for single traversal mode."""

    def test_same_result_one_read(self, export, mixed_export, make_store, make_processor):
        results = {}
        for single_pass in (False, True):
            store = make_store()
            store.put_bytes(SOURCE_KEY, export(mixed_export))
            make_processor(store=store).process(SOURCE_KEY, "u1", single_pass=single_pass)
            results[single_pass] = store

        data = {key: value for key, value in results[False].objects.items() if key.startswith("data/")}
        assert {key: value for key, value in results[True].objects.items() if key.startswith("data/")} == data
        assert results[True].stream_opens == [SOURCE_KEY]

    def test_stops_when_every_pass_stopped(self, upload, record, store, make_processor):
        upload([record(STEPS, "100", start="2024-01-05 08:00:00 +0000") for _ in range(20)])
        policy = EarlyStopPolicy(check_every_records=5, no_records_ceiling=5)

        status = make_processor(policy=policy).process(SOURCE_KEY, "u1", single_pass=True)

        assert all(summary.stopped_early for summary in status.passes.values())
        assert status.records_processed == 5


class TestProgressReporting:
    """Test suite for status updates seen by the progress callback."""

    def test_state_sequence(self, upload, mixed_export, make_processor):
        upload(mixed_export)
        states = []

        def callback(status):
            if not states or states[-1] != status.status.value:
                states.append(status.status.value)

        make_processor(progress_callback=callback).process(SOURCE_KEY, "u1")

        assert states == ["processing", "processing weight", "processing body fat", "processing hrv", "completed"]

    def test_single_pass_state_sequence(self, upload, mixed_export, make_processor):
        """Test single-pass mode reports plain processing, with per-metric detail in passes."""
        upload(mixed_export)
        states = []

        def callback(status):
            if not states or states[-1] != status.status.value:
                states.append(status.status.value)

        status = make_processor(progress_callback=callback).process(SOURCE_KEY, "u1", single_pass=True)

        assert states == ["processing", "completed"]
        assert set(status.passes) == {"weight", "bodyFat", "hrv"}

    def test_status_dict(self, upload, mixed_export, make_processor):
        upload(mixed_export)

        data = make_processor().process(SOURCE_KEY, "u1").to_dict()

        assert data["status"] == "completed"
        assert data["recordsProcessed"] == 7
        assert data["pointsSaved"] == 5
        assert data["passes"]["bodyFat"]["valid"] == 2
        assert "error" not in data


class TestProcessingStatus:
    """Test suite for ProcessingStatus transitions."""

    def test_happy_path(self):
        status = ProcessingStatus()
        status.start()
        status.enter_metric("weight")
        status.enter_metric("bodyFat")
        status.complete()

        assert status.is_finished

    def test_cannot_skip_start(self):
        with pytest.raises(ValueError):
            ProcessingStatus().enter_metric("weight")

    def test_terminal_states_final(self):
        status = ProcessingStatus()
        status.start()
        status.fail("boom")

        with pytest.raises(ValueError):
            status.complete()
        assert status.to_dict()["error"] == "boom"

    def test_records_processed_is_furthest_pass(self):
        status = ProcessingStatus()
        status.record_progress(PassSummary(metric="weight", records_seen=900))
        status.record_progress(PassSummary(metric="bodyFat", records_seen=400))

        assert status.records_processed == 900


class TestHelpers:
    """Test suite for module-level helpers."""

    @pytest.mark.parametrize("key,expected", [
        ("uploads/u1/export.xml", "u1"),
        ("uploads/u1/2024/export.xml", "u1"),
        ("uploads/export.xml", None),
        ("data/u1/weight.json", None),
    ])
    def test_user_id_from_upload_key(self, key, expected):
        assert user_id_from_upload_key(key) == expected

    def test_process_health_data(self, upload, mixed_export, store, sleeps):
        upload(mixed_export)

        status = process_health_data(SOURCE_KEY, store=store, metrics=["weight"], sleep=sleeps.append)

        assert status.status is ProcessingState.COMPLETED
        assert "data/u1/weight.json" in store.objects

    def test_process_health_data_needs_user(self, store):
        with pytest.raises(ValueError):
            process_health_data("export.xml", store=store)
