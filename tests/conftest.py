"""Shared fixtures: an in-memory blob store and export builders."""

import io
import json

import pytest

from healthsync.exceptions import BlobNotFoundError
from healthsync.storage.blob_store import BlobStore

EXPORT_HEADER = """<?xml version="1.0" encoding="UTF-8"?>
<!DOCTYPE HealthData [
<!ELEMENT HealthData (ExportDate,Me,(Record|Correlation|Workout|ActivitySummary|ClinicalRecord)*)>
<!ATTLIST HealthData
  locale CDATA #REQUIRED
>
<!ELEMENT Record ((MetadataEntry|HeartRateVariabilityMetadataList)*)>
<!ATTLIST Record
  type          CDATA #REQUIRED
  unit          CDATA #IMPLIED
  value         CDATA #IMPLIED
>
]>
<HealthData locale="en_US">
 <ExportDate value="2024-02-01 09:00:00 -0500"/>
 <Me HKCharacteristicTypeIdentifierDateOfBirth="1990-01-01"/>
"""

EXPORT_FOOTER = "</HealthData>\n"

UNITS = {
    "HKQuantityTypeIdentifierBodyMass": "kg",
    "HKQuantityTypeIdentifierBodyFatPercentage": "%",
    "HKQuantityTypeIdentifierHeartRateVariabilitySDNN": "ms",
    "HKQuantityTypeIdentifierHeartRate": "count/min",
    "HKQuantityTypeIdentifierStepCount": "count",
}


def make_record(record_type, value=None, start=None, creation=None, end=None, metadata=False,
                source="Jürgen’s Apple Watch"):
    """Build one <Record> line the way Apple Health writes it."""
    attrs = [f'type="{record_type}"', f'sourceName="{source}"', f'unit="{UNITS.get(record_type, "")}"']
    if creation is not None:
        attrs.append(f'creationDate="{creation}"')
    if start is not None:
        attrs.append(f'startDate="{start}"')
    if end is not None:
        attrs.append(f'endDate="{end}"')
    if value is not None:
        attrs.append(f'value="{value}"')

    joined = " ".join(attrs)
    if metadata:
        return (f"<Record {joined}>\n"
                f'  <MetadataEntry key="HKWasUserEntered" value="1"/>\n'
                f" </Record>")
    return f"<Record {joined}/>"


def build_export(records):
    """Wrap record lines in a full export.xml document."""
    body = "".join(f" {record}\n" for record in records)
    return EXPORT_HEADER + body + EXPORT_FOOTER


class FlakyStream(io.BytesIO):
    """BytesIO that raises after ``fail_after`` bytes have been read."""

    def __init__(self, data, fail_after):
        super().__init__(data)
        self.fail_after = fail_after

    def read(self, size=-1):
        position = self.tell()
        if position >= self.fail_after:
            raise ConnectionError("connection reset by peer")
        remaining = self.fail_after - position
        return super().read(remaining if size is None or size < 0 else min(size, remaining))


class InMemoryBlobStore(BlobStore):
    """Dict-backed blob store with failure injection."""

    def __init__(self):
        self.objects = {}
        self.stream_opens = []
        self.reads = []
        self.writes = []
        self.write_timeouts = []
        self.failing_write_keys = set()
        self.write_failures = 0
        self.stream_failures = 0
        self.stream_fail_after = 0

    def put_bytes(self, key, data):
        if isinstance(data, str):
            data = data.encode("utf-8")
        self.objects[key] = data

    def put_json(self, key, value):
        self.objects[key] = json.dumps(value).encode("utf-8")

    def get_json(self, key):
        return json.loads(self.objects[key])

    def read_stream(self, key):
        self.stream_opens.append(key)
        if key not in self.objects:
            raise BlobNotFoundError(key)
        if self.stream_failures > 0:
            self.stream_failures -= 1
            return FlakyStream(self.objects[key], self.stream_fail_after)
        return io.BytesIO(self.objects[key])

    def read_json(self, key):
        self.reads.append(key)
        if key not in self.objects:
            raise BlobNotFoundError(key)
        return json.loads(self.objects[key])

    def write_json(self, key, value, timeout=30.0):
        if key in self.failing_write_keys:
            raise TimeoutError(f"write to {key} timed out")
        if self.write_failures > 0:
            self.write_failures -= 1
            raise ConnectionError("service unavailable")
        self.writes.append(key)
        self.write_timeouts.append(timeout)
        self.objects[key] = json.dumps(value).encode("utf-8")


@pytest.fixture
def store():
    """Empty in-memory blob store."""
    return InMemoryBlobStore()


@pytest.fixture
def make_store():
    """Factory for additional empty stores."""
    return InMemoryBlobStore


@pytest.fixture
def sleeps():
    """Recorded sleep durations; pass ``sleeps.append`` as the sleep function."""
    return []


@pytest.fixture
def record():
    """Record line builder."""
    return make_record


@pytest.fixture
def export():
    """export.xml document builder."""
    return build_export
