"""Runtime settings for health export ingestion.

Values come from environment variables so the same code runs in the Cloud
Function, the local import script and tests.
"""

import os


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    return float(value) if value else default


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if not value:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: list) -> list:
    value = os.environ.get(name)
    if not value:
        return list(default)
    return [item.strip() for item in value.replace(",", " ").split() if item.strip()]


# Storage
GCS_BUCKET_NAME = os.environ.get("GCS_BUCKET_NAME", "health-stats-data")
GCS_UPLOADS_PREFIX = "uploads/"
GCS_DATA_PREFIX = "data/"
GCS_JOBS_PREFIX = "jobs/"

# Timezone applied to export timestamps that carry no UTC offset
LOCAL_TIMEZONE = os.environ.get("LOCAL_TIMEZONE", "UTC")

# Shared secret for the HTTP functions
API_KEY = os.environ.get("API_KEY", "")

# Metric passes, in the order they run. heartRate and vo2max are supported
# but off by default.
ENABLED_METRICS = _env_list("ENABLED_METRICS", ["weight", "bodyFat", "hrv"])
SINGLE_PASS = _env_bool("SINGLE_PASS", False)

# Source stream
STREAM_CHUNK_SIZE = _env_int("STREAM_CHUNK_SIZE", 1024 * 1024)
MAX_BUFFER_SIZE = _env_int("MAX_BUFFER_SIZE", 50 * 1024 * 1024)
STREAM_RETRY_ATTEMPTS = _env_int("STREAM_RETRY_ATTEMPTS", 3)
STREAM_RETRY_DELAY_SECONDS = _env_float("STREAM_RETRY_DELAY_SECONDS", 2.0)

# Persistence
SAVE_RETRY_ATTEMPTS = _env_int("SAVE_RETRY_ATTEMPTS", 3)
SAVE_RETRY_DELAY_SECONDS = _env_float("SAVE_RETRY_DELAY_SECONDS", 1.0)
WRITE_TIMEOUT_SECONDS = _env_float("WRITE_TIMEOUT_SECONDS", 30.0)

# Early stop heuristic
EARLY_STOP_ENABLED = _env_bool("EARLY_STOP_ENABLED", True)
EARLY_STOP_CHECK_SECONDS = _env_float("EARLY_STOP_CHECK_SECONDS", 30.0)
EARLY_STOP_UNCHANGED_CHECKS = _env_int("EARLY_STOP_UNCHANGED_CHECKS", 10)
EARLY_STOP_NO_RECORDS_CEILING = _env_int("EARLY_STOP_NO_RECORDS_CEILING", 2_000_000)
EARLY_STOP_MAX_STALL_SECONDS = _env_float("EARLY_STOP_MAX_STALL_SECONDS", 300.0)
