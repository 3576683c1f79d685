"""Per-user metric histories and incremental persistence.

Each (user, metric) pair owns one JSON document at
``data/{user_id}/{metric}.json``: an array of ``{"date", "value"}`` points,
ascending by instant, with at most one point per exact date.
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

import pandas as pd

from healthsync.config.settings import (
    GCS_DATA_PREFIX,
    SAVE_RETRY_ATTEMPTS,
    SAVE_RETRY_DELAY_SECONDS,
    WRITE_TIMEOUT_SECONDS,
)
from healthsync.exceptions import BlobNotFoundError, PersistenceError, ProcessingCancelled
from healthsync.storage.blob_store import BlobStore
from healthsync.timestamps import normalize_timestamp

logger = logging.getLogger(__name__)

METRIC_TYPES = ("weight", "bodyFat", "hrv", "heartRate", "vo2max")

# Documents written before the key casing was fixed
LEGACY_METRIC_KEYS = {"bodyFat": "bodyfat"}


def health_data_key(user_id: str, metric: str) -> str:
    """Storage key for one user's metric history."""
    if metric not in METRIC_TYPES:
        raise ValueError(f"Unknown metric type: {metric}")
    if not user_id:
        raise ValueError("User ID is required")
    return f"{GCS_DATA_PREFIX}{user_id}/{metric}.json"


def _canonicalize(data: Any, key: str) -> List[Dict[str, Any]]:
    """Re-render stored dates in canonical form and drop unusable entries."""
    if not isinstance(data, list):
        logger.warning(f"Ignoring non-array document at {key}")
        return []

    points = []
    dropped = 0
    for entry in data:
        if not isinstance(entry, dict):
            dropped += 1
            continue
        date = normalize_timestamp(entry.get("date"))
        if date is None:
            dropped += 1
            continue
        points.append({**entry, "date": date})

    if dropped:
        logger.warning(f"Dropped {dropped} malformed entries from {key}")
    return points


def fetch_all_health_data(store: BlobStore, metric: str, user_id: str) -> List[Dict[str, Any]]:
    """
    Load the persisted history for one metric.

    Args:
        store: Blob store holding user data
        metric: Metric type (weight, bodyFat, hrv, heartRate, vo2max)
        user_id: Owner of the history

    Returns:
        List of points, or an empty list when nothing has been stored yet
    """
    key = health_data_key(user_id, metric)
    try:
        return _canonicalize(store.read_json(key), key)
    except BlobNotFoundError:
        pass

    legacy = LEGACY_METRIC_KEYS.get(metric)
    if legacy:
        legacy_key = f"{GCS_DATA_PREFIX}{user_id}/{legacy}.json"
        try:
            data = store.read_json(legacy_key)
            logger.info(f"Read {metric} history from legacy key {legacy_key}")
            return _canonicalize(data, legacy_key)
        except BlobNotFoundError:
            pass

    logger.debug(f"No {metric} history found for user {user_id}")
    return []


def merge_points(existing: List[Dict[str, Any]], new_points: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Concatenate, sort by instant and drop exact-date duplicates.

    The sort is stable and existing points come first, so an already
    persisted point wins over a new one with the same date.
    """
    merged = list(existing) + list(new_points)
    if not merged:
        return []

    frame = pd.DataFrame({"date": [point["date"] for point in merged]})
    frame["instant"] = pd.to_datetime(frame["date"], utc=True, format="ISO8601")
    frame = frame.sort_values("instant", kind="mergesort")
    frame = frame.drop_duplicates(subset="date", keep="first")

    return [merged[i] for i in frame.index]


def _check_cancelled(cancel_event: Optional[threading.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise ProcessingCancelled("Processing cancelled before save")


def _save_once(
    store: BlobStore,
    metric: str,
    user_id: str,
    new_points: List[Dict[str, Any]],
    timeout: float
) -> int:
    key = health_data_key(user_id, metric)
    existing = fetch_all_health_data(store, metric, user_id)
    existing_dates = {point["date"] for point in existing}
    logger.debug(f"Found {len(existing)} existing {metric} records")

    if len(new_points) == 1:
        point = new_points[0]
        if point["date"] in existing_dates:
            logger.info(f"Record for {point['date']} already exists, skipping")
            return 0
        store.write_json(key, merge_points(existing, new_points), timeout=timeout)
        logger.info(f"Saved new {metric} record for {point['date']}")
        return 1

    unique = merge_points(existing, new_points)
    added = len({point["date"] for point in new_points} - existing_dates)
    store.write_json(key, unique, timeout=timeout)
    logger.info(f"Saved {added} new {metric} records ({len(unique)} total) to {key}")
    return added


def save_data(
    store: BlobStore,
    metric: str,
    user_id: str,
    new_points: List[Dict[str, Any]],
    attempts: int = SAVE_RETRY_ATTEMPTS,
    delay_seconds: float = SAVE_RETRY_DELAY_SECONDS,
    timeout: float = WRITE_TIMEOUT_SECONDS,
    cancel_event: Optional[threading.Event] = None,
    sleep: Callable[[float], None] = time.sleep
) -> int:
    """
    Merge new points into a metric history and write it back.

    The whole fetch-merge-write sequence is retried with a fixed delay.

    Args:
        store: Blob store holding user data
        metric: Metric type
        user_id: Owner of the history
        new_points: Points to add, as ``{"date", "value"}`` dicts
        attempts: Total attempts before giving up
        delay_seconds: Pause between attempts
        timeout: Timeout applied to the write request
        cancel_event: Checked before every attempt
        sleep: Sleep function (replaced in tests)

    Returns:
        Number of points that were not already stored

    Raises:
        PersistenceError: All attempts failed
        ProcessingCancelled: cancel_event was set
    """
    if not new_points:
        return 0

    # Fail fast on a bad key instead of retrying it
    health_data_key(user_id, metric)

    for attempt in range(1, attempts + 1):
        _check_cancelled(cancel_event)
        try:
            return _save_once(store, metric, user_id, new_points, timeout)
        except Exception as e:
            logger.error(f"Error saving {metric} data (attempt {attempt}/{attempts}): {e}")
            if attempt >= attempts:
                raise PersistenceError(
                    f"Failed to save {metric} data for user {user_id} after {attempts} attempts: {e}"
                ) from e
            logger.info(f"Retrying in {delay_seconds}s...")
            sleep(delay_seconds)

    return 0
