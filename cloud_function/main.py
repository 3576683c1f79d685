"""Cloud Functions for Apple Health export ingestion.

process_health_export runs when an export lands in the bucket under
``uploads/{user_id}/``; health_data and processing_status serve the dashboard.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

import functions_framework
from flask import Request

from healthsync.config.settings import API_KEY, GCS_BUCKET_NAME, GCS_JOBS_PREFIX
from healthsync.exceptions import BlobNotFoundError, ProcessingError
from healthsync.ingestion.processor import HealthDataProcessor, user_id_from_upload_key
from healthsync.ingestion.status import ProcessingStatus
from healthsync.storage.blob_store import BlobStore, GCSBlobStore
from healthsync.storage.health_store import METRIC_TYPES, fetch_all_health_data

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

_store: Optional[BlobStore] = None


def _get_store() -> BlobStore:
    global _store
    if _store is None:
        _store = GCSBlobStore(GCS_BUCKET_NAME)
    return _store


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def job_key(user_id: str, job_id: str) -> str:
    return f"{GCS_JOBS_PREFIX}{user_id}/{job_id}.json"


def validate_api_key(request: Request) -> Tuple[bool, Optional[str]]:
    """Check the X-API-Key header. Returns (is_valid, error_message)."""
    provided_key = request.headers.get("X-API-Key", "")

    if not API_KEY:
        logger.warning("API_KEY environment variable not set")
        return False, "Server configuration error"

    if not provided_key:
        return False, "Missing X-API-Key header"

    if provided_key != API_KEY:
        return False, "Invalid API key"

    return True, None


def write_job(store: BlobStore, job: Dict[str, Any]) -> Optional[str]:
    """
    Persist a job document.

    Returns:
        Error message, or None on success
    """
    job["updatedAt"] = _now()
    try:
        store.write_json(job_key(job["userId"], job["jobId"]), job)
        return None
    except Exception as e:
        logger.error(f"Job status write error: {e}")
        return f"Failed to write job status: {str(e)}"


@functions_framework.cloud_event
def process_health_export(cloud_event) -> None:
    """
    Storage trigger: process a newly uploaded export.xml.

    The job document at ``jobs/{user_id}/{job_id}.json`` is rewritten on
    every progress change so clients can poll processing_status.
    """
    data = cloud_event.data or {}
    source_key = data.get("name", "")
    logger.info(f"Received upload event for gs://{data.get('bucket', GCS_BUCKET_NAME)}/{source_key}")

    user_id = user_id_from_upload_key(source_key)
    if not user_id or not source_key.lower().endswith(".xml"):
        logger.info(f"Ignoring {source_key}: not an XML export upload")
        return

    store = _get_store()
    job_id = str(data.get("generation") or int(datetime.now(timezone.utc).timestamp()))
    job = {
        "jobId": job_id,
        "userId": user_id,
        "sourceKey": source_key,
        "status": "processing",
        "createdAt": _now(),
        "progress": ProcessingStatus().to_dict(),
    }
    write_job(store, job)

    def on_progress(status: ProcessingStatus) -> None:
        job["progress"] = status.to_dict()
        write_job(store, job)

    processor = HealthDataProcessor(store, progress_callback=on_progress)
    try:
        status = processor.process(source_key, user_id)
    except ProcessingError as e:
        logger.error(f"Processing failed for {source_key}: {e}")
        job["status"] = "failed"
        job["error"] = str(e)
        if e.status is not None:
            job["progress"] = e.status.to_dict()
        write_job(store, job)
        return
    except Exception as e:
        logger.exception(f"Unexpected error processing {source_key}")
        job["status"] = "failed"
        job["error"] = str(e)
        write_job(store, job)
        return

    job["status"] = "completed"
    job["completedAt"] = _now()
    job["progress"] = status.to_dict()
    write_job(store, job)
    logger.info(f"Job {job_id} completed: {status.records_processed:,} records processed")


@functions_framework.http
def health_data(request: Request) -> Tuple[Dict[str, Any], int]:
    """
    Return the stored history for one metric.

    Query parameters: userId, type (weight, bodyFat, hrv, heartRate, vo2max).
    """
    if request.method == "OPTIONS":
        return {}, 204

    is_valid, error = validate_api_key(request)
    if not is_valid:
        logger.warning(f"API key validation failed: {error}")
        return {"success": False, "error": error}, 401

    user_id = request.args.get("userId", "")
    data_type = request.args.get("type", "")

    if data_type not in METRIC_TYPES:
        return {
            "success": False,
            "error": f"Invalid type parameter. Must be one of: {', '.join(METRIC_TYPES)}",
        }, 400

    if not user_id:
        return {"success": False, "error": "User ID is required"}, 400

    try:
        data = fetch_all_health_data(_get_store(), data_type, user_id)
    except Exception as e:
        logger.error(f"Error fetching {data_type} data for {user_id}: {e}")
        return {"success": False, "error": f"Failed to read data: {str(e)}"}, 500

    return {"success": True, "type": data_type, "data": data}, 200


@functions_framework.http
def processing_status(request: Request) -> Tuple[Dict[str, Any], int]:
    """Return a processing job document. Query parameters: userId, jobId."""
    if request.method == "OPTIONS":
        return {}, 204

    is_valid, error = validate_api_key(request)
    if not is_valid:
        logger.warning(f"API key validation failed: {error}")
        return {"success": False, "error": error}, 401

    user_id = request.args.get("userId", "")
    job_id = request.args.get("jobId", "")
    if not user_id or not job_id:
        return {"success": False, "error": "userId and jobId are required"}, 400

    try:
        job = _get_store().read_json(job_key(user_id, job_id))
    except BlobNotFoundError:
        return {"success": False, "error": "Job not found"}, 404

    return {"success": True, "job": job}, 200
