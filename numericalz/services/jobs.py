"""
Durable bulk job records.

Long-running bulk operations (Companies House refresh of many clients) run in
a background task and report progress through a BulkJob row:
pending -> processing -> completed | failed. Rows expire after
``settings.bulk_job_ttl_seconds``.
"""
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import structlog
from sqlalchemy.orm import Session

from ..config import settings
from ..db import SessionLocal
from ..errors import NotFound
from ..models.models import BulkJob, User
from . import bulk


logger = structlog.get_logger(__name__)

JOB_PENDING = "pending"
JOB_PROCESSING = "processing"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"


def create_job(db: Session, job_type: str, target_ids: List[str], created_by: Optional[uuid.UUID] = None) -> BulkJob:
    now = datetime.utcnow()
    job = BulkJob(
        job_type=job_type,
        status=JOB_PENDING,
        total=len(target_ids),
        processed=0,
        succeeded=0,
        failed=0,
        target_ids=list(target_ids),
        results={"successful": [], "failed": []},
        created_by=created_by,
        created_at=now,
        expires_at=now + timedelta(seconds=settings.bulk_job_ttl_seconds),
    )
    db.add(job)
    db.commit()
    db.refresh(job)
    logger.info("bulk_job_created", job_id=str(job.id), job_type=job_type, total=job.total)
    return job


def get_job(db: Session, job_id) -> BulkJob:
    try:
        jid = uuid.UUID(str(job_id))
    except ValueError:
        raise NotFound("Job not found", detail={"job_id": str(job_id)}) from None
    job = db.get(BulkJob, jid)
    if not job or job.expires_at.replace(tzinfo=None) < datetime.utcnow():
        raise NotFound("Job not found", detail={"job_id": str(job_id)})
    return job


def mark_processing(db: Session, job: BulkJob) -> BulkJob:
    job.status = JOB_PROCESSING
    job.started_at = datetime.utcnow()
    db.commit()
    return job


def record_progress(db: Session, job: BulkJob, ok: bool, payload: Dict[str, Any]) -> BulkJob:
    # JSON columns need a new object to register as changed
    results = {
        "successful": list((job.results or {}).get("successful", [])),
        "failed": list((job.results or {}).get("failed", [])),
    }
    if ok:
        results["successful"].append(payload)
        job.succeeded = (job.succeeded or 0) + 1
    else:
        results["failed"].append(payload)
        job.failed = (job.failed or 0) + 1
    job.results = results
    job.processed = (job.processed or 0) + 1
    db.commit()
    return job


def complete_job(db: Session, job: BulkJob) -> BulkJob:
    job.status = JOB_COMPLETED
    job.completed_at = datetime.utcnow()
    db.commit()
    logger.info("bulk_job_completed", job_id=str(job.id), succeeded=job.succeeded, failed=job.failed)
    return job


def fail_job(db: Session, job: BulkJob, error: str) -> BulkJob:
    job.status = JOB_FAILED
    job.error = error
    job.completed_at = datetime.utcnow()
    db.commit()
    logger.error("bulk_job_failed", job_id=str(job.id), error=error)
    return job


def job_progress(job: BulkJob) -> int:
    if not job.total:
        return 100 if job.status == JOB_COMPLETED else 0
    return round(100 * (job.processed or 0) / job.total)


def serialize_job(job: BulkJob) -> Dict[str, Any]:
    return {
        "id": str(job.id),
        "job_type": job.job_type,
        "status": job.status,
        "total": job.total,
        "processed": job.processed,
        "succeeded": job.succeeded,
        "failed": job.failed,
        "progress": job_progress(job),
        "results": job.results if job.status in (JOB_COMPLETED, JOB_FAILED) else None,
        "error": job.error,
        "created_at": job.created_at.isoformat() if job.created_at else None,
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
        "expires_at": job.expires_at.isoformat() if job.expires_at else None,
    }


def cleanup_expired_jobs(db: Session, now: Optional[datetime] = None) -> int:
    now = now or datetime.utcnow()
    deleted = db.query(BulkJob).filter(BulkJob.expires_at < now).delete(synchronize_session=False)
    db.commit()
    if deleted:
        logger.info("bulk_jobs_expired", deleted=deleted)
    return deleted


def run_job(
    job_id,
    operation,
    actor_id=None,
    params: Optional[Dict[str, Any]] = None,
    session_factory: Callable[[], Session] = SessionLocal,
) -> None:
    """
    Background task body. Opens its own session, processes every target with
    per-item isolation and records progress on the job row as it goes.
    """
    params = params or {}
    db = session_factory()
    try:
        job = get_job(db, job_id)
        actor = db.get(User, actor_id) if actor_id else None
        mark_processing(db, job)
        result = bulk.BulkResult()
        try:
            for target_id in job.target_ids or []:
                ok, payload = bulk.process_item(db, operation, target_id, actor, params)
                (result.successful if ok else result.failed).append(payload)
                record_progress(db, job, ok, payload)
        except Exception as e:
            db.rollback()
            fail_job(db, job, str(e))
            raise
        complete_job(db, job)
        bulk.record_batch(db, operation, actor, result, params)
    finally:
        db.close()
