from fastapi import APIRouter, BackgroundTasks, Depends
from sqlalchemy.orm import Session

from ..auth.security import require_roles
from ..config import settings
from ..db import get_db, get_session_factory
from ..models.models import User
from ..schemas.bulk import (
    BulkCreateVATQuarters, BulkUpdateStage, BulkAssign, BulkDeleteClients, BulkRefresh,
)
from ..services import bulk, jobs
from ..services.bulk import BulkOperation
from ..services.companies_house import CompaniesHouseClient, get_registry


router = APIRouter(prefix="/bulk", tags=["bulk"])

# Bulk changes are limited to managers and partners; ADMIN always passes
bulk_user = require_roles("MANAGER", "PARTNER")


@router.post("/vat-quarters")
def bulk_create_vat_quarters(payload: BulkCreateVATQuarters, db: Session = Depends(get_db), user: User = Depends(bulk_user)):
    result = bulk.run_bulk(
        db,
        payload.ids,
        BulkOperation.CREATE_VAT_QUARTERS,
        user,
        reference_date=payload.reference_date,
        assigned_user_id=payload.assigned_user_id,
    )
    return result.to_dict()


@router.post("/stage")
def bulk_update_stage(payload: BulkUpdateStage, db: Session = Depends(get_db), user: User = Depends(bulk_user)):
    result = bulk.run_bulk(
        db,
        payload.ids,
        BulkOperation.UPDATE_STAGE,
        user,
        workflow_type=payload.workflow_type,
        stage=payload.stage,
        notes=payload.notes,
    )
    return result.to_dict()


@router.post("/assign")
def bulk_assign(payload: BulkAssign, db: Session = Depends(get_db), user: User = Depends(bulk_user)):
    result = bulk.run_bulk(
        db,
        payload.ids,
        BulkOperation.ASSIGN,
        user,
        user_id=payload.user_id,
        workflow_type=payload.workflow_type,
        category=payload.category,
    )
    return result.to_dict()


@router.post("/delete-clients")
def bulk_delete_clients(payload: BulkDeleteClients, db: Session = Depends(get_db), user: User = Depends(bulk_user)):
    return bulk.run_bulk(db, payload.ids, BulkOperation.DELETE_CLIENTS, user).to_dict()


@router.post("/refresh-companies-house")
def bulk_refresh_companies_house(
    payload: BulkRefresh,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    user: User = Depends(bulk_user),
    registry: CompaniesHouseClient = Depends(get_registry),
    session_factory=Depends(get_session_factory),
):
    """
    Small batches run inline and return results. Larger ones run in the
    background; poll ``/bulk/jobs/{id}`` for progress.
    """
    ids = bulk.validate_targets(payload.ids)
    if len(ids) <= settings.bulk_refresh_inline_limit:
        return bulk.run_bulk(db, payload.ids, BulkOperation.REFRESH_COMPANIES_HOUSE, user, registry=registry).to_dict()

    jobs.cleanup_expired_jobs(db)
    job = jobs.create_job(db, BulkOperation.REFRESH_COMPANIES_HOUSE.value, ids, created_by=user.id)
    background_tasks.add_task(
        jobs.run_job,
        job.id,
        BulkOperation.REFRESH_COMPANIES_HOUSE,
        actor_id=user.id,
        params={"registry": registry},
        session_factory=session_factory,
    )
    return {"job_id": str(job.id), "status": job.status, "total": job.total, "duplicates": len(payload.ids) - len(ids)}


@router.get("/jobs/{job_id}")
def get_job_status(job_id: str, db: Session = Depends(get_db), _: User = Depends(bulk_user)):
    return jobs.serialize_job(jobs.get_job(db, job_id))
