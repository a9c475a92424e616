from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth.security import get_current_user, require_roles
from ..db import get_db
from ..models.models import User
from ..schemas.workflows import (
    StageAdvanceRequest, WorkflowAssignRequest,
    VATQuarterCreate, LtdWorkflowCreate, NonLtdWorkflowCreate,
    StageModelResponse, StageInfo,
)
from ..services import stages, workflow_engine
from ..services.stages import WorkflowType
from .clients import _get_client


router = APIRouter(prefix="/workflows", tags=["workflows"])


def _json(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if value is not None and not isinstance(value, (str, int, float, bool)):
        return str(value)
    return value


def serialize_workflow(workflow_type, workflow) -> dict:
    wtype = stages.coerce_workflow_type(workflow_type)
    data = {col.name: _json(getattr(workflow, col.name)) for col in workflow.__table__.columns}
    data.update({
        "workflow_type": wtype.value,
        "stage_name": stages.display_name(wtype, workflow.current_stage),
        "progress": stages.progress_percent(wtype, workflow.current_stage),
        "allowed_next_stages": stages.allowed_next_stages(wtype, workflow.current_stage),
    })
    return data


def serialize_history(row) -> dict:
    return {
        "id": str(row.id),
        "from_stage": row.from_stage,
        "to_stage": row.to_stage,
        "stage_changed_at": row.stage_changed_at.isoformat() if row.stage_changed_at else None,
        "days_in_previous_stage": row.days_in_previous_stage,
        "user_id": str(row.user_id) if row.user_id else None,
        "user_name": row.user_name,
        "user_email": row.user_email,
        "user_role": row.user_role,
        "notes": row.notes,
    }


# ---------------- Stage metadata ----------------

@router.get("/stages/{workflow_type}", response_model=StageModelResponse)
def stage_model(workflow_type: str, _: User = Depends(get_current_user)):
    wtype = stages.coerce_workflow_type(workflow_type)
    return StageModelResponse(
        workflow_type=wtype.value,
        stages=[
            StageInfo(
                stage=s,
                name=stages.display_name(wtype, s),
                progress=stages.progress_percent(wtype, s),
                is_terminal=stages.is_terminal(wtype, s),
            )
            for s in stages.stage_order(wtype)
        ],
    )


@router.get("/stages/{workflow_type}/validate")
def validate_transition(workflow_type: str, from_stage: Optional[str] = None, to_stage: str = "", _: User = Depends(get_current_user)):
    return stages.validate_stage_transition(workflow_type, from_stage, to_stage)


# ---------------- Creation ----------------

@router.post("/clients/{client_id}/vat-quarters")
def create_vat_quarter(
    client_id: str,
    payload: VATQuarterCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    client = _get_client(db, client_id)
    quarter = workflow_engine.create_vat_quarter(
        db, client, reference_date=payload.reference_date, acting_user=user, assigned_user_id=payload.assigned_user_id
    )
    return serialize_workflow(WorkflowType.VAT, quarter)


@router.post("/clients/{client_id}/ltd")
def create_ltd_workflow(
    client_id: str,
    payload: LtdWorkflowCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    client = _get_client(db, client_id)
    workflow = workflow_engine.create_ltd_workflow(db, client, acting_user=user, assigned_user_id=payload.assigned_user_id)
    return serialize_workflow(WorkflowType.LTD, workflow)


@router.post("/clients/{client_id}/non-ltd")
def create_non_ltd_workflow(
    client_id: str,
    payload: NonLtdWorkflowCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    client = _get_client(db, client_id)
    workflow = workflow_engine.create_non_ltd_workflow(
        db, client, year=payload.year, acting_user=user, assigned_user_id=payload.assigned_user_id
    )
    return serialize_workflow(WorkflowType.NON_LTD, workflow)


@router.get("/clients/{client_id}")
def client_workflows(client_id: str, db: Session = Depends(get_db), _: User = Depends(get_current_user)):
    client = _get_client(db, client_id)
    return {
        "vat_quarters": [serialize_workflow(WorkflowType.VAT, w) for w in client.vat_quarters],
        "ltd": [serialize_workflow(WorkflowType.LTD, w) for w in client.ltd_workflows],
        "non_ltd": [serialize_workflow(WorkflowType.NON_LTD, w) for w in client.non_ltd_workflows],
    }


# ---------------- Maintenance ----------------

@router.get("/milestone-drift")
def milestone_drift(
    workflow_type: Optional[str] = None,
    db: Session = Depends(get_db),
    _: User = Depends(require_roles("MANAGER", "PARTNER")),
):
    types = [workflow_type] if workflow_type else None
    return workflow_engine.scan_milestone_drift(db, types)


# ---------------- Single workflow ----------------

@router.get("/{workflow_type}/{workflow_id}")
def get_workflow(workflow_type: str, workflow_id: str, db: Session = Depends(get_db), _: User = Depends(get_current_user)):
    return serialize_workflow(workflow_type, workflow_engine.get_workflow(db, workflow_type, workflow_id))


@router.put("/{workflow_type}/{workflow_id}/stage")
def advance_stage(
    workflow_type: str,
    workflow_id: str,
    payload: StageAdvanceRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    workflow = workflow_engine.advance_stage(
        db,
        workflow_type,
        workflow_id,
        payload.stage,
        user,
        notes=payload.notes,
        expected_stage=payload.expected_stage,
    )
    return serialize_workflow(workflow_type, workflow)


@router.put("/{workflow_type}/{workflow_id}/assignment")
def assign_workflow(
    workflow_type: str,
    workflow_id: str,
    payload: WorkflowAssignRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    workflow = workflow_engine.assign_workflow(db, workflow_type, workflow_id, payload.user_id, user)
    return serialize_workflow(workflow_type, workflow)


@router.get("/{workflow_type}/{workflow_id}/history")
def workflow_history(workflow_type: str, workflow_id: str, db: Session = Depends(get_db), _: User = Depends(get_current_user)):
    return [serialize_history(row) for row in workflow_engine.get_history(db, workflow_type, workflow_id)]
