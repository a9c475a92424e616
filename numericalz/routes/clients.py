import uuid
from datetime import datetime
from typing import Optional, List

import structlog
from fastapi import APIRouter, Depends, Query
from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..auth.security import get_current_user
from ..db import get_db
from ..errors import NotFound, ValidationError, DeadlineUnresolvable
from ..models.models import Client, User
from ..schemas.clients import (
    COMPANY_TYPES,
    ClientCreate, ClientUpdate, ClientResponse,
    ClientAssignRequest, DeadlinesResponse,
)
from ..services import assignment, deadlines
from ..services.activity import record_activity, get_activity_logs, ActivityTypes
from ..services.companies_house import CompaniesHouseClient, get_registry, refresh_client
from .activity import serialize_entry


router = APIRouter(prefix="/clients", tags=["clients"])
logger = structlog.get_logger(__name__)

CLIENT_CODE_PREFIX = "NZ-"


def _get_client(db: Session, client_id: str) -> Client:
    try:
        cid = uuid.UUID(str(client_id))
    except ValueError:
        raise NotFound("Client not found", detail={"client_id": client_id}) from None
    client = db.get(Client, cid)
    if not client:
        raise NotFound("Client not found", detail={"client_id": client_id})
    return client


def next_client_code(db: Session) -> str:
    """Next sequential NZ-<n> code; non-numeric suffixes are ignored."""
    existing = db.query(Client.client_code).filter(Client.client_code.like(f"{CLIENT_CODE_PREFIX}%")).all()
    numbers = []
    for (code,) in existing:
        suffix = code[len(CLIENT_CODE_PREFIX):]
        if suffix.isdigit():
            numbers.append(int(suffix))
    return f"{CLIENT_CODE_PREFIX}{max(numbers, default=0) + 1}"


def _check_reference_date(day, month) -> None:
    if day is None and month is None:
        return
    if deadlines.parse_accounting_reference_date({"day": day, "month": month}) is None:
        raise ValidationError(
            "Invalid accounting reference date",
            detail={"accounting_reference_day": day, "accounting_reference_month": month},
        )


def _check_quarter_group(data: dict) -> None:
    if data.get("vat_quarter_group"):
        data["vat_quarter_group"] = deadlines.normalize_quarter_group(data["vat_quarter_group"])


@router.post("", response_model=ClientResponse)
def create_client(
    payload: ClientCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    data = payload.model_dump(exclude_unset=True)
    data = {k: v for k, v in data.items() if v is not None}
    _check_reference_date(data.get("accounting_reference_day"), data.get("accounting_reference_month"))
    _check_quarter_group(data)

    if data.get("client_code"):
        if db.query(Client).filter(Client.client_code == data["client_code"]).first():
            raise ValidationError("Client code already in use", detail={"client_code": data["client_code"]})
    else:
        data["client_code"] = next_client_code(db)

    client = Client(**data)
    db.add(client)
    db.commit()
    db.refresh(client)

    logger.info("client_created", client_id=str(client.id), client_code=client.client_code)
    record_activity(
        db,
        user.id,
        ActivityTypes.CLIENT_CREATED,
        client_id=client.id,
        details={"client_code": client.client_code, "company_name": client.company_name},
    )
    return client


@router.get("", response_model=List[ClientResponse])
def list_clients(
    q: Optional[str] = None,
    company_type: Optional[str] = None,
    include_inactive: bool = False,
    assigned_to: Optional[str] = Query(default=None, description="User id, or 'unassigned'"),
    category: str = "general",
    limit: int = Query(default=200, le=1000),
    offset: int = 0,
    db: Session = Depends(get_db),
    _: User = Depends(get_current_user),
):
    query = db.query(Client)
    if not include_inactive:
        query = query.filter(Client.is_active == True)  # noqa: E712
    if company_type:
        if company_type.upper() not in COMPANY_TYPES:
            raise ValidationError("Unknown company type", detail={"company_type": company_type})
        query = query.filter(Client.company_type == company_type.upper())
    if q:
        like = f"%{q.strip()}%"
        query = query.filter(or_(
            Client.company_name.ilike(like),
            Client.client_code.ilike(like),
            Client.company_number.ilike(like),
        ))
    clients = query.order_by(Client.company_name.asc()).all()

    if assigned_to:
        user_id = None if assigned_to == "unassigned" else assigned_to
        try:
            clients = assignment.filter_clients_by_assignee(db, clients, category, user_id)
        except ValueError:
            raise ValidationError("assigned_to must be a user id or 'unassigned'") from None
    return clients[offset:offset + limit]


@router.get("/{client_id}", response_model=ClientResponse)
def get_client(client_id: str, db: Session = Depends(get_db), _: User = Depends(get_current_user)):
    return _get_client(db, client_id)


@router.patch("/{client_id}", response_model=ClientResponse)
def update_client(
    client_id: str,
    payload: ClientUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    client = _get_client(db, client_id)
    data = payload.model_dump(exclude_unset=True)
    if "company_type" in data and data["company_type"] is not None:
        data["company_type"] = data["company_type"].strip().upper()
        if data["company_type"] not in COMPANY_TYPES:
            raise ValidationError("Unknown company type", detail={"company_type": data["company_type"]})
    if "company_name" in data and not (data["company_name"] or "").strip():
        raise ValidationError("Company name is required")
    _check_reference_date(
        data.get("accounting_reference_day", client.accounting_reference_day),
        data.get("accounting_reference_month", client.accounting_reference_month),
    )
    _check_quarter_group(data)

    for k, v in data.items():
        setattr(client, k, v)
    client.updated_at = datetime.utcnow()
    db.commit()
    db.refresh(client)

    record_activity(
        db,
        user.id,
        ActivityTypes.CLIENT_UPDATED,
        client_id=client.id,
        details={"fields": sorted(data.keys())},
    )
    return client


@router.delete("/{client_id}")
def deactivate_client(client_id: str, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    """Soft delete. Hard deletes go through the bulk endpoint."""
    client = _get_client(db, client_id)
    client.is_active = False
    db.commit()
    record_activity(
        db,
        user.id,
        ActivityTypes.CLIENT_DELETED,
        client_id=client.id,
        details={"client_code": client.client_code, "company_name": client.company_name, "soft": True},
    )
    return {"status": "ok"}


@router.put("/{client_id}/assignment", response_model=ClientResponse)
def update_assignment(
    client_id: str,
    payload: ClientAssignRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    client = _get_client(db, client_id)
    return assignment.assign_client(db, client, payload.category, payload.user_id, user)


@router.get("/{client_id}/assignment")
def get_assignment(client_id: str, db: Session = Depends(get_db), _: User = Depends(get_current_user)):
    client = _get_client(db, client_id)
    out = {}
    for category in assignment.CATEGORIES:
        owner = assignment.effective_assignee(db, client, category)
        out[category] = str(owner) if owner else None
    return out


@router.get("/{client_id}/deadlines", response_model=DeadlinesResponse)
def get_deadlines(client_id: str, db: Session = Depends(get_db), _: User = Depends(get_current_user)):
    client = _get_client(db, client_id)
    warnings = []
    try:
        year = deadlines.resolve_accounting_reference_year(client)
    except DeadlineUnresolvable as e:
        year = None
        warnings.append(e.message)
    dates = deadlines.calculate_all_statutory_dates(client)

    vat = None
    if client.is_vat_enabled and client.vat_quarter_group:
        try:
            info = deadlines.calculate_vat_quarter(client.vat_quarter_group)
            vat = info._asdict()
        except ValidationError as e:
            warnings.append(e.message)
    return DeadlinesResponse(client_id=str(client.id), accounting_reference_year=year, vat_quarter=vat, warnings=warnings, **dates)


@router.post("/{client_id}/refresh-companies-house", response_model=ClientResponse)
def refresh_companies_house(
    client_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    registry: CompaniesHouseClient = Depends(get_registry),
):
    client = _get_client(db, client_id)
    return refresh_client(db, client, registry, acting_user=user)


@router.get("/{client_id}/activity")
def client_activity(
    client_id: str,
    limit: int = Query(default=100, le=500),
    offset: int = 0,
    db: Session = Depends(get_db),
    _: User = Depends(get_current_user),
):
    client = _get_client(db, client_id)
    return [serialize_entry(e) for e in get_activity_logs(db, client_id=client.id, limit=limit, offset=offset)]
