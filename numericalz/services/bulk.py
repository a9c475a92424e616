"""
Bulk operation coordinator.

Applies one operation to many targets. The batch is validated for size up
front; after that every target runs in its own transaction and ends up in
exactly one of ``successful`` or ``failed``. One aggregate activity entry is
written per batch.
"""
import uuid
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import NotFound, NumericalzError, PersistenceError, ValidationError
from ..models.models import (
    ActivityLog,
    Client,
    Communication,
    User,
    VATQuarter,
    VATWorkflowHistory,
    LtdAccountsWorkflow,
    LtdAccountsWorkflowHistory,
    NonLtdAccountsWorkflow,
    NonLtdAccountsWorkflowHistory,
)
from . import deadlines
from . import workflow_engine
from .activity import record_activity, ActivityTypes
from .assignment import assign_client
from .companies_house import refresh_client


logger = structlog.get_logger(__name__)


class BulkOperation(str, Enum):
    CREATE_VAT_QUARTERS = "create_vat_quarters"
    UPDATE_STAGE = "update_stage"
    ASSIGN = "assign"
    DELETE_CLIENTS = "delete_clients"
    REFRESH_COMPANIES_HOUSE = "refresh_companies_house"
    AUTO_CREATE_VAT_QUARTERS = "auto_create_vat_quarters"


_AGGREGATE_ACTIONS = {
    BulkOperation.CREATE_VAT_QUARTERS: ActivityTypes.BULK_VAT_QUARTERS_CREATED,
    BulkOperation.UPDATE_STAGE: ActivityTypes.BULK_STAGE_UPDATED,
    BulkOperation.ASSIGN: ActivityTypes.BULK_ASSIGNED,
    BulkOperation.DELETE_CLIENTS: ActivityTypes.BULK_CLIENT_DELETE,
    BulkOperation.REFRESH_COMPANIES_HOUSE: ActivityTypes.BULK_COMPANIES_HOUSE_REFRESH,
    BulkOperation.AUTO_CREATE_VAT_QUARTERS: ActivityTypes.VAT_QUARTERS_AUTO_CREATED,
}


@dataclass
class BulkResult:
    successful: List[Dict[str, Any]] = field(default_factory=list)
    failed: List[Dict[str, Any]] = field(default_factory=list)
    # Repeated input ids, collapsed onto their first occurrence
    duplicates: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "successful": self.successful,
            "failed": self.failed,
            "summary": {
                "total": len(self.successful) + len(self.failed),
                "succeeded": len(self.successful),
                "failed": len(self.failed),
                "duplicates": self.duplicates,
            },
        }


def validate_targets(target_ids, max_items: Optional[int] = None) -> List[str]:
    """Reject empty or oversized batches. Duplicates collapse to their first occurrence."""
    max_items = max_items or settings.bulk_max_items
    if not target_ids:
        raise ValidationError("No target ids provided")
    ids: List[str] = []
    seen = set()
    for raw in target_ids:
        key = str(raw)
        if key not in seen:
            seen.add(key)
            ids.append(key)
    if len(ids) > max_items:
        raise ValidationError(
            f"Maximum {max_items} items allowed per bulk operation",
            detail={"requested": len(ids), "max_items": max_items},
        )
    return ids


def _load_client(db: Session, client_id: str) -> Client:
    try:
        cid = uuid.UUID(client_id)
    except ValueError:
        raise NotFound("Client not found", detail={"client_id": client_id}) from None
    client = db.get(Client, cid)
    if not client:
        raise NotFound("Client not found", detail={"client_id": client_id})
    return client


# ---------------- Per-item handlers ----------------

def _create_vat_quarter(db: Session, target_id: str, actor: Optional[User], params: Dict[str, Any]) -> Dict[str, Any]:
    client = _load_client(db, target_id)
    quarter = workflow_engine.create_vat_quarter(
        db,
        client,
        reference_date=params.get("reference_date"),
        acting_user=actor,
        assigned_user_id=params.get("assigned_user_id"),
        log_activity=False,
    )
    return {"id": target_id, "vat_quarter_id": str(quarter.id), "quarter_period": quarter.quarter_period}


def _update_stage(db: Session, target_id: str, actor: Optional[User], params: Dict[str, Any]) -> Dict[str, Any]:
    workflow = workflow_engine.advance_stage(
        db,
        params.get("workflow_type"),
        target_id,
        params.get("stage"),
        actor,
        notes=params.get("notes"),
        log_activity=False,
    )
    return {"id": target_id, "client_id": str(workflow.client_id), "current_stage": workflow.current_stage}


def _assign(db: Session, target_id: str, actor: Optional[User], params: Dict[str, Any]) -> Dict[str, Any]:
    user_id = params.get("user_id")
    if params.get("workflow_type"):
        workflow = workflow_engine.assign_workflow(db, params["workflow_type"], target_id, user_id, actor, log_activity=False)
        return {"id": target_id, "client_id": str(workflow.client_id), "assigned_user_id": str(user_id) if user_id else None}
    client = _load_client(db, target_id)
    assign_client(db, client, params.get("category") or "general", user_id, actor, log_activity=False)
    return {"id": target_id, "assigned_user_id": str(user_id) if user_id else None}


def delete_client_cascade(db: Session, client_id: str) -> Dict[str, Any]:
    """Hard-delete a client and everything hanging off it, in one transaction."""
    client = _load_client(db, client_id)
    cid = client.id
    name = client.company_name
    code = client.client_code

    vat_ids = select(VATQuarter.id).where(VATQuarter.client_id == cid)
    ltd_ids = select(LtdAccountsWorkflow.id).where(LtdAccountsWorkflow.client_id == cid)
    non_ltd_ids = select(NonLtdAccountsWorkflow.id).where(NonLtdAccountsWorkflow.client_id == cid)
    try:
        db.query(VATWorkflowHistory).filter(VATWorkflowHistory.vat_quarter_id.in_(vat_ids)).delete(synchronize_session=False)
        db.query(VATQuarter).filter(VATQuarter.client_id == cid).delete(synchronize_session=False)
        db.query(LtdAccountsWorkflowHistory).filter(
            LtdAccountsWorkflowHistory.ltd_accounts_workflow_id.in_(ltd_ids)
        ).delete(synchronize_session=False)
        db.query(LtdAccountsWorkflow).filter(LtdAccountsWorkflow.client_id == cid).delete(synchronize_session=False)
        db.query(NonLtdAccountsWorkflowHistory).filter(
            NonLtdAccountsWorkflowHistory.non_ltd_accounts_workflow_id.in_(non_ltd_ids)
        ).delete(synchronize_session=False)
        db.query(NonLtdAccountsWorkflow).filter(NonLtdAccountsWorkflow.client_id == cid).delete(synchronize_session=False)
        db.query(ActivityLog).filter(ActivityLog.client_id == cid).delete(synchronize_session=False)
        db.query(Communication).filter(Communication.client_id == cid).delete(synchronize_session=False)
        db.query(Client).filter(Client.id == cid).delete(synchronize_session=False)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("client_delete_failed", client_id=client_id, error=str(e))
        raise PersistenceError("Transaction failed and was rolled back", detail={"client_id": client_id}) from e
    return {"id": client_id, "client_code": code, "company_name": name}


def _delete_client(db: Session, target_id: str, actor: Optional[User], params: Dict[str, Any]) -> Dict[str, Any]:
    return delete_client_cascade(db, target_id)


def _refresh_companies_house(db: Session, target_id: str, actor: Optional[User], params: Dict[str, Any]) -> Dict[str, Any]:
    client = _load_client(db, target_id)
    refresh_client(db, client, params["registry"], acting_user=actor, log_activity=False)
    return {
        "id": target_id,
        "company_number": client.company_number,
        "next_accounts_due": client.next_accounts_due.isoformat() if client.next_accounts_due else None,
    }


def _auto_create_vat_quarter(db: Session, target_id: str, actor: Optional[User], params: Dict[str, Any]) -> Dict[str, Any]:
    client = _load_client(db, target_id)
    info = workflow_engine.vat_quarter_due(db, client, params.get("today"))
    if info is None:
        raise ValidationError("No VAT quarter due", detail={"client_id": target_id})
    assignee = workflow_engine.last_vat_assignee(db, client)
    quarter = workflow_engine.create_vat_quarter(
        db,
        client,
        reference_date=info.quarter_end_date,
        acting_user=actor,
        assigned_user_id=assignee,
        log_activity=False,
    )
    return {
        "id": target_id,
        "vat_quarter_id": str(quarter.id),
        "quarter_period": quarter.quarter_period,
        "assigned_user_id": str(assignee) if assignee else None,
    }


_HANDLERS: Dict[BulkOperation, Callable[..., Dict[str, Any]]] = {
    BulkOperation.CREATE_VAT_QUARTERS: _create_vat_quarter,
    BulkOperation.UPDATE_STAGE: _update_stage,
    BulkOperation.ASSIGN: _assign,
    BulkOperation.DELETE_CLIENTS: _delete_client,
    BulkOperation.REFRESH_COMPANIES_HOUSE: _refresh_companies_house,
    BulkOperation.AUTO_CREATE_VAT_QUARTERS: _auto_create_vat_quarter,
}


def coerce_operation(operation) -> BulkOperation:
    try:
        return BulkOperation(operation)
    except ValueError:
        raise ValidationError(f"Unknown bulk operation: {operation!r}") from None


def process_item(db: Session, operation, target_id: str, actor: Optional[User], params: Dict[str, Any]):
    """
    Run one target. Returns ``(True, result)`` or ``(False, {"id", "error"})``.

    Every error is captured so one target can never abort the batch.
    """
    op = coerce_operation(operation)
    try:
        return True, _HANDLERS[op](db, target_id, actor, params)
    except NumericalzError as e:
        db.rollback()
        logger.warning("bulk_item_failed", operation=op.value, target_id=target_id, error=e.message)
        return False, {"id": target_id, "error": e.message}
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("bulk_item_db_error", operation=op.value, target_id=target_id, error=str(e))
        return False, {"id": target_id, "error": "Database error"}
    except Exception:
        db.rollback()
        logger.exception("bulk_item_unexpected_error", operation=op.value, target_id=target_id)
        return False, {"id": target_id, "error": "Unexpected error"}


def record_batch(db: Session, operation, actor: Optional[User], result: BulkResult, params: Optional[Dict[str, Any]] = None) -> None:
    op = coerce_operation(operation)
    if not result.successful:
        return
    details = {
        "operation": op.value,
        "total": len(result.successful) + len(result.failed),
        "succeeded": len(result.successful),
        "failed": len(result.failed),
        "target_ids": [item["id"] for item in result.successful],
    }
    for key in ("workflow_type", "stage", "category", "user_id"):
        if params and params.get(key) is not None:
            details[key] = str(params[key])
    if op is BulkOperation.DELETE_CLIENTS:
        details["deleted_clients"] = [
            {"client_code": item.get("client_code"), "company_name": item.get("company_name")} for item in result.successful
        ]
    record_activity(db, actor.id if actor else None, _AGGREGATE_ACTIONS[op], details=details)


def run_bulk(db: Session, target_ids, operation, actor: Optional[User], **params) -> BulkResult:
    """
    Apply ``operation`` to every target id.

    Raises ValidationError only for an empty or oversized batch, before any
    target is touched. Per-target failures are returned in ``failed``.
    """
    op = coerce_operation(operation)
    target_ids = list(target_ids or [])
    ids = validate_targets(target_ids)
    if isinstance(params.get("reference_date"), str):
        try:
            params["reference_date"] = date.fromisoformat(params["reference_date"])
        except ValueError:
            raise ValidationError("reference_date must be YYYY-MM-DD", detail={"reference_date": params["reference_date"]}) from None

    result = BulkResult(duplicates=len(target_ids) - len(ids))
    for target_id in ids:
        ok, payload = process_item(db, op, target_id, actor, params)
        (result.successful if ok else result.failed).append(payload)

    logger.info(
        "bulk_operation_completed",
        operation=op.value,
        total=len(ids),
        succeeded=len(result.successful),
        failed=len(result.failed),
        duplicates=result.duplicates,
    )
    record_batch(db, op, actor, result, params)
    return result


def clients_due_vat_quarter(db: Session, today: Optional[date] = None) -> List[str]:
    """Ids of active VAT clients whose next quarter has ended and is not yet opened."""
    clients = (
        db.query(Client)
        .filter(
            Client.is_active == True,  # noqa: E712
            Client.is_vat_enabled == True,  # noqa: E712
            Client.vat_quarter_group.isnot(None),
        )
        .order_by(Client.client_code.asc())
        .all()
    )
    due = []
    for client in clients:
        try:
            if workflow_engine.vat_quarter_due(db, client, today) is None:
                continue
        except NumericalzError as e:
            # Kept in the batch so the failure is reported against the client
            logger.warning("vat_quarter_due_check_failed", client_id=str(client.id), error=e.message)
        due.append(str(client.id))
    return due


def auto_create_vat_quarters(db: Session, today: Optional[date] = None, actor: Optional[User] = None) -> BulkResult:
    """
    Open the next VAT quarter for every client whose current one has ended.

    New quarters inherit the assignee of the client's last assigned quarter.
    Runs in batches of ``bulk_max_items``; one aggregate entry per batch.
    """
    today = today or deadlines.today_london()
    ids = clients_due_vat_quarter(db, today)
    result = BulkResult()
    if not ids:
        logger.info("vat_quarters_auto_create_nothing_due", today=today.isoformat())
        return result
    step = settings.bulk_max_items
    for start in range(0, len(ids), step):
        chunk = run_bulk(db, ids[start:start + step], BulkOperation.AUTO_CREATE_VAT_QUARTERS, actor, today=today)
        result.successful.extend(chunk.successful)
        result.failed.extend(chunk.failed)
    logger.info(
        "vat_quarters_auto_created",
        today=today.isoformat(),
        created=len(result.successful),
        failed=len(result.failed),
    )
    return result
