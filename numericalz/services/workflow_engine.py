"""
Workflow engine.

Moves VAT quarters and accounts workflows between stages. Every transition
updates the workflow, stamps first-time milestones and appends a history row
in one transaction. History is the source of truth; milestone columns are a
write-once cache of it.
"""
import uuid
from datetime import datetime, date, timedelta
from typing import Any, Dict, List, Optional, Tuple, Type

import structlog
from dateutil.relativedelta import relativedelta
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..errors import NotFound, PersistenceError, StageConflict, ValidationError, DeadlineUnresolvable
from ..models.models import (
    Client,
    User,
    VATQuarter,
    VATWorkflowHistory,
    LtdAccountsWorkflow,
    LtdAccountsWorkflowHistory,
    NonLtdAccountsWorkflow,
    NonLtdAccountsWorkflowHistory,
)
from . import deadlines
from . import stages
from .stages import WorkflowType
from .activity import record_activity, ActivityTypes
from . import users
from .users import actor_snapshot


logger = structlog.get_logger(__name__)


# workflow model, history model, history FK column
_TABLES: Dict[WorkflowType, Tuple[Type, Type, str]] = {
    WorkflowType.VAT: (VATQuarter, VATWorkflowHistory, "vat_quarter_id"),
    WorkflowType.LTD: (LtdAccountsWorkflow, LtdAccountsWorkflowHistory, "ltd_accounts_workflow_id"),
    WorkflowType.NON_LTD: (NonLtdAccountsWorkflow, NonLtdAccountsWorkflowHistory, "non_ltd_accounts_workflow_id"),
}

_STAGE_CHANGED_ACTIONS = {
    WorkflowType.VAT: ActivityTypes.VAT_WORKFLOW_STAGE_CHANGED,
    WorkflowType.LTD: ActivityTypes.LTD_WORKFLOW_STAGE_CHANGED,
    WorkflowType.NON_LTD: ActivityTypes.NON_LTD_WORKFLOW_STAGE_CHANGED,
}

_ASSIGNED_ACTIONS = {
    WorkflowType.VAT: ActivityTypes.VAT_QUARTER_ASSIGNED,
    WorkflowType.LTD: ActivityTypes.LTD_WORKFLOW_ASSIGNED,
    WorkflowType.NON_LTD: ActivityTypes.NON_LTD_WORKFLOW_ASSIGNED,
}


def workflow_model(workflow_type):
    return _TABLES[stages.coerce_workflow_type(workflow_type)][0]


def history_model(workflow_type):
    return _TABLES[stages.coerce_workflow_type(workflow_type)][1]


def _parse_id(value) -> Optional[uuid.UUID]:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


def get_workflow(db: Session, workflow_type, workflow_id):
    wtype = stages.coerce_workflow_type(workflow_type)
    model = _TABLES[wtype][0]
    wid = _parse_id(workflow_id)
    workflow = db.get(model, wid) if wid else None
    if not workflow:
        raise NotFound(f"{wtype.value} workflow not found", detail={"workflow_id": str(workflow_id)})
    return workflow


def _history_row(workflow_type: WorkflowType, workflow_id, from_stage, to_stage, snapshot, when, days_in_previous, notes):
    _, history_cls, fk = _TABLES[workflow_type]
    return history_cls(**{
        fk: workflow_id,
        "from_stage": from_stage,
        "to_stage": to_stage,
        "stage_changed_at": when,
        "days_in_previous_stage": days_in_previous,
        "user_id": snapshot["id"],
        "user_name": snapshot["name"],
        "user_email": snapshot["email"],
        "user_role": snapshot["role"],
        "notes": notes,
    })


def _latest_history(db: Session, workflow_type: WorkflowType, workflow_id):
    _, history_cls, fk = _TABLES[workflow_type]
    return (
        db.query(history_cls)
        .filter(getattr(history_cls, fk) == workflow_id)
        .order_by(history_cls.stage_changed_at.desc(), history_cls.created_at.desc())
        .first()
    )


def _days_in_previous_stage(db: Session, workflow_type: WorkflowType, workflow, now: datetime) -> Optional[int]:
    latest = _latest_history(db, workflow_type, workflow.id)
    entered = latest.stage_changed_at if latest else workflow.created_at
    if not entered:
        return None
    return max((now.date() - entered.date()).days, 0)


def _commit(db: Session, event: str, **context) -> None:
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(event, error=str(e), **context)
        raise PersistenceError("Transaction failed and was rolled back", detail={k: str(v) for k, v in context.items()}) from e


def advance_stage(
    db: Session,
    workflow_type,
    workflow_id,
    target_stage,
    acting_user: Optional[User],
    notes: Optional[str] = None,
    expected_stage: Optional[str] = None,
    log_activity: bool = True,
):
    """
    Move a workflow to ``target_stage``.

    Ordering is not enforced; regressions and repeats are recorded like any
    other transition. Milestones are stamped only the first time their stage
    is reached. Pass ``expected_stage`` to reject the move with StageConflict
    if another request changed the stage first.
    """
    wtype = stages.coerce_workflow_type(workflow_type)
    stage = stages.coerce_stage(wtype, target_stage)
    workflow = get_workflow(db, wtype, workflow_id)

    if expected_stage is not None and workflow.current_stage != expected_stage:
        raise StageConflict(
            "Workflow stage changed since it was read",
            detail={"expected_stage": expected_stage, "current_stage": workflow.current_stage},
        )

    now = datetime.utcnow()
    snapshot = actor_snapshot(acting_user)
    previous = workflow.current_stage
    days_in_previous = _days_in_previous_stage(db, wtype, workflow, now)

    workflow.current_stage = stage
    workflow.is_completed = stages.is_terminal(wtype, stage)
    workflow.updated_at = now

    milestone = stages.milestone_for(wtype, stage)
    stamped = False
    if milestone and getattr(workflow, f"{milestone}_date") is None:
        setattr(workflow, f"{milestone}_date", now)
        setattr(workflow, f"{milestone}_by_user_id", snapshot["id"])
        setattr(workflow, f"{milestone}_by_user_name", snapshot["name"])
        stamped = True

    db.add(_history_row(wtype, workflow.id, previous, stage, snapshot, now, days_in_previous, notes))
    successor = None
    if wtype is WorkflowType.LTD and stage == "FILED_TO_HMRC" and stamped:
        successor = _roll_over_ltd(db, workflow, snapshot, now)
    _commit(db, "workflow_stage_commit_failed", workflow_type=wtype.value, workflow_id=workflow.id)
    db.refresh(workflow)

    logger.info(
        "workflow_stage_changed",
        workflow_type=wtype.value,
        workflow_id=str(workflow.id),
        from_stage=previous,
        to_stage=stage,
        milestone=milestone if stamped else None,
    )
    if log_activity:
        record_activity(
            db,
            snapshot["id"],
            _STAGE_CHANGED_ACTIONS[wtype],
            client_id=workflow.client_id,
            details={
                "workflow_id": str(workflow.id),
                "from_stage": previous,
                "to_stage": stage,
                "to_stage_name": stages.display_name(wtype, stage),
                "notes": notes,
            },
        )
    if successor is not None:
        logger.info(
            "ltd_workflow_rolled_over",
            workflow_id=str(workflow.id),
            next_workflow_id=str(successor.id),
            filing_period_end=successor.filing_period_end.isoformat(),
        )
        if log_activity:
            record_activity(
                db,
                snapshot["id"],
                ActivityTypes.LTD_WORKFLOW_CREATED,
                client_id=workflow.client_id,
                details={
                    "workflow_id": str(successor.id),
                    "previous_workflow_id": str(workflow.id),
                    "filing_period_end": successor.filing_period_end.isoformat(),
                    "accounts_due_date": successor.accounts_due_date.isoformat(),
                },
            )
    return workflow


ROLLOVER_NOTE = "New workflow created automatically after completing previous year filing"


def _roll_over_ltd(db: Session, workflow: LtdAccountsWorkflow, snapshot, now: datetime) -> Optional[LtdAccountsWorkflow]:
    """
    Stage next year's Ltd workflow once a year is filed.

    Runs inside the filing transaction. The client's accounts dates move on a
    year; the new workflow starts unassigned. Returns None when a workflow for
    the next period already exists.
    """
    client = db.get(Client, workflow.client_id)
    start = workflow.filing_period_end + timedelta(days=1)
    end = workflow.filing_period_end + relativedelta(years=1)
    existing = (
        db.query(LtdAccountsWorkflow)
        .filter(LtdAccountsWorkflow.client_id == workflow.client_id, LtdAccountsWorkflow.filing_period_end == end)
        .first()
    )
    if existing:
        return None

    if client is not None:
        client.last_accounts_made_up_to = workflow.filing_period_end
        client.next_year_end = end
        client.next_accounts_due = deadlines.accounts_due_from_year_end(end)
        client.next_corporation_tax_due = deadlines.corporation_tax_due_from_year_end(end)

    successor = LtdAccountsWorkflow(
        id=uuid.uuid4(),
        client_id=workflow.client_id,
        filing_period_start=start,
        filing_period_end=end,
        accounts_due_date=deadlines.accounts_due_from_year_end(end),
        ct_due_date=deadlines.corporation_tax_due_from_year_end(end),
        cs_due_date=deadlines.calculate_confirmation_statement_due(client) if client is not None else None,
        current_stage=stages.initial_stage(WorkflowType.LTD),
        is_completed=False,
        created_at=now,
    )
    db.add(successor)
    db.add(_history_row(WorkflowType.LTD, successor.id, None, successor.current_stage, snapshot, now, None, ROLLOVER_NOTE))
    return successor


def assign_workflow(db: Session, workflow_type, workflow_id, user_id, acting_user: Optional[User], log_activity: bool = True):
    """Set or clear the workflow-level assignee."""
    wtype = stages.coerce_workflow_type(workflow_type)
    workflow = get_workflow(db, wtype, workflow_id)
    assignee_name = None
    if user_id is not None:
        user_id = users.require_assignee(db, user_id).id
        assignee_name = users.display_name(db, user_id)
    previous = workflow.assigned_user_id
    workflow.assigned_user_id = user_id
    _commit(db, "workflow_assign_commit_failed", workflow_type=wtype.value, workflow_id=workflow.id)
    db.refresh(workflow)

    snapshot = actor_snapshot(acting_user)
    action = _ASSIGNED_ACTIONS[wtype]
    if wtype is WorkflowType.VAT and user_id is None:
        action = ActivityTypes.VAT_QUARTER_UNASSIGNED
    if log_activity:
        record_activity(
            db,
            snapshot["id"],
            action,
            client_id=workflow.client_id,
            details={
                "workflow_id": str(workflow.id),
                "previous_user_id": str(previous) if previous else None,
                "assigned_user_id": str(user_id) if user_id else None,
                "assigned_user_name": assignee_name,
            },
        )
    return workflow


# ---------------- Creation ----------------

def _create(db: Session, wtype: WorkflowType, workflow, acting_user: Optional[User], notes: str, action: str, details: Dict[str, Any], log_activity: bool):
    snapshot = actor_snapshot(acting_user)
    now = datetime.utcnow()
    workflow.id = workflow.id or uuid.uuid4()
    workflow.created_at = now
    db.add(workflow)
    db.add(_history_row(wtype, workflow.id, None, workflow.current_stage, snapshot, now, None, notes))
    _commit(db, "workflow_create_commit_failed", workflow_type=wtype.value, client_id=workflow.client_id)
    db.refresh(workflow)

    logger.info("workflow_created", workflow_type=wtype.value, workflow_id=str(workflow.id), client_id=str(workflow.client_id))
    if log_activity:
        record_activity(db, snapshot["id"], action, client_id=workflow.client_id, details={"workflow_id": str(workflow.id), **details})
    return workflow


def create_vat_quarter(
    db: Session,
    client: Client,
    reference_date: Optional[date] = None,
    acting_user: Optional[User] = None,
    assigned_user_id=None,
    log_activity: bool = True,
) -> VATQuarter:
    if not client.is_vat_enabled:
        raise ValidationError("Client is not VAT enabled", detail={"client_id": str(client.id)})
    if not client.vat_quarter_group:
        raise ValidationError("Client has no VAT quarter group", detail={"client_id": str(client.id)})

    info = deadlines.calculate_vat_quarter(client.vat_quarter_group, reference_date)
    existing = (
        db.query(VATQuarter)
        .filter(
            VATQuarter.client_id == client.id,
            VATQuarter.quarter_period == info.quarter_period,
            VATQuarter.is_completed == False,  # noqa: E712
        )
        .first()
    )
    if existing:
        raise ValidationError(
            "An open VAT quarter already exists for this period",
            detail={"client_id": str(client.id), "quarter_period": info.quarter_period, "vat_quarter_id": str(existing.id)},
        )

    quarter = VATQuarter(
        client_id=client.id,
        quarter_period=info.quarter_period,
        quarter_start_date=info.quarter_start_date,
        quarter_end_date=info.quarter_end_date,
        filing_due_date=info.filing_due_date,
        quarter_group=info.quarter_group,
        current_stage=stages.initial_stage(WorkflowType.VAT),
        is_completed=False,
        assigned_user_id=assigned_user_id,
    )
    return _create(
        db, WorkflowType.VAT, quarter, acting_user,
        "VAT quarter created",
        ActivityTypes.VAT_QUARTER_CREATED,
        {"quarter_period": info.quarter_period, "filing_due_date": info.filing_due_date.isoformat()},
        log_activity,
    )


def create_ltd_workflow(
    db: Session,
    client: Client,
    acting_user: Optional[User] = None,
    assigned_user_id=None,
    log_activity: bool = True,
) -> LtdAccountsWorkflow:
    if client.company_type != "LIMITED_COMPANY":
        raise ValidationError("Ltd accounts workflows require a limited company", detail={"client_id": str(client.id)})
    period = deadlines.calculate_ltd_filing_period(client)
    if not period:
        raise DeadlineUnresolvable("Cannot derive the filing period for this client", detail={"client_id": str(client.id)})

    existing = (
        db.query(LtdAccountsWorkflow)
        .filter(
            LtdAccountsWorkflow.client_id == client.id,
            LtdAccountsWorkflow.filing_period_end == period.end,
            LtdAccountsWorkflow.is_completed == False,  # noqa: E712
        )
        .first()
    )
    if existing:
        raise ValidationError(
            "An open Ltd accounts workflow already exists for this period",
            detail={"client_id": str(client.id), "filing_period_end": period.end.isoformat(), "workflow_id": str(existing.id)},
        )

    workflow = LtdAccountsWorkflow(
        client_id=client.id,
        filing_period_start=period.start,
        filing_period_end=period.end,
        accounts_due_date=deadlines.accounts_due_from_year_end(period.end),
        ct_due_date=deadlines.corporation_tax_due_from_year_end(period.end),
        cs_due_date=deadlines.calculate_confirmation_statement_due(client),
        current_stage=stages.initial_stage(WorkflowType.LTD),
        is_completed=False,
        assigned_user_id=assigned_user_id,
    )
    return _create(
        db, WorkflowType.LTD, workflow, acting_user,
        "Ltd accounts workflow created",
        ActivityTypes.LTD_WORKFLOW_CREATED,
        {"filing_period_end": period.end.isoformat(), "accounts_due_date": workflow.accounts_due_date.isoformat()},
        log_activity,
    )


def create_non_ltd_workflow(
    db: Session,
    client: Client,
    year: Optional[int] = None,
    acting_user: Optional[User] = None,
    assigned_user_id=None,
    log_activity: bool = True,
) -> NonLtdAccountsWorkflow:
    """``year`` is the calendar year of the 5 April year end; defaults to the current tax year's end."""
    if client.company_type == "LIMITED_COMPANY":
        raise ValidationError("Non-Ltd workflows do not apply to limited companies", detail={"client_id": str(client.id)})
    if year is None:
        year = deadlines.current_non_ltd_tax_year() + 1
    year_end = deadlines.calculate_non_ltd_year_end(year)

    existing = (
        db.query(NonLtdAccountsWorkflow)
        .filter(
            NonLtdAccountsWorkflow.client_id == client.id,
            NonLtdAccountsWorkflow.year_end_date == year_end,
            NonLtdAccountsWorkflow.is_completed == False,  # noqa: E712
        )
        .first()
    )
    if existing:
        raise ValidationError(
            "An open non-Ltd workflow already exists for this year",
            detail={"client_id": str(client.id), "year_end_date": year_end.isoformat(), "workflow_id": str(existing.id)},
        )

    workflow = NonLtdAccountsWorkflow(
        client_id=client.id,
        year_end_date=year_end,
        filing_due_date=deadlines.calculate_non_ltd_filing_due(year_end),
        current_stage=stages.initial_stage(WorkflowType.NON_LTD),
        is_completed=False,
        assigned_user_id=assigned_user_id,
    )
    return _create(
        db, WorkflowType.NON_LTD, workflow, acting_user,
        "Non-Ltd accounts workflow created",
        ActivityTypes.NON_LTD_WORKFLOW_CREATED,
        {"year_end_date": year_end.isoformat(), "filing_due_date": workflow.filing_due_date.isoformat()},
        log_activity,
    )


def vat_quarter_due(db: Session, client: Client, today: Optional[date] = None) -> Optional[deadlines.VATQuarterInfo]:
    """
    The next VAT quarter to open for ``client``, once that quarter has ended.

    Follows on from the client's latest quarter; a client with no quarters
    starts from the quarter before the current one. One quarter per call, so
    a client several quarters behind catches up over successive runs.
    """
    if not client.is_vat_enabled or not client.vat_quarter_group:
        return None
    today = today or deadlines.today_london()
    latest = (
        db.query(VATQuarter)
        .filter(VATQuarter.client_id == client.id)
        .order_by(VATQuarter.quarter_end_date.desc())
        .first()
    )
    if latest:
        candidate = deadlines.get_next_vat_quarter(client.vat_quarter_group, latest.quarter_end_date)
    else:
        current = deadlines.calculate_vat_quarter(client.vat_quarter_group, today)
        candidate = deadlines.calculate_vat_quarter(client.vat_quarter_group, current.quarter_start_date - timedelta(days=1))
    if candidate.quarter_end_date >= today:
        return None
    return candidate


def last_vat_assignee(db: Session, client: Client) -> Optional[uuid.UUID]:
    """Assignee of the client's most recent assigned quarter, if still active."""
    latest = (
        db.query(VATQuarter)
        .filter(VATQuarter.client_id == client.id, VATQuarter.assigned_user_id.isnot(None))
        .order_by(VATQuarter.quarter_end_date.desc())
        .first()
    )
    if not latest:
        return None
    user = users.find_by_id(db, latest.assigned_user_id)
    return user.id if user and user.is_active else None


# ---------------- History ----------------

def get_history(db: Session, workflow_type, workflow_id) -> list:
    wtype = stages.coerce_workflow_type(workflow_type)
    workflow = get_workflow(db, wtype, workflow_id)
    _, history_cls, fk = _TABLES[wtype]
    return (
        db.query(history_cls)
        .filter(getattr(history_cls, fk) == workflow.id)
        .order_by(history_cls.stage_changed_at.asc(), history_cls.created_at.asc())
        .all()
    )


def recompute_milestones_from_history(db: Session, workflow_type, workflow) -> Dict[str, Dict[str, Any]]:
    """Milestone values implied by the ledger: the first entry into each milestone stage."""
    wtype = stages.coerce_workflow_type(workflow_type)
    expected: Dict[str, Dict[str, Any]] = {}
    for row in get_history(db, wtype, workflow.id):
        milestone = stages.milestone_for(wtype, row.to_stage)
        if milestone and milestone not in expected:
            expected[milestone] = {
                "date": row.stage_changed_at,
                "user_id": row.user_id,
                "user_name": row.user_name,
            }
    return expected


def _same_instant(a: Optional[datetime], b: Optional[datetime]) -> bool:
    if a is None or b is None:
        return a is b
    return a.replace(tzinfo=None) == b.replace(tzinfo=None)


def find_milestone_drift(db: Session, workflow_type, workflow) -> List[Dict[str, Any]]:
    """Milestone columns that disagree with the history ledger."""
    wtype = stages.coerce_workflow_type(workflow_type)
    expected = recompute_milestones_from_history(db, wtype, workflow)
    drift = []
    for milestone in sorted(set(stages.definition(wtype).milestones.values())):
        stored_date = getattr(workflow, f"{milestone}_date")
        stored_name = getattr(workflow, f"{milestone}_by_user_name")
        want = expected.get(milestone)
        want_date = want["date"] if want else None
        want_name = want["user_name"] if want else None
        if not _same_instant(stored_date, want_date) or stored_name != want_name:
            drift.append({
                "workflow_type": wtype.value,
                "workflow_id": str(workflow.id),
                "milestone": milestone,
                "stored_date": stored_date.isoformat() if stored_date else None,
                "stored_user_name": stored_name,
                "expected_date": want_date.isoformat() if want_date else None,
                "expected_user_name": want_name,
            })
    return drift


def scan_milestone_drift(db: Session, workflow_types=None) -> List[Dict[str, Any]]:
    results = []
    for wtype in (workflow_types or list(WorkflowType)):
        wtype = stages.coerce_workflow_type(wtype)
        model = _TABLES[wtype][0]
        for workflow in db.query(model).all():
            results.extend(find_milestone_drift(db, wtype, workflow))
    return results


def repair_milestones(db: Session, workflow_type, workflow) -> int:
    """Overwrite drifted milestone columns from history. Returns the number fixed."""
    wtype = stages.coerce_workflow_type(workflow_type)
    expected = recompute_milestones_from_history(db, wtype, workflow)
    drift = find_milestone_drift(db, wtype, workflow)
    for item in drift:
        milestone = item["milestone"]
        want = expected.get(milestone) or {}
        setattr(workflow, f"{milestone}_date", want.get("date"))
        setattr(workflow, f"{milestone}_by_user_id", want.get("user_id"))
        setattr(workflow, f"{milestone}_by_user_name", want.get("user_name"))
    if drift:
        _commit(db, "milestone_repair_commit_failed", workflow_type=wtype.value, workflow_id=workflow.id)
    return len(drift)
