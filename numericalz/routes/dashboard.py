from collections import Counter
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth.security import get_current_user
from ..db import get_db
from ..models.models import Client, User
from ..services import assignment, deadlines, stages, workflow_engine
from ..services.stages import WorkflowType


router = APIRouter(prefix="/dashboard", tags=["dashboard"])


def _active_clients(db: Session):
    return db.query(Client).filter(Client.is_active == True).all()  # noqa: E712


@router.get("/user-counts")
def user_counts(db: Session = Depends(get_db), _: User = Depends(get_current_user)):
    """Clients per effective assignee, per category. Unassigned clients are keyed ``unassigned``."""
    counts = assignment.user_counts(db, _active_clients(db))
    users = {str(u.id): u.name for u in db.query(User).all()}
    out = {}
    for category, per_user in counts.items():
        out[category] = [
            {
                "user_id": user_id,
                "user_name": users.get(user_id) if user_id else None,
                "key": user_id or "unassigned",
                "count": count,
            }
            for user_id, count in sorted(per_user.items(), key=lambda kv: -kv[1])
        ]
    return out


@router.get("/deadlines")
def upcoming_deadlines(
    days: int = Query(default=30, ge=0, le=366),
    include_overdue: bool = True,
    assigned_to: Optional[str] = None,
    db: Session = Depends(get_db),
    _: User = Depends(get_current_user),
):
    clients = _active_clients(db)
    if assigned_to:
        clients = assignment.filter_clients_by_assignee(db, clients, "general", assigned_to)
    items = deadlines.collect_deadlines(clients)
    return [
        item for item in items
        if item["days_until_due"] <= days and (include_overdue or not item["is_overdue"])
    ]


@router.get("/workflow-stages")
def workflow_stage_counts(db: Session = Depends(get_db), _: User = Depends(get_current_user)):
    """Open workflows per stage, in stage order."""
    out = {}
    for wtype in WorkflowType:
        model = workflow_engine.workflow_model(wtype)
        counts = Counter(
            stage for (stage,) in db.query(model.current_stage).filter(model.is_completed == False).all()  # noqa: E712
        )
        out[wtype.value] = [
            {"stage": s, "name": stages.display_name(wtype, s), "count": counts.get(s, 0)}
            for s in stages.stage_order(wtype)
        ]
    return out
