"""
Assignment resolver.

Single policy for "who owns this work": workflow assignee, then the client's
category slot, then the client's general assignee. Every count, filter and
dashboard aggregation goes through ``resolve_assignment``.
"""
import uuid
from collections import Counter
from typing import Dict, Iterable, List, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..errors import PersistenceError, ValidationError
from ..models.models import Client, User, VATQuarter, LtdAccountsWorkflow, NonLtdAccountsWorkflow
from . import users
from .activity import record_activity, ActivityTypes


logger = structlog.get_logger(__name__)

CATEGORIES = ("accounts-ltd", "accounts-non-ltd", "vat", "general")

# category -> client slot column
_CLIENT_SLOTS = {
    "accounts-ltd": "ltd_company_assigned_user_id",
    "accounts-non-ltd": "non_ltd_company_assigned_user_id",
    "vat": "vat_assigned_user_id",
    "general": "assigned_user_id",
}

# category -> workflow model whose open record carries a workflow-level assignee
_WORKFLOW_MODELS = {
    "accounts-ltd": (LtdAccountsWorkflow, LtdAccountsWorkflow.filing_period_end),
    "accounts-non-ltd": (NonLtdAccountsWorkflow, NonLtdAccountsWorkflow.year_end_date),
    "vat": (VATQuarter, VATQuarter.quarter_end_date),
}


def normalize_category(category: str) -> str:
    value = (category or "").strip().lower().replace("_", "-")
    aliases = {"ltd": "accounts-ltd", "non-ltd": "accounts-non-ltd", "nonltd": "accounts-non-ltd"}
    value = aliases.get(value, value)
    if value not in CATEGORIES:
        raise ValidationError(f"Unknown assignment category: {category!r}", detail={"category": category})
    return value


def resolve_assignment(client: Client, category: str, active_workflow=None) -> Optional[uuid.UUID]:
    """
    Effective owner of ``client``'s work in ``category``, or None.

    ``active_workflow`` is the open workflow for the category, if any; it is
    ignored for the general category.
    """
    category = normalize_category(category)
    if category != "general" and active_workflow is not None:
        assigned = getattr(active_workflow, "assigned_user_id", None)
        if assigned:
            return assigned
    slot = _CLIENT_SLOTS[category]
    if category != "general":
        assigned = getattr(client, slot, None)
        if assigned:
            return assigned
    return getattr(client, "assigned_user_id", None)


def client_in_category(client: Client, category: str) -> bool:
    """Whether the client carries work in ``category`` at all."""
    category = normalize_category(category)
    if category == "vat":
        return bool(client.is_vat_enabled)
    if category == "accounts-ltd":
        return client.company_type == "LIMITED_COMPANY"
    if category == "accounts-non-ltd":
        return client.company_type != "LIMITED_COMPANY"
    return True


def active_workflow_for(db: Session, client: Client, category: str):
    """Most recent non-completed workflow of the category, or None."""
    category = normalize_category(category)
    if category == "general":
        return None
    model, period_col = _WORKFLOW_MODELS[category]
    return (
        db.query(model)
        .filter(model.client_id == client.id, model.is_completed == False)  # noqa: E712
        .order_by(period_col.desc())
        .first()
    )


def effective_assignee(db: Session, client: Client, category: str) -> Optional[uuid.UUID]:
    return resolve_assignment(client, category, active_workflow_for(db, client, category))


def filter_clients_by_assignee(db: Session, clients: Iterable[Client], category: str, user_id) -> List[Client]:
    """
    Clients whose effective owner in ``category`` is ``user_id``; None selects
    unassigned. Clients outside the category never match.
    """
    category = normalize_category(category)
    target = uuid.UUID(str(user_id)) if user_id else None
    return [
        c for c in clients
        if client_in_category(c, category) and effective_assignee(db, c, category) == target
    ]


def count_by_assignee(db: Session, clients: Iterable[Client], category: str) -> Dict[Optional[str], int]:
    """Count category clients per effective owner; unassigned clients are counted under None."""
    category = normalize_category(category)
    counts: Counter = Counter()
    for client in clients:
        if not client_in_category(client, category):
            continue
        owner = effective_assignee(db, client, category)
        counts[str(owner) if owner else None] += 1
    return dict(counts)


def user_counts(db: Session, clients: Iterable[Client]) -> Dict[str, Dict[Optional[str], int]]:
    clients = list(clients)
    return {category: count_by_assignee(db, clients, category) for category in CATEGORIES}


def assign_client(db: Session, client: Client, category: str, user_id, acting_user: Optional[User], log_activity: bool = True) -> Client:
    """Set or clear one of the client's assignment slots."""
    category = normalize_category(category)
    assignee_name = None
    if user_id is not None:
        assignee = users.require_assignee(db, user_id)
        user_id = assignee.id
        assignee_name = users.display_name(db, user_id)

    slot = _CLIENT_SLOTS[category]
    previous = getattr(client, slot)
    setattr(client, slot, user_id)
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("client_assign_commit_failed", client_id=str(client.id), category=category, error=str(e))
        raise PersistenceError("Transaction failed and was rolled back", detail={"client_id": str(client.id)}) from e
    db.refresh(client)

    if log_activity:
        record_activity(
            db,
            acting_user.id if acting_user else None,
            ActivityTypes.CLIENT_ASSIGNED if user_id else ActivityTypes.CLIENT_UNASSIGNED,
            client_id=client.id,
            details={
                "category": category,
                "previous_user_id": str(previous) if previous else None,
                "assigned_user_id": str(user_id) if user_id else None,
                "assigned_user_name": assignee_name,
            },
        )
    return client
