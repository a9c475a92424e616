"""
Activity log sink.
Append-only system-wide audit trail with integrity hashing.
"""
import hashlib
import json
from datetime import datetime
from typing import Optional, Dict, Any

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models.models import ActivityLog
from ..config import settings


logger = structlog.get_logger(__name__)


class ActivityTypes:
    CLIENT_CREATED = "CLIENT_CREATED"
    CLIENT_UPDATED = "CLIENT_UPDATED"
    CLIENT_DELETED = "CLIENT_DELETED"
    CLIENT_ASSIGNED = "CLIENT_ASSIGNED"
    CLIENT_UNASSIGNED = "CLIENT_UNASSIGNED"
    CLIENT_COMPANIES_HOUSE_REFRESHED = "CLIENT_COMPANIES_HOUSE_REFRESHED"
    VAT_QUARTER_CREATED = "VAT_QUARTER_CREATED"
    VAT_QUARTER_ASSIGNED = "VAT_QUARTER_ASSIGNED"
    VAT_QUARTER_UNASSIGNED = "VAT_QUARTER_UNASSIGNED"
    VAT_WORKFLOW_STAGE_CHANGED = "VAT_WORKFLOW_STAGE_CHANGED"
    LTD_WORKFLOW_CREATED = "LTD_WORKFLOW_CREATED"
    LTD_WORKFLOW_ASSIGNED = "LTD_WORKFLOW_ASSIGNED"
    LTD_WORKFLOW_STAGE_CHANGED = "LTD_WORKFLOW_STAGE_CHANGED"
    NON_LTD_WORKFLOW_CREATED = "NON_LTD_WORKFLOW_CREATED"
    NON_LTD_WORKFLOW_ASSIGNED = "NON_LTD_WORKFLOW_ASSIGNED"
    NON_LTD_WORKFLOW_STAGE_CHANGED = "NON_LTD_WORKFLOW_STAGE_CHANGED"
    BULK_VAT_QUARTERS_CREATED = "BULK_VAT_QUARTERS_CREATED"
    BULK_STAGE_UPDATED = "BULK_STAGE_UPDATED"
    BULK_ASSIGNED = "BULK_ASSIGNED"
    BULK_CLIENT_DELETE = "BULK_CLIENT_DELETE"
    BULK_COMPANIES_HOUSE_REFRESH = "BULK_COMPANIES_HOUSE_REFRESH"
    VAT_QUARTERS_AUTO_CREATED = "VAT_QUARTERS_AUTO_CREATED"
    USER_LOGIN = "USER_LOGIN"


def _integrity_hash(payload: Dict[str, Any]) -> Optional[str]:
    secret = settings.activity_integrity_secret or settings.jwt_secret
    if not secret:
        return None
    # Remove None values and sort keys for consistency
    canonical = {k: v for k, v in payload.items() if v is not None}
    canonical_json = json.dumps(canonical, sort_keys=True, default=str)
    return hashlib.sha256(f"{canonical_json}:{secret}".encode()).hexdigest()


def record_activity(
    db: Session,
    user_id,
    action: str,
    client_id=None,
    details: Optional[Dict[str, Any]] = None,
) -> Optional[ActivityLog]:
    """
    Append one activity entry and commit it.

    Failures are logged and swallowed: the action that triggered the entry
    has already been committed and must not be undone by the audit write.
    """
    timestamp = datetime.utcnow()
    entry = ActivityLog(
        action=action,
        user_id=user_id,
        client_id=client_id,
        details=details,
        timestamp=timestamp,
        integrity_hash=_integrity_hash({
            "action": action,
            "user_id": str(user_id) if user_id else None,
            "client_id": str(client_id) if client_id else None,
            "details": details,
            "timestamp": timestamp.isoformat(),
        }),
    )
    try:
        db.add(entry)
        db.commit()
        db.refresh(entry)
        return entry
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("activity_log_write_failed", action=action, client_id=str(client_id) if client_id else None, error=str(e))
        return None


def verify_integrity(entry: ActivityLog) -> bool:
    expected = _integrity_hash({
        "action": entry.action,
        "user_id": str(entry.user_id) if entry.user_id else None,
        "client_id": str(entry.client_id) if entry.client_id else None,
        "details": entry.details,
        "timestamp": entry.timestamp.replace(tzinfo=None).isoformat() if entry.timestamp else None,
    })
    return expected is not None and expected == entry.integrity_hash


def get_activity_logs(
    db: Session,
    client_id=None,
    user_id=None,
    action: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
) -> list:
    query = db.query(ActivityLog)

    if client_id:
        query = query.filter(ActivityLog.client_id == client_id)

    if user_id:
        query = query.filter(ActivityLog.user_id == user_id)

    if action:
        query = query.filter(ActivityLog.action == action)

    query = query.order_by(ActivityLog.timestamp.desc())
    query = query.limit(limit).offset(offset)

    return query.all()
