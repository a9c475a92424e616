import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth.security import get_current_user, require_roles
from ..db import get_db
from ..errors import ValidationError
from ..models.models import ActivityLog, User
from ..services.activity import get_activity_logs, verify_integrity


router = APIRouter(prefix="/activity", tags=["activity"])


def serialize_entry(entry: ActivityLog) -> dict:
    return {
        "id": str(entry.id),
        "action": entry.action,
        "user_id": str(entry.user_id) if entry.user_id else None,
        "client_id": str(entry.client_id) if entry.client_id else None,
        "details": entry.details or {},
        "timestamp": entry.timestamp.isoformat() if entry.timestamp else None,
    }


def _uuid_or_none(value: Optional[str], field: str) -> Optional[uuid.UUID]:
    if not value:
        return None
    try:
        return uuid.UUID(value)
    except ValueError:
        raise ValidationError(f"{field} must be a UUID", detail={field: value}) from None


@router.get("")
def list_activity(
    client_id: Optional[str] = None,
    user_id: Optional[str] = None,
    action: Optional[str] = None,
    limit: int = Query(default=100, le=500),
    offset: int = 0,
    db: Session = Depends(get_db),
    _: User = Depends(get_current_user),
):
    entries = get_activity_logs(
        db,
        client_id=_uuid_or_none(client_id, "client_id"),
        user_id=_uuid_or_none(user_id, "user_id"),
        action=action,
        limit=limit,
        offset=offset,
    )
    return [serialize_entry(e) for e in entries]


@router.get("/verify")
def verify_activity(
    limit: int = Query(default=1000, le=10000),
    db: Session = Depends(get_db),
    _: User = Depends(require_roles("PARTNER")),
):
    """Recompute integrity hashes and report entries that no longer match."""
    entries = get_activity_logs(db, limit=limit)
    tampered = [str(e.id) for e in entries if not verify_integrity(e)]
    return {"checked": len(entries), "tampered": tampered}
