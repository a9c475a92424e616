import uuid
from typing import Optional, Dict, Any, Union

from sqlalchemy.orm import Session

from ..errors import NotFound
from ..models.models import User


SYSTEM_ACTOR = {
    "id": None,
    "name": "System",
    "email": "system@numericalz.com",
    "role": "SYSTEM",
}


def _as_uuid(value: Union[str, uuid.UUID, None]) -> Optional[uuid.UUID]:
    if value is None or isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def find_by_id(db: Session, user_id) -> Optional[User]:
    uid = _as_uuid(user_id)
    if not uid:
        return None
    return db.query(User).filter(User.id == uid).first()


def display_name(db: Session, user_id) -> Optional[str]:
    user = find_by_id(db, user_id)
    if not user:
        return None
    return user.name or user.email


def require_assignee(db: Session, user_id) -> User:
    """Resolve an assignee; unknown and deactivated users are both rejected."""
    user = find_by_id(db, user_id)
    if not user or not user.is_active:
        raise NotFound("Assignee not found", detail={"user_id": str(user_id)})
    return user


def actor_snapshot(user: Optional[User]) -> Dict[str, Any]:
    """Identity captured at action time for history rows."""
    if user is None:
        return dict(SYSTEM_ACTOR)
    return {
        "id": user.id,
        "name": user.name or user.email,
        "email": user.email,
        "role": user.role,
    }
