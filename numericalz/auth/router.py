from datetime import datetime, timezone

import structlog
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..db import get_db
from ..models.models import User
from ..schemas.auth import LoginRequest, TokenResponse, MeResponse
from ..services.activity import record_activity, ActivityTypes
from .security import verify_password, create_access_token, get_current_user


router = APIRouter(prefix="/auth", tags=["auth"])
logger = structlog.get_logger(__name__)


@router.post("/login", response_model=TokenResponse)
def login(req: LoginRequest, db: Session = Depends(get_db)):
    user = db.query(User).filter(func.lower(User.email) == req.email.strip().lower()).first()
    if not user or not user.is_active or not verify_password(req.password, user.password_hash):
        logger.info("login_failed", email=req.email)
        raise HTTPException(status_code=401, detail="Invalid credentials")
    access = create_access_token(str(user.id), role=user.role)
    user.last_login_at = datetime.now(timezone.utc)
    db.commit()
    record_activity(db, user.id, ActivityTypes.USER_LOGIN)
    return TokenResponse(access_token=access)


@router.get("/me", response_model=MeResponse)
def me(user: User = Depends(get_current_user)):
    return MeResponse(id=str(user.id), name=user.name, email=user.email, role=user.role)
