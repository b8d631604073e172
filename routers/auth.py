"""Login endpoint for the web console."""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from admin_auth import create_access_token, get_current_user, verify_password
from config import settings
from database import get_db
from models import User
from time_utils import utcnow

router = APIRouter(prefix="/auth", tags=["auth"])


class LoginRequest(BaseModel):
    email: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in_minutes: int = Field(default=settings.admin_jwt_exp_minutes)
    user: Optional[Dict[str, Any]] = None


def _user_info(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "full_name": user.full_name,
        "role": user.role.value,
    }


@router.post("/login", response_model=TokenResponse, tags=["public"])
def login(payload: LoginRequest, db: Session = Depends(get_db)):
    """Authenticate user and return JWT."""
    user = db.query(User).filter(User.email == payload.email.lower()).first()

    if not user or not verify_password(payload.password, user.hashed_password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
        )

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User account is inactive",
        )

    user.last_login_at = utcnow()
    db.commit()

    token = create_access_token(user)
    return TokenResponse(access_token=token, user=_user_info(user))


@router.get("/me")
def me(current_user: User = Depends(get_current_user)):
    return _user_info(current_user)
