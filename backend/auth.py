"""Liaison accounts for the dashboard: bcrypt passwords and bearer JWTs."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import AuthConfig
from database import LiaisonProfile, get_db
from models import LiaisonCreate, LiaisonLogin, LiaisonOut, LiaisonSettingsUpdate, TokenResponse

logger = logging.getLogger(__name__)

auth_config = AuthConfig.from_env()
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
bearer_scheme = HTTPBearer(auto_error=False)

router = APIRouter(prefix="/auth", tags=["auth"])

TOKEN_TYPE = "liaison-access"


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: str) -> bool:
    return pwd_context.verify(plain, hashed)


def create_access_token(liaison_id: str) -> str:
    issued = datetime.now(timezone.utc)
    claims = {
        "sub": liaison_id,
        "typ": TOKEN_TYPE,
        "iat": issued,
        "exp": issued + timedelta(hours=auth_config.token_ttl_hours),
    }
    return jwt.encode(claims, auth_config.jwt_secret, algorithm=auth_config.jwt_algorithm)


def decode_access_token(token: str) -> Optional[str]:
    """Liaison id for a valid, unexpired access token; None otherwise."""
    try:
        claims = jwt.decode(token, auth_config.jwt_secret, algorithms=[auth_config.jwt_algorithm])
    except JWTError:
        return None
    if claims.get("typ") != TOKEN_TYPE:
        return None
    return claims.get("sub")


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_liaison(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> LiaisonProfile:
    if credentials is None:
        raise _unauthorized("Not authenticated")
    liaison_id = decode_access_token(credentials.credentials)
    liaison = db.get(LiaisonProfile, liaison_id) if liaison_id else None
    if liaison is None:
        raise _unauthorized("Invalid or expired token")
    return liaison


@router.post("/register", response_model=LiaisonOut, status_code=201)
def register(data: LiaisonCreate, db: Session = Depends(get_db)):
    liaison = LiaisonProfile(
        id=f"lia_{uuid4().hex[:12]}",
        email=data.email,
        password_hash=hash_password(data.password),
        name=data.name,
        org_name=data.org_name,
        telegram_chat_id=data.telegram_chat_id or None,
    )
    db.add(liaison)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=400, detail="Email already registered")
    db.refresh(liaison)
    logger.info("Registered liaison %s (%s)", liaison.id, liaison.email)
    return liaison


@router.post("/login", response_model=TokenResponse)
def login(data: LiaisonLogin, db: Session = Depends(get_db)):
    liaison = db.query(LiaisonProfile).filter(LiaisonProfile.email == data.email).first()
    if liaison is None or not verify_password(data.password, liaison.password_hash):
        raise HTTPException(status_code=401, detail="Incorrect email or password")
    return TokenResponse(
        access_token=create_access_token(liaison.id),
        expires_in=auth_config.token_ttl_hours * 3600,
    )


@router.get("/me", response_model=LiaisonOut)
def me(current_liaison: LiaisonProfile = Depends(get_current_liaison)):
    return current_liaison


@router.patch("/me", response_model=LiaisonOut)
def update_settings(
    data: LiaisonSettingsUpdate,
    db: Session = Depends(get_db),
    current_liaison: LiaisonProfile = Depends(get_current_liaison),
):
    """Save dashboard settings, typically the chat id the Telegram bot handed out."""
    changes = data.model_dump(exclude_unset=True)
    if "name" in changes and not changes["name"]:
        raise HTTPException(status_code=400, detail="Name cannot be empty")
    if "telegram_chat_id" in changes:
        changes["telegram_chat_id"] = (changes["telegram_chat_id"] or "").strip() or None

    liaison = db.get(LiaisonProfile, current_liaison.id)
    for field, value in changes.items():
        setattr(liaison, field, value)
    db.commit()
    db.refresh(liaison)
    return liaison
