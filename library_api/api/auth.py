import logging
import time
from typing import Any, Dict

from fastapi import APIRouter, Depends
from sqlalchemy import or_
from sqlalchemy.orm import Session

from library_api.api.deps import get_blacklist, get_current_user, get_token_claims
from library_api.core.database import get_db
from library_api.core.errors import AuthenticationFailed, Conflict, envelope
from library_api.core.security import create_access_token, hash_password, verify_password
from library_api.core.ttl_store import TokenBlacklist
from library_api.models import models
from library_api.models.models import utcnow
from library_api.schemas import schemas

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


def ensure_unique_identity(db: Session, email: str, user_name: str, exclude_id: int = None) -> None:
    for column, value, label in ((models.User.email, email, "email"),
                                 (models.User.user_name, user_name, "user name")):
        if value is None:
            continue
        query = db.query(models.User).filter(column == value)
        if exclude_id is not None:
            query = query.filter(models.User.id != exclude_id)
        if query.first():
            raise Conflict(f"A user with this {label} already exists")


@router.post("/register", status_code=201)
def register(user_in: schemas.RegisterIn, db: Session = Depends(get_db)):
    ensure_unique_identity(db, user_in.email, user_in.user_name)
    user = models.User(first_name=user_in.first_name, last_name=user_in.last_name,
                       user_name=user_in.user_name, email=user_in.email,
                       password_hash=hash_password(user_in.password), role=models.Role.USER)
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info(f"Registered user id={user.id} email={user.email}")
    return envelope("User registered successfully", data={
        "user": schemas.UserOut.model_validate(user),
        "token": create_access_token(user.id, user.role.value),
    })


@router.post("/login")
def login(credentials: schemas.LoginIn, db: Session = Depends(get_db)):
    user = (db.query(models.User)
            .filter(or_(models.User.email == credentials.identifier,
                        models.User.user_name == credentials.identifier))
            .first())
    if not user or not verify_password(credentials.password, user.password_hash):
        logger.warning(f"Failed login for {credentials.identifier}")
        raise AuthenticationFailed("Invalid credentials")
    if not user.is_active:
        raise AuthenticationFailed("Access denied. Account is deactivated")
    user.last_login = utcnow()
    db.commit()
    db.refresh(user)
    logger.info(f"User {user.id} logged in")
    return envelope("Login successful", data={
        "user": schemas.UserOut.model_validate(user),
        "token": create_access_token(user.id, user.role.value),
    })


@router.post("/logout")
def logout(claims: Dict[str, Any] = Depends(get_token_claims),
           blacklist: TokenBlacklist = Depends(get_blacklist)):
    blacklist.revoke(claims["jti"], claims["exp"] - time.time())
    logger.info(f"User {claims['sub']} signed out")
    return envelope("User signed out successfully")


@router.get("/me")
def me(user: models.User = Depends(get_current_user)):
    return envelope("Profile retrieved successfully", data=schemas.UserOut.model_validate(user))
