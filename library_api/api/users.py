import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import or_
from sqlalchemy.orm import Session

from library_api.api.auth import ensure_unique_identity
from library_api.api.deps import get_current_user, paginate, require_permission
from library_api.core.config import settings
from library_api.core.database import get_db
from library_api.core.errors import Conflict, Forbidden, NotFound, ValidationFailed, envelope
from library_api.core.security import hash_password
from library_api.models import models
from library_api.models.models import BorrowRecord, utcnow
from library_api.schemas import schemas
from library_api.services import policy
from library_api.services.access import can_act_on_own, is_staff

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/users", tags=["users"])

# Only admins may change these; librarians edit profile details only
ADMIN_ONLY_FIELDS = {"role", "password", "email", "is_active"}


def _get_user(db: Session, user_id: int) -> models.User:
    user = db.get(models.User, user_id)
    if not user:
        raise NotFound("User not found")
    return user


def _ensure_no_active_borrows(db: Session, user: models.User, action: str) -> None:
    active = policy.active_borrow_count(db, user.id)
    if active > 0:
        raise Conflict(f"Cannot {action} user. User has {active} active borrow(s)", active_borrows=active)


def _ensure_admin_remains(db: Session, user: models.User, action: str = "delete") -> None:
    """Refuse to remove the last active admin, by deletion, deactivation or demotion."""
    if user.role != models.Role.ADMIN or not user.is_active:
        return
    others = (db.query(models.User)
              .filter(models.User.role == models.Role.ADMIN,
                      models.User.is_active.is_(True),
                      models.User.id != user.id)
              .count())
    if others == 0:
        raise Conflict(f"Cannot {action} the last active admin user")


@router.post("", status_code=201)
def create_user(user_in: schemas.UserCreate, db: Session = Depends(get_db),
                actor: models.User = Depends(require_permission("users", "create"))):
    ensure_unique_identity(db, user_in.email, user_in.user_name)
    user = models.User(**user_in.model_dump(exclude={"password"}),
                       password_hash=hash_password(user_in.password))
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info(f"Created user id={user.id} role={user.role.value} by user {actor.id}")
    return envelope("User created successfully", data=schemas.UserOut.model_validate(user))


@router.get("")
def list_users(search: Optional[str] = None, role: Optional[models.Role] = None,
               is_active: Optional[bool] = None,
               page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
               db: Session = Depends(get_db),
               actor: models.User = Depends(require_permission("users", "update"))):
    query = db.query(models.User)
    if search:
        like_q = f"%{search}%"
        query = query.filter(or_(models.User.first_name.ilike(like_q),
                                 models.User.last_name.ilike(like_q),
                                 models.User.user_name.ilike(like_q),
                                 models.User.email.ilike(like_q)))
    if role:
        query = query.filter(models.User.role == role)
    if is_active is not None:
        query = query.filter(models.User.is_active == is_active)
    users, pagination = paginate(query.order_by(models.User.last_name, models.User.id), page, limit)
    return envelope("Users retrieved successfully",
                    data=[schemas.UserOut.model_validate(u) for u in users],
                    pagination=pagination)


@router.get("/{user_id}")
def read_user(user_id: int, include_stats: bool = False, db: Session = Depends(get_db),
              actor: models.User = Depends(get_current_user)):
    if not can_act_on_own(actor, user_id, "users", "update"):
        raise Forbidden("Access denied. You can only access your own resources")
    user = _get_user(db, user_id)
    data = schemas.UserOut.model_validate(user).model_dump(mode="json")
    if include_stats:
        now = utcnow()
        data["statistics"] = {
            "active_borrows": policy.active_borrow_count(db, user.id),
            "overdue_books": (db.query(BorrowRecord)
                              .filter(BorrowRecord.user_id == user.id,
                                      BorrowRecord.return_date.is_(None),
                                      BorrowRecord.due_date < now)
                              .count()),
            "can_borrow_more": policy.can_borrow(db, user.id),
        }
    return envelope("User retrieved successfully", data=data)


@router.put("/{user_id}")
def update_user(user_id: int, user_upd: schemas.UserUpdate, db: Session = Depends(get_db),
                actor: models.User = Depends(require_permission("users", "update"))):
    user = _get_user(db, user_id)
    data = user_upd.model_dump(exclude_unset=True, exclude_none=True)
    if not data:
        raise ValidationFailed("No valid fields to update")
    if actor.role != models.Role.ADMIN:
        if user.role == models.Role.ADMIN:
            raise Forbidden("Access denied. Only admins can modify admin accounts")
        restricted = sorted(ADMIN_ONLY_FIELDS & data.keys())
        if restricted:
            raise Forbidden(f"Access denied. Only admins can change {', '.join(restricted)}")
    if data.get("is_active") is False and user.is_active:
        _ensure_no_active_borrows(db, user, "deactivate")
        _ensure_admin_remains(db, user, "deactivate")
    if "role" in data and data["role"] != models.Role.ADMIN:
        _ensure_admin_remains(db, user, "demote")
    ensure_unique_identity(db, data.get("email"), data.get("user_name"), exclude_id=user.id)
    if "password" in data:
        user.password_hash = hash_password(data.pop("password"))
    for k, v in data.items():
        setattr(user, k, v)
    db.commit()
    db.refresh(user)
    logger.info(f"Updated user id={user.id} by user {actor.id}")
    return envelope("User updated successfully", data=schemas.UserOut.model_validate(user))


@router.delete("/{user_id}")
def delete_user(user_id: int, db: Session = Depends(get_db),
                actor: models.User = Depends(require_permission("users", "delete"))):
    user = _get_user(db, user_id)
    if user.id == actor.id:
        raise Conflict("You cannot delete your own account")
    _ensure_no_active_borrows(db, user, "delete")
    _ensure_admin_remains(db, user)
    # borrow history keeps referencing the account, so it is deactivated rather than removed
    user.is_active = False
    db.commit()
    logger.info(f"Deactivated user id={user.id} by user {actor.id}")
    return envelope("User successfully deleted")


@router.get("/{user_id}/borrow-records")
def user_borrow_records(user_id: int, status: Optional[models.BorrowStatus] = None,
                        page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                        db: Session = Depends(get_db),
                        actor: models.User = Depends(get_current_user)):
    if actor.id != user_id and not is_staff(actor):
        raise Forbidden("Access denied. You can only view your own borrow records")
    user = _get_user(db, user_id)
    now = utcnow()
    query = db.query(BorrowRecord).filter(BorrowRecord.user_id == user.id)
    if status:
        query = query.filter(BorrowRecord.status == status)
    records, pagination = paginate(query.order_by(BorrowRecord.borrow_date.desc(), BorrowRecord.id.desc()),
                                   page, limit)
    active = policy.active_borrow_count(db, user.id)
    return envelope("User borrow records retrieved successfully", data={
        "user": {"id": user.id, "full_name": user.full_name, "email": user.email,
                 "active_borrows": active},
        "records": [schemas.BorrowRecordOut.from_record(r, now) for r in records],
        "statistics": {
            "total_borrows": pagination["total_items"],
            "active_borrows": active,
            "can_borrow_more": policy.can_borrow(db, user.id),
            "max_active_borrows": settings.max_active_borrows,
        },
    }, pagination=pagination)
