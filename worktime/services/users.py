from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from worktime.errors import ConflictError, NotFoundError, ValidationError
from worktime.models import User, UserRole
from worktime.security import Actor, require_admin_capability
from worktime.services.recompute import enqueue_user_seed
from worktime.services.storage import commit_or_raise, flush_or_raise

logger = logging.getLogger("worktime.users")

BASE_ADMIN_USERNAME = "admin"
BASE_ADMIN_FIRST_NAME = "Administrator"


@dataclass(frozen=True)
class UserCounts:
    total: int
    admins: int

    @property
    def clients(self) -> int:
        return self.total - self.admins


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def get_user(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise NotFoundError(code="USER_NOT_FOUND", message="User not found.")
    return user


def get_user_by_chat_id(db: Session, chat_id: int) -> User | None:
    return db.scalar(select(User).where(User.chat_id == chat_id))


def list_users(db: Session, *, role: UserRole | None = None) -> list[User]:
    stmt = select(User)
    if role is not None:
        stmt = stmt.where(User.role == role)
    return list(db.scalars(stmt.order_by(User.id.asc())).all())


def create_user(
    db: Session,
    *,
    chat_id: int,
    first_name: str,
    last_name: str | None = None,
    username: str | None = None,
) -> User:
    """Register a client user and queue statistics rows for every scheduled month."""
    cleaned_first_name = _clean(first_name)
    if cleaned_first_name is None:
        raise ValidationError(code="FIRST_NAME_REQUIRED", message="First name cannot be empty.")
    if get_user_by_chat_id(db, chat_id) is not None:
        raise ConflictError(code="USER_EXISTS", message="User is already registered.")

    user = User(
        chat_id=chat_id,
        username=_clean(username),
        first_name=cleaned_first_name,
        last_name=_clean(last_name),
        role=UserRole.CLIENT,
    )
    db.add(user)
    flush_or_raise(db, conflict_code="USER_EXISTS", conflict_message="User is already registered.")
    enqueue_user_seed(db, user_id=user.id)
    commit_or_raise(db, conflict_code="USER_EXISTS", conflict_message="User is already registered.")

    logger.info("user_created", extra={"user_id": user.id, "chat_id": chat_id})
    return user


def update_user(
    db: Session,
    user_id: int,
    *,
    username: str | None = None,
    first_name: str | None = None,
    last_name: str | None = None,
) -> User:
    """Overwrite the profile fields that carry a non-blank value; the role never changes here."""
    user = get_user(db, user_id)
    changed: list[str] = []
    for field_name, value in (("username", username), ("first_name", first_name), ("last_name", last_name)):
        cleaned = _clean(value)
        if cleaned is not None and getattr(user, field_name) != cleaned:
            setattr(user, field_name, cleaned)
            changed.append(field_name)
    if not changed:
        return user
    commit_or_raise(db)

    logger.info("user_profile_updated", extra={"user_id": user.id, "fields": changed})
    return user


def delete_user(db: Session, user_id: int) -> None:
    """Remove a user; sessions, absences, statistics and queued jobs go with it."""
    user = get_user(db, user_id)
    chat_id = user.chat_id
    db.delete(user)
    commit_or_raise(db)

    logger.info("user_deleted", extra={"user_id": user_id, "chat_id": chat_id})


def count_users(db: Session) -> UserCounts:
    total, admins = db.execute(
        select(
            func.count(User.id),
            func.coalesce(func.sum(case((User.role == UserRole.ADMIN, 1), else_=0)), 0),
        )
    ).one()
    return UserCounts(total=int(total), admins=int(admins))


def set_role(db: Session, actor: Actor, user_id: int, role: UserRole) -> User:
    require_admin_capability(actor)
    user = get_user(db, user_id)
    previous_role = user.role
    user.role = role
    commit_or_raise(db)

    logger.info(
        "user_role_changed",
        extra={
            "user_id": user.id,
            "previous_role": previous_role.value,
            "role": role.value,
            "actor_id": actor.actor_id,
        },
    )
    return user


def initialize_admin(db: Session, chat_id: int | None) -> User | None:
    """Promote (or create) the configured base administrator."""
    if not chat_id:
        return None

    user = get_user_by_chat_id(db, chat_id)
    if user is None:
        user = User(
            chat_id=chat_id,
            username=BASE_ADMIN_USERNAME,
            first_name=BASE_ADMIN_FIRST_NAME,
            role=UserRole.ADMIN,
        )
        db.add(user)
        flush_or_raise(db, conflict_code="USER_EXISTS", conflict_message="Base admin is already registered.")
        enqueue_user_seed(db, user_id=user.id)
    elif user.role == UserRole.ADMIN:
        return user
    else:
        user.role = UserRole.ADMIN
    commit_or_raise(db, conflict_code="USER_EXISTS", conflict_message="Base admin is already registered.")

    logger.info("base_admin_initialized", extra={"user_id": user.id, "chat_id": chat_id})
    return user
