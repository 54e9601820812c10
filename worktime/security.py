from __future__ import annotations

from dataclasses import dataclass

from fastapi import Depends, Header, Request
from sqlalchemy import select
from sqlalchemy.orm import Session

from worktime.db import get_db
from worktime.errors import ApiError, ForbiddenError
from worktime.models import AuditActorType, User


@dataclass(frozen=True)
class Actor:
    """Who is performing an operation and what they may do.

    Built once per request from the stored role and passed explicitly into
    service calls that need authorization.
    """

    actor_type: AuditActorType
    actor_id: str
    user_id: int | None = None
    chat_id: int | None = None
    is_admin: bool = False


SYSTEM_ACTOR = Actor(actor_type=AuditActorType.SYSTEM, actor_id="system", is_admin=True)


def actor_for_user(user: User) -> Actor:
    is_admin = user.is_admin
    return Actor(
        actor_type=AuditActorType.ADMIN if is_admin else AuditActorType.USER,
        actor_id=str(user.chat_id),
        user_id=user.id,
        chat_id=user.chat_id,
        is_admin=is_admin,
    )


def require_admin_capability(actor: Actor) -> Actor:
    if not actor.is_admin:
        raise ForbiddenError()
    return actor


def get_current_user(
    request: Request,
    x_chat_id: int | None = Header(default=None, alias="X-Chat-Id"),
    db: Session = Depends(get_db),
) -> User:
    if x_chat_id is None:
        raise ApiError(status_code=401, code="MISSING_CHAT_ID", message="X-Chat-Id header is required.")

    user = db.scalar(select(User).where(User.chat_id == x_chat_id))
    if user is None:
        raise ApiError(status_code=401, code="UNKNOWN_USER", message="User is not registered.")

    request.state.actor = "admin" if user.is_admin else "user"
    request.state.actor_id = str(user.chat_id)
    return user


def get_current_actor(user: User = Depends(get_current_user)) -> Actor:
    return actor_for_user(user)


def require_admin_actor(actor: Actor = Depends(get_current_actor)) -> Actor:
    return require_admin_capability(actor)
