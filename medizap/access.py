"""Caller identification and clinic-scoped authorization.

Two kinds of caller reach the API:

* the voice vendor, sending the shared secret in ``X-Elevenlabs-Secret``;
* clinic staff, sending ``Authorization: Bearer <jwt>`` whose ``sub`` is the
  account id used in ``clinic_users``.

Row access is decided here in code: a user may touch a clinic's rows only
through an active ``clinic_users`` membership whose role permits the action.
"""
from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from fastapi import Header
from jose import JWTError, jwt
from sqlalchemy import select
from sqlalchemy.orm import Session

from medizap import config
from medizap.errors import ApiError
from medizap.models import CLINIC_ROLES, ClinicUser

log = logging.getLogger(__name__)

ADMIN_ONLY = ("admin",)
ANY_MEMBER = CLINIC_ROLES


@dataclass
class Caller:
    kind: str  # "agent" or "user"
    user_id: Optional[str] = None

    @property
    def is_agent(self) -> bool:
        return self.kind == "agent"


def _unauthorized(message: str) -> ApiError:
    return ApiError(401, "Unauthorized", message)


def verify_shared_secret(provided: Optional[str]) -> bool:
    expected = config.ELEVENLABS_FUNCTION_SECRET
    if not expected or not provided:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def decode_bearer(authorization: Optional[str]) -> str:
    """Return the account id from a bearer token or raise 401."""
    if not authorization or not authorization.startswith("Bearer "):
        raise _unauthorized("Missing or invalid Authorization header")
    token = authorization[len("Bearer "):].strip()
    if not token or not config.JWT_SECRET:
        raise _unauthorized("Invalid or expired token")
    options = {"verify_aud": config.JWT_AUDIENCE is not None}
    try:
        claims = jwt.decode(
            token,
            config.JWT_SECRET,
            algorithms=[config.JWT_ALGORITHM],
            audience=config.JWT_AUDIENCE,
            options=options,
        )
    except JWTError as e:
        log.info("rejected bearer token: %s", e)
        raise _unauthorized("Invalid or expired token")
    sub = claims.get("sub")
    if not sub:
        raise _unauthorized("Token has no subject")
    return str(sub)


def get_caller(
    x_elevenlabs_secret: Optional[str] = Header(None),
    authorization: Optional[str] = Header(None),
) -> Caller:
    """Dependency for surfaces shared by the voice vendor and staff."""
    if x_elevenlabs_secret is not None:
        if verify_shared_secret(x_elevenlabs_secret):
            return Caller(kind="agent")
        raise _unauthorized("Invalid shared secret")
    return Caller(kind="user", user_id=decode_bearer(authorization))


def get_user_caller(authorization: Optional[str] = Header(None)) -> Caller:
    """Dependency for staff-only surfaces."""
    return Caller(kind="user", user_id=decode_bearer(authorization))


def clinic_ids_for(db: Session, user_id: str, roles: Optional[Iterable[str]] = None) -> list[str]:
    q = select(ClinicUser.clinic_id).where(ClinicUser.user_id == user_id, ClinicUser.is_active.is_(True))
    if roles is not None:
        q = q.where(ClinicUser.role.in_(list(roles)))
    return list(db.execute(q).scalars().all())


def membership(db: Session, user_id: str, clinic_id: str) -> Optional[ClinicUser]:
    return db.execute(
        select(ClinicUser).where(
            ClinicUser.clinic_id == clinic_id,
            ClinicUser.user_id == user_id,
            ClinicUser.is_active.is_(True),
        )
    ).scalar_one_or_none()


def require_clinic_role(db: Session, caller: Caller, clinic_id: str, roles: Iterable[str] = ANY_MEMBER) -> ClinicUser:
    """403 unless ``caller`` holds one of ``roles`` in ``clinic_id``."""
    if caller.is_agent or not caller.user_id:
        raise ApiError(403, "Forbidden", "This operation requires a clinic account")
    member = membership(db, caller.user_id, clinic_id)
    allowed = tuple(roles)
    if member is None or member.role not in allowed:
        raise ApiError(403, "Forbidden", f"Requires role {' or '.join(allowed)} in this clinic")
    return member
