from __future__ import annotations

import os
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import jwt, JWTError
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from app.core.errors import Forbidden, Unauthorized
from app.core.tenant import get_tenant_id
from app.db.models.auth import User
from app.db.session import get_db

bearer = HTTPBearer(auto_error=False)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALG = os.getenv("JWT_ALG", "HS256")
JWT_TTL_MIN = int(os.getenv("JWT_TTL_MIN", "480"))  # one shift

IAM_ISSUER = os.getenv("IAM_ISSUER", "textile-iam")
IAM_AUDIENCE = os.getenv("IAM_AUDIENCE", "textile-routing")


@dataclass
class Grant:
    role: str
    scope_type: str
    scope_id: str
    perms: list[str]


@dataclass
class Principal:
    user_id: str | None = None
    username: str = "anonymous"
    tenant_id: str = "default"
    grants: list[Grant] | None = None
    department_id: str | None = None

    @property
    def roles(self) -> list[str]:
        return sorted({g.role for g in (self.grants or [])})

    @property
    def permissions(self) -> list[str]:
        perms: set[str] = set()
        for g in (self.grants or []):
            perms.update(g.perms)
        return sorted(perms)

    def has_permission(self, perm: str, scope_type: str | None = None, scope_id: str | None = None) -> bool:
        for g in (self.grants or []):
            if perm not in (g.perms or []):
                continue
            if scope_type is None and scope_id is None:
                return True
            if scope_type is not None and g.scope_type != scope_type:
                continue
            if scope_id is not None and g.scope_id != scope_id:
                continue
            return True
        return False


def _anonymous(tenant_id: str | None = None) -> Principal:
    return Principal(user_id=None, username="anonymous", tenant_id=tenant_id or get_tenant_id(), grants=[])


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return pwd_context.verify(password, password_hash)
    except ValueError:
        # Unknown or malformed hash
        return False


def _get_user_grants(db: Session, user: User, tenant_id: str) -> list[Grant]:
    grants: list[Grant] = []
    for ur in user.roles:
        if ur.tenant_id != tenant_id:
            continue
        role = ur.role
        if not role:
            continue
        perms = [rp.permission.code for rp in role.permissions if rp.permission]
        grants.append(
            Grant(
                role=role.name,
                scope_type=ur.scope_type,
                scope_id=ur.scope_id,
                perms=sorted(set(perms)),
            )
        )
    return grants


def create_access_token(db: Session, user_id: str, tenant_id: str | None = None) -> str:
    tenant_id = tenant_id or get_tenant_id()
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise Unauthorized("Unknown user")
    grants = _get_user_grants(db, user, tenant_id)
    now = datetime.now(timezone.utc)
    payload = {
        "iss": IAM_ISSUER,
        "aud": IAM_AUDIENCE,
        "jti": secrets.token_urlsafe(16),
        "sub": user.id,
        "tid": tenant_id,
        "email": user.email,
        "dept": user.department_id,
        "grants": [
            {
                "role": g.role,
                "scope_type": g.scope_type,
                "scope_id": g.scope_id,
                "perms": g.perms,
            }
            for g in grants
        ],
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=JWT_TTL_MIN)).timestamp()),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)


def get_principal(
    creds: HTTPAuthorizationCredentials | None = Depends(bearer),
    db: Session = Depends(get_db),
) -> Principal:
    if not creds or not creds.credentials:
        return _anonymous()

    try:
        payload = jwt.decode(
            creds.credentials,
            JWT_SECRET,
            algorithms=[JWT_ALG],
            audience=IAM_AUDIENCE,
            issuer=IAM_ISSUER,
        )
    except JWTError:
        return _anonymous()

    user_id = payload.get("sub")
    tenant_id = payload.get("tid") or get_tenant_id()
    grants: list[Grant] = []
    for g in payload.get("grants") or []:
        if not isinstance(g, dict):
            continue
        grants.append(
            Grant(
                role=str(g.get("role")),
                scope_type=str(g.get("scope_type")),
                scope_id=str(g.get("scope_id")),
                perms=list(g.get("perms") or []),
            )
        )
    # Deactivated users lose access before their token expires.
    user = db.query(User).filter(User.id == user_id).first()
    if not user or not user.is_active:
        return _anonymous(tenant_id)
    return Principal(
        user_id=user.id,
        username=payload.get("email") or user.email,
        tenant_id=tenant_id,
        grants=grants,
        department_id=user.department_id,
    )


def current_user(principal: Principal = Depends(get_principal)) -> Principal:
    """Authenticated caller; actor fields are stamped from it."""
    if not principal.user_id:
        raise Unauthorized("Not authenticated")
    return principal


def require_permissions(required: Iterable[str], scope_type: str | None = None, scope_id: str | None = None) -> Callable:
    required_set = set(required)

    def _dep(principal: Principal = Depends(current_user)) -> Principal:
        missing = [p for p in required_set if not principal.has_permission(p, scope_type=scope_type, scope_id=scope_id)]
        if missing:
            raise Forbidden(
                "Missing permissions",
                missing=sorted(missing),
                scope_type=scope_type,
                scope_id=scope_id,
            )
        return principal

    return _dep
