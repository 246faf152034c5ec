from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, EmailStr
from sqlalchemy.orm import Session

from app.core.errors import Conflict, Forbidden, InvalidInput, NotFound, Unauthorized
from app.core.security import (
    Principal,
    create_access_token,
    current_user,
    hash_password,
    require_permissions,
    verify_password,
)
from app.db.models.auth import Permission, Role, RolePermission, User, UserRole
from app.db.session import get_db
from services.directory.service import get_department

router = APIRouter(prefix="/auth", tags=["auth"])


class RegisterIn(BaseModel):
    email: EmailStr
    password: str
    full_name: str | None = ""
    department_id: str | None = None


class LoginIn(BaseModel):
    email: EmailStr
    password: str


class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"


DEFAULT_PERMISSIONS = [
    ("auth.user.manage", "Manage users and grants"),
    ("sales:manage_orders", "Register, hold and cancel orders"),
    ("planning:manage_plans", "Plan production"),
    ("inventory:manage_materials", "Prepare raw materials"),
    ("inventory:manage_storage", "Move fabric into storage"),
    ("weaving:manage_workorders", "Run weaving work orders"),
    ("finishing:manage_processes", "Run finishing processes"),
    ("quality:manage_checks", "Run quality checks"),
    ("shipping:manage_shipments", "Prepare and ship orders"),
]

DEFAULT_ROLES = {
    "ADMIN": ("System administrator", [p[0] for p in DEFAULT_PERMISSIONS]),
    "SALES": ("Sales and customer service", ["sales:manage_orders"]),
    "PLANNER": ("Production planning", ["planning:manage_plans", "inventory:manage_materials"]),
    "WEAVING": ("Weaving department", ["weaving:manage_workorders"]),
    "FINISHING": ("Finishing department", ["finishing:manage_processes"]),
    "QUALITY": ("Quality control", ["quality:manage_checks"]),
    "WAREHOUSE": ("Storage and materials", ["inventory:manage_storage", "inventory:manage_materials"]),
    "SHIPPING": ("Shipping", ["shipping:manage_shipments"]),
    "OPERATOR": ("Shop-floor operator", []),
}


def ensure_seed(db: Session) -> None:
    """Create the default roles and permission tags that are missing."""
    perm_objs = {}
    for code, desc in DEFAULT_PERMISSIONS:
        p = db.query(Permission).filter(Permission.code == code).first()
        if not p:
            p = Permission(code=code, description=desc)
            db.add(p)
        perm_objs[code] = p
    db.flush()

    for name, (desc, perm_codes) in DEFAULT_ROLES.items():
        role = db.query(Role).filter(Role.name == name).first()
        if not role:
            role = Role(name=name, description=desc)
            db.add(role)
            db.flush()
        existing = {rp.permission.code for rp in role.permissions if rp.permission}
        for code in perm_codes:
            if code not in existing:
                role.permissions.append(RolePermission(permission=perm_objs[code]))
    db.commit()


def _grant(db: Session, user: User, role_name: str, tenant_id: str, scope_type: str = "TENANT", scope_id: str | None = None) -> bool:
    role = db.query(Role).filter(Role.name == role_name).first()
    if not role:
        raise NotFound("Role not found", role=role_name)
    scope_id = scope_id or tenant_id
    exists = (
        db.query(UserRole)
        .filter(
            UserRole.tenant_id == tenant_id,
            UserRole.user_id == user.id,
            UserRole.role_id == role.id,
            UserRole.scope_type == scope_type,
            UserRole.scope_id == scope_id,
        )
        .first()
    )
    if exists:
        return False
    db.add(UserRole(tenant_id=tenant_id, user_id=user.id, role_id=role.id, scope_type=scope_type, scope_id=scope_id))
    return True


@router.post("/register", response_model=TokenOut)
def register(payload: RegisterIn, request: Request, db: Session = Depends(get_db)):
    ensure_seed(db)
    # The very first account on a fresh install becomes ADMIN.
    is_first_user = db.query(User).count() == 0

    if len(payload.password) < 8:
        raise InvalidInput("Password must be at least 8 characters")
    if db.query(User).filter(User.email == payload.email).first():
        raise Conflict("Email already registered", email=payload.email)
    if payload.department_id:
        get_department(db, payload.department_id)

    user = User(
        email=payload.email,
        full_name=payload.full_name or "",
        password_hash=hash_password(payload.password),
        department_id=payload.department_id,
    )
    db.add(user)
    db.flush()

    tenant_id = request.headers.get("X-Tenant-Id") or "default"
    _grant(db, user, "ADMIN" if is_first_user else "OPERATOR", tenant_id)
    db.commit()
    return TokenOut(access_token=create_access_token(db, user.id, tenant_id=tenant_id))


@router.post("/login", response_model=TokenOut)
def login(payload: LoginIn, request: Request, db: Session = Depends(get_db)):
    user = db.query(User).filter(User.email == payload.email).first()
    if not user or not verify_password(payload.password, user.password_hash):
        raise Unauthorized("Invalid email or password")
    if not user.is_active:
        raise Forbidden("User is inactive")
    tenant_id = request.headers.get("X-Tenant-Id") or "default"
    return TokenOut(access_token=create_access_token(db, user.id, tenant_id=tenant_id))


@router.get("/me")
def me(principal: Principal = Depends(current_user)):
    return {
        "user_id": principal.user_id,
        "email": principal.username,
        "tenant_id": principal.tenant_id,
        "department_id": principal.department_id,
        "roles": principal.roles,
        "permissions": principal.permissions,
    }


class GrantRoleIn(BaseModel):
    user_email: EmailStr
    role_name: str
    tenant_id: str | None = None
    scope_type: str = "TENANT"
    scope_id: str | None = None


@router.post("/grant-role", dependencies=[Depends(require_permissions(["auth.user.manage"]))])
def grant_role(payload: GrantRoleIn, db: Session = Depends(get_db)):
    user = db.query(User).filter(User.email == payload.user_email).first()
    if not user:
        raise NotFound("User not found", email=payload.user_email)
    created = _grant(db, user, payload.role_name, payload.tenant_id or "default", payload.scope_type, payload.scope_id)
    db.commit()
    return {"ok": True, "created": created}
