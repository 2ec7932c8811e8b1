"""
Tenant authorization check

caller=None is the trusted background identity (scheduler, scripts) and
is always allowed.
"""
from typing import Optional

from sqlalchemy.orm import Session

from app.exceptions import UnauthorizedTenantAccess
from app.models.tenant import TenantMember


def is_authorized(db: Session, tenant_id: int, caller: Optional[str]) -> bool:
    if caller is None:
        return True
    return db.query(TenantMember.id).filter(
        TenantMember.tenant_id == tenant_id,
        TenantMember.user_id == str(caller),
    ).first() is not None


def require_tenant_access(db: Session, tenant_id: int, caller: Optional[str]) -> None:
    """Raise UnauthorizedTenantAccess unless the caller may act on the tenant."""
    if not is_authorized(db, tenant_id, caller):
        raise UnauthorizedTenantAccess(tenant_id, str(caller))
