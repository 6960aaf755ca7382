from typing import Optional
from fastapi import Depends, Header, HTTPException, Query, status
from pydantic import BaseModel
from sqlmodel import Session, select

from .config import ADMIN_ACCESS_TOKEN
from .db import get_session
from .models import Organization


class AccessContext(BaseModel):
    role: str
    organization_id: Optional[int] = None

    @property
    def actor(self) -> str:
        if self.role == "admin":
            return "user:admin"
        return f"user:org-{self.organization_id}"


def resolve_access_context(
    x_access_token: Optional[str] = Header(default=None, alias="X-Access-Token"),
    token: Optional[str] = Query(default=None),
    session: Session = Depends(get_session),
) -> AccessContext:
    candidate = x_access_token or token
    if not candidate:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing access token")
    if ADMIN_ACCESS_TOKEN and candidate == ADMIN_ACCESS_TOKEN:
        return AccessContext(role="admin")
    org = session.exec(select(Organization).where(Organization.access_token == candidate)).first()
    if org:
        return AccessContext(role="organization", organization_id=org.id)
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid access token")


def scope_for(context: AccessContext) -> Optional[int]:
    """Organization filter for envelope lookups; admins see every tenant."""
    return None if context.role == "admin" else context.organization_id
