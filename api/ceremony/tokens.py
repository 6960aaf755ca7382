"""Signer token lifecycle: mint, validate, reuse-or-rotate, revoke."""
import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Tuple
from itsdangerous import BadData
from sqlmodel import Session
from .config import FRONTEND_URL, SIGNING_TOKEN_EXPIRY_HOURS
from .errors import InvalidToken
from .models import Envelope, Signer, SignerStatus
from .utils import make_token, read_token, utcnow

logger = logging.getLogger(__name__)


@dataclass
class TokenContext:
    signer: Signer
    envelope: Envelope
    tenant_id: int


def signing_url(token: str) -> str:
    return f"{FRONTEND_URL}/sign/{token}"


def token_is_live(signer: Signer, now: Optional[datetime] = None) -> bool:
    if not signer.signing_token:
        return False
    if signer.token_expires_at is None:
        return True
    return signer.token_expires_at > (now or utcnow())


def mint(session: Session, signer: Signer, hours: Optional[int] = None) -> str:
    # the nonce carries the entropy; the signature lets malformed links fail before any lookup
    token = make_token({"signer_id": signer.id, "nonce": secrets.token_urlsafe(32)})
    signer.signing_token = token
    signer.token_expires_at = utcnow() + timedelta(hours=hours or SIGNING_TOKEN_EXPIRY_HOURS)
    session.add(signer)
    return token


def ensure_token(session: Session, signer: Signer) -> Tuple[str, bool]:
    """Reuse a still-valid token so links already delivered keep working."""
    if token_is_live(signer):
        return signer.signing_token, False
    token = mint(session, signer)
    logger.info("rotated signing token for signer %s", signer.id)
    return token, True


def revoke(session: Session, signer: Signer):
    signer.signing_token = None
    signer.token_expires_at = None
    session.add(signer)


def validate(
    session: Session,
    token: str,
    *,
    allow_completed: bool = False,
    tenant_id: Optional[int] = None,
) -> TokenContext:
    if not token:
        raise InvalidToken("missing token")
    try:
        data = read_token(token)
    except BadData:
        raise InvalidToken("malformed token")
    signer_id = data.get("signer_id") if isinstance(data, dict) else None
    signer = session.get(Signer, signer_id) if signer_id else None
    if not signer:
        raise InvalidToken("token not found")
    if not signer.signing_token or not hmac.compare_digest(signer.signing_token, token):
        raise InvalidToken("token revoked")
    if signer.token_expires_at and signer.token_expires_at <= utcnow():
        raise InvalidToken("token expired")
    allowed = set(SignerStatus.CAN_ACT)
    if allow_completed:
        allowed.add(SignerStatus.COMPLETED)
    if signer.status not in allowed:
        raise InvalidToken(f"signer has already {signer.status}")
    envelope = session.get(Envelope, signer.envelope_id)
    if not envelope:
        raise InvalidToken("token not found")
    if tenant_id is not None and envelope.organization_id != tenant_id:
        raise InvalidToken("token issued for another organization")
    return TokenContext(signer=signer, envelope=envelope, tenant_id=envelope.organization_id)
