"""Append-only audit trail.

Rows are written inside the caller's transaction, so an action and its history
commit or roll back together. Each row is chained to the previous row of the same
envelope through ``prev_hash``; ``verify_chain`` walks the chain back.
"""
import logging
from typing import List, Optional
from pydantic import BaseModel
from sqlmodel import Session, select
from .models import AuditEvent
from .utils import canonical_json, sha256_bytes

logger = logging.getLogger(__name__)

GENESIS_HASH = "0" * 64


class ActorContext(BaseModel):
    actor: str = "system"
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    geolocation: Optional[str] = None


SYSTEM = ActorContext(actor="system")


def signer_actor(signer_id: int, ip=None, ua=None, geo=None) -> ActorContext:
    return ActorContext(actor=f"signer:{signer_id}", ip_address=ip, user_agent=ua, geolocation=geo)


def _chain_hash(prev_hash: str, event_type: str, actor: str, signer_id, event_data: str) -> str:
    payload = canonical_json({
        "actor": actor,
        "event_type": event_type,
        "signer_id": signer_id,
        "event_data": event_data,
    })
    return sha256_bytes((prev_hash + payload).encode())


def record(
    session: Session,
    envelope_id: int,
    payload: BaseModel,
    ctx: ActorContext = SYSTEM,
    signer_id: Optional[int] = None,
) -> AuditEvent:
    last = session.exec(
        select(AuditEvent).where(AuditEvent.envelope_id == envelope_id).order_by(AuditEvent.id.desc())
    ).first()
    prev_hash = last.hash if last else GENESIS_HASH
    event_type = payload.event_type
    event_data = canonical_json(payload.model_dump(mode="json"))
    ev = AuditEvent(
        envelope_id=envelope_id,
        signer_id=signer_id,
        event_type=event_type,
        event_data=event_data,
        actor=ctx.actor,
        ip_address=ctx.ip_address,
        user_agent=ctx.user_agent,
        geolocation=ctx.geolocation,
        prev_hash=prev_hash,
    )
    ev.hash = _chain_hash(prev_hash, event_type, ctx.actor, signer_id, event_data)
    session.add(ev)
    session.flush()
    logger.debug("audit %s envelope=%s signer=%s", event_type, envelope_id, signer_id)
    return ev


def events_for_envelope(session: Session, envelope_id: int) -> List[AuditEvent]:
    return session.exec(
        select(AuditEvent).where(AuditEvent.envelope_id == envelope_id).order_by(AuditEvent.id)
    ).all()


def events_for_signer(session: Session, signer_id: int) -> List[AuditEvent]:
    return session.exec(
        select(AuditEvent).where(AuditEvent.signer_id == signer_id).order_by(AuditEvent.id)
    ).all()


def event_counts(session: Session, envelope_id: int) -> dict:
    counts: dict = {}
    for ev in events_for_envelope(session, envelope_id):
        counts[ev.event_type] = counts.get(ev.event_type, 0) + 1
    return counts


def verify_chain(events: List[AuditEvent]) -> bool:
    prev_hash = GENESIS_HASH
    for ev in events:
        if ev.prev_hash != prev_hash:
            return False
        expected = _chain_hash(prev_hash, ev.event_type, ev.actor, ev.signer_id, ev.event_data)
        if ev.hash != expected:
            return False
        prev_hash = ev.hash
    return True
