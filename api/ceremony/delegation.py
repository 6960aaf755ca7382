"""Hand a signing slot to someone else.

The delegate takes over the original signer's place in the queue and every
field the original owned. The original keeps their row, marked ``delegated``,
so the audit trail still names both people.
"""
import logging
from sqlalchemy import update
from sqlmodel import Session, select
from . import audit, integrations, tokens
from .audit import ActorContext
from .audit_events import DelegatedData
from .db import lock_envelope
from .eligibility import can_sign
from .errors import InvalidStateError, NotFound, ValidationError
from .lifecycle import envelope_signers, notify_signers, require_active
from .models import Field, Signer, SignerStatus

logger = logging.getLogger(__name__)


def delegate(session: Session, token: str, delegate_name: str, delegate_email: str, ctx: ActorContext) -> Signer:
    tc = tokens.validate(session, token)
    env = lock_envelope(session, tc.envelope.id)
    if not env:
        raise NotFound("envelope not found")
    original = tc.signer
    session.refresh(original)
    require_active(env)
    if original.status not in SignerStatus.CAN_ACT:
        raise InvalidStateError(f"signer has already {original.status}")
    if original.viewed_at or original.consented_at:
        raise InvalidStateError("signing cannot be delegated after the document was opened")

    delegate_name = (delegate_name or "").strip()
    delegate_email = (delegate_email or "").strip()
    if not delegate_name or "@" not in delegate_email:
        raise ValidationError("delegate name and a valid email are required")
    if delegate_email.lower() == original.email.lower():
        raise ValidationError("cannot delegate to yourself")

    substitute = Signer(
        envelope_id=env.id,
        name=delegate_name,
        email=delegate_email,
        role=original.role,
        order=original.order,
        signing_group=original.signing_group,
        status=SignerStatus.PENDING,
        delegated_from=original.id,
        notification_channel=original.notification_channel,
        phone=original.phone,
    )
    session.add(substitute)
    session.flush()

    field_ids = session.exec(select(Field.id).where(Field.signer_id == original.id)).all()
    session.exec(update(Field).where(Field.signer_id == original.id).values(signer_id=substitute.id))

    original.status = SignerStatus.DELEGATED
    tokens.revoke(session, original)
    tokens.mint(session, substitute)
    audit.record(session, env.id, DelegatedData(
        from_signer_id=original.id,
        from_name=original.name,
        from_email=original.email,
        to_signer_id=substitute.id,
        to_name=substitute.name,
        to_email=substitute.email,
        reassigned_field_ids=list(field_ids),
    ), ctx, signer_id=original.id)
    session.commit()
    logger.info("signer %s delegated envelope %s to signer %s", original.id, env.id, substitute.id)

    signers = envelope_signers(session, env.id)
    if can_sign(substitute, env, signers):
        notify_signers(session, env, [substitute])
    integrations.emit(integrations.SIGNER_DELEGATED, integrations.signer_payload(
        env, original, delegate={"id": substitute.id, "name": substitute.name, "email": substitute.email},
    ))
    session.refresh(substitute)
    return substitute
