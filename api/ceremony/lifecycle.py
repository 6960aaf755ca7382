"""Envelope state machine.

draft -> sent -> in_progress -> completed, with voided reachable from any
non-terminal state and expired set by the background sweep. Every accepted
operation takes the envelope row lock, validates before writing, records one
audit event and commits once. Notifications, integration events and the
sealing hand-off happen after the commit.
"""
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple
from pypdf.errors import PdfReadError
from sqlalchemy import update
from sqlmodel import Session, select
from . import audit, integrations, notifications, storage, tokens
from .audit import ActorContext, SYSTEM
from .audit_events import (
    CommentedData, ConsentGivenData, CorrectedData, CreatedData, DeclinedData,
    DocumentAddedData, ExpiredData, RemindedData, SentData, SignedData,
    TransferredData, ViewedData, VoidedData,
)
from .config import REMINDER_INTERVAL_HOURS, SEAL_STALL_MINUTES
from .db import lock_envelope
from .eligibility import can_sign, next_signers, outstanding_signers
from .errors import InvalidStateError, NotFound, NotYourTurn, ValidationError
from .models import (
    FIELD_TYPES, AuditEvent, Comment, Document, Envelope, EnvelopeStatus, Field,
    Signer, SignerRole, SignerStatus, SigningOrder,
)
from .schemas import EnvelopeCorrection, EnvelopeCreate, FieldCreate, SignerCreate
from .sealing.stamping import is_checked, is_empty, page_count
from .utils import as_utc, b64png_to_bytes, is_image_data_url, sha256_bytes, utcnow

logger = logging.getLogger(__name__)


@dataclass
class SignatureResult:
    envelope: Envelope
    signer: Signer
    sealing_triggered: bool


# ---------- helpers ----------

def enqueue_sealing(envelope_id: int):
    from .tasks import seal_envelope_task
    seal_envelope_task.delay(envelope_id)


def _dispatch_sealing(envelope_id: int):
    try:
        enqueue_sealing(envelope_id)
    except Exception:
        # the stalled-sealing sweep picks this envelope up again
        logger.exception("could not enqueue sealing for envelope %s", envelope_id)


def get_envelope(session: Session, envelope_id: int, organization_id: Optional[int] = None) -> Envelope:
    env = session.get(Envelope, envelope_id)
    if not env or (organization_id is not None and env.organization_id != organization_id):
        raise NotFound(f"envelope {envelope_id} not found")
    return env


def _locked(session: Session, envelope_id: int, organization_id: Optional[int] = None) -> Envelope:
    env = lock_envelope(session, envelope_id, organization_id)
    if not env:
        raise NotFound(f"envelope {envelope_id} not found")
    return env


def envelope_signers(session: Session, envelope_id: int) -> List[Signer]:
    return session.exec(
        select(Signer).where(Signer.envelope_id == envelope_id).order_by(Signer.order, Signer.id)
    ).all()


def envelope_fields(session: Session, envelope_id: int) -> List[Field]:
    return session.exec(select(Field).where(Field.envelope_id == envelope_id).order_by(Field.page, Field.id)).all()


def envelope_documents(session: Session, envelope_id: int) -> List[Document]:
    return session.exec(
        select(Document).where(Document.envelope_id == envelope_id).order_by(Document.order, Document.id)
    ).all()


def _reload_signer(session: Session, signer: Signer) -> Signer:
    session.refresh(signer)
    if signer.status not in SignerStatus.CAN_ACT:
        raise InvalidStateError(f"signer has already {signer.status}")
    return signer


def require_active(env: Envelope):
    if env.status not in EnvelopeStatus.ACTIVE:
        raise InvalidStateError(f"envelope is {env.status}")


def _signer_problems(s: SignerCreate, label: str) -> List[str]:
    problems = []
    if s.role not in SignerRole.ALL:
        problems.append(f"{label}: unknown role {s.role!r}")
    if not s.name.strip() or "@" not in s.email:
        problems.append(f"{label}: name and a valid email are required")
    if s.order is not None and s.order < 1:
        problems.append(f"{label}: order is 1-based")
    return problems


def _field_problems(f: FieldCreate, label: str) -> List[str]:
    problems = []
    if f.type not in FIELD_TYPES:
        problems.append(f"{label}: unknown field type {f.type!r}")
    if f.page < 1:
        problems.append(f"{label}: page is 1-based")
    for name in ("x", "y", "width", "height"):
        value = getattr(f, name)
        if not 0 <= value <= 100:
            problems.append(f"{label}: {name} must be within 0..100")
    if f.x + f.width > 100 or f.y + f.height > 100:
        problems.append(f"{label}: field extends past the page edge")
    if f.type in ("radio", "dropdown") and not f.options:
        problems.append(f"{label}: {f.type} fields need options")
    return problems


def _new_signer(envelope_id: int, s: SignerCreate, order: int, status: str) -> Signer:
    return Signer(
        envelope_id=envelope_id,
        name=s.name.strip(),
        email=s.email.strip(),
        role=s.role,
        order=s.order or order,
        signing_group=s.signing_group,
        status=status,
        notification_channel=s.notification_channel,
        phone=s.phone,
    )


def _new_field(envelope_id: int, f: FieldCreate, signer_id: Optional[int]) -> Field:
    return Field(
        envelope_id=envelope_id,
        document_id=f.document_id,
        signer_id=signer_id,
        type=f.type,
        page=f.page,
        x=f.x,
        y=f.y,
        width=f.width,
        height=f.height,
        required=f.required,
        label=f.label,
        options_json=json.dumps(f.options) if f.options else None,
    )


def _missing_signature_fields(signers: List[Signer], fields: List[Field]) -> List[Signer]:
    owners = {f.signer_id for f in fields if f.type == "signature"}
    return [
        s for s in signers
        if s.role == SignerRole.SIGNER and s.status in SignerStatus.AWAITING and s.id not in owners
    ]


def notify_signers(session: Session, env: Envelope, signers: List[Signer], reminder: bool = False) -> List[int]:
    notified = []
    for s in signers:
        if not s.signing_token:
            continue
        if notifications.notify_signer(s, env, tokens.signing_url(s.signing_token), reminder=reminder):
            notified.append(s.id)
            if s.status == SignerStatus.PENDING:
                s.status = SignerStatus.NOTIFIED
                session.add(s)
    if notified:
        session.commit()
    return notified


def _notify_newly_eligible(session: Session, env: Envelope):
    signers = envelope_signers(session, env.id)
    fresh = [s for s in next_signers(env, signers) if s.status == SignerStatus.PENDING]
    notify_signers(session, env, fresh)


def _void(session: Session, env: Envelope, reason: str, ctx: ActorContext) -> List[int]:
    revoked = []
    for s in envelope_signers(session, env.id):
        if s.signing_token:
            tokens.revoke(session, s)
            revoked.append(s.id)
    env.status = EnvelopeStatus.VOIDED
    env.voided_at = utcnow()
    env.void_reason = reason
    session.add(env)
    audit.record(session, env.id, VoidedData(reason=reason, revoked_signer_ids=revoked), ctx)
    return revoked


# ---------- creation ----------

def create_envelope(session: Session, organization_id: int, data: EnvelopeCreate, ctx: ActorContext = SYSTEM) -> Envelope:
    problems = []
    if data.signing_order not in SigningOrder.ALL:
        problems.append(f"unknown signing order {data.signing_order!r}")
    if not data.signers:
        problems.append("an envelope needs at least one signer")
    for idx, s in enumerate(data.signers):
        problems.extend(_signer_problems(s, f"signer {idx + 1}"))
    for idx, f in enumerate(data.fields):
        problems.extend(_field_problems(f, f"field {idx + 1}"))
    keys = {s.client_id or s.email for s in data.signers}
    for idx, f in enumerate(data.fields):
        if f.signer_key and f.signer_key not in keys:
            problems.append(f"field {idx + 1}: unknown signer {f.signer_key!r}")
    if problems:
        raise ValidationError("; ".join(problems), problems)

    env = Envelope(
        organization_id=organization_id,
        created_by=ctx.actor,
        subject=data.subject,
        message=data.message,
        signing_order=data.signing_order,
        expires_at=data.expires_at,
        requester_name=data.requester_name,
        requester_email=data.requester_email,
        status=EnvelopeStatus.DRAFT,
    )
    session.add(env)
    session.flush()

    signer_key_map: Dict[str, int] = {}
    for idx, s in enumerate(data.signers):
        signer = _new_signer(env.id, s, idx + 1, SignerStatus.DRAFT)
        session.add(signer)
        session.flush()
        signer_key_map[s.client_id or s.email] = signer.id
    for f in data.fields:
        session.add(_new_field(env.id, f, signer_key_map.get(f.signer_key) if f.signer_key else None))

    audit.record(session, env.id, CreatedData(
        subject=env.subject, signer_count=len(data.signers), signing_order=env.signing_order,
    ), ctx)
    session.commit()
    session.refresh(env)
    logger.info("envelope %s created with %d signer(s)", env.id, len(data.signers))
    return env


def add_document(
    session: Session,
    envelope_id: int,
    organization_id: Optional[int],
    filename: str,
    content_type: str,
    data: bytes,
    ctx: ActorContext = SYSTEM,
) -> Document:
    env = _locked(session, envelope_id, organization_id)
    if env.status != EnvelopeStatus.DRAFT:
        raise InvalidStateError(f"documents can only be added while draft (envelope is {env.status})")
    if not data:
        raise ValidationError("document is empty")
    try:
        pages = page_count(data)
    except (PdfReadError, ValueError) as exc:
        raise ValidationError(f"{filename} is not a readable PDF: {exc}")
    existing = envelope_documents(session, env.id)
    key = storage.store_document(data, envelope_id=env.id, name=filename, content_type=content_type)
    doc = Document(
        envelope_id=env.id,
        filename=filename,
        content_type=content_type or "application/pdf",
        storage_key=key,
        document_hash=sha256_bytes(data),
        page_count=pages,
        order=len(existing),
    )
    session.add(doc)
    if not existing:
        env.document_key = key
        session.add(env)
    session.flush()
    audit.record(session, env.id, DocumentAddedData(
        document_id=doc.id, filename=filename, document_hash=doc.document_hash,
    ), ctx)
    session.commit()
    session.refresh(doc)
    return doc


# ---------- send ----------

def send_envelope(session: Session, envelope_id: int, organization_id: Optional[int] = None, ctx: ActorContext = SYSTEM) -> Envelope:
    env = _locked(session, envelope_id, organization_id)
    if env.status != EnvelopeStatus.DRAFT:
        raise InvalidStateError(f"envelope is not in draft status (current: {env.status})")
    signers = envelope_signers(session, env.id)
    fields = envelope_fields(session, env.id)
    documents = envelope_documents(session, env.id)

    problems = []
    if not signers:
        problems.append("envelope has no signers")
    if not documents:
        problems.append("envelope has no documents")
    missing = _missing_signature_fields(signers, fields)
    if missing:
        names = ", ".join(f"{s.name} <{s.email}>" for s in missing)
        problems.append(f"signers without a signature field: {names}")
    if documents:
        pages = {d.id: d.page_count for d in documents}
        for f in fields:
            doc_id = f.document_id or documents[0].id
            if doc_id not in pages:
                problems.append(f"field {f.id} references unknown document {doc_id}")
            elif f.page > pages[doc_id]:
                problems.append(f"field {f.id} is on page {f.page} of a {pages[doc_id]}-page document")
    if env.expires_at and env.expires_at <= utcnow():
        problems.append("expiry date is in the past")
    if problems:
        raise ValidationError("; ".join(problems), problems)

    for s in signers:
        tokens.mint(session, s)
        s.status = SignerStatus.PENDING
        session.add(s)
    env.status = EnvelopeStatus.SENT
    env.sent_at = utcnow()
    session.add(env)
    eligible = next_signers(env, signers)
    audit.record(session, env.id, SentData(
        signer_count=len(signers), notified_signer_ids=[s.id for s in eligible],
    ), ctx)
    session.commit()
    logger.info("envelope %s sent to %d signer(s)", env.id, len(signers))

    notify_signers(session, env, eligible)
    integrations.emit(integrations.ENVELOPE_SENT, integrations.envelope_payload(env))
    session.refresh(env)
    return env


# ---------- ceremony actions ----------

def validate_values(fields: List[Field], values: Dict[str, object]) -> List[str]:
    problems = []
    owned = {str(f.id): f for f in fields}
    for key in values:
        if str(key) not in owned:
            problems.append(f"field {key} is not assigned to this signer")
    for f in fields:
        value = values.get(str(f.id))
        label = f.label or f"{f.type} field {f.id}"
        if is_empty(value):
            if f.required:
                problems.append(f"{label} is required")
            continue
        if f.type == "checkbox":
            if f.required and not is_checked(value):
                problems.append(f"{label} must be checked")
        elif f.type in ("number", "currency"):
            try:
                float(value)
            except (TypeError, ValueError):
                problems.append(f"{label} must be a number")
        elif f.type in ("radio", "dropdown") and f.options_json:
            if str(value) not in json.loads(f.options_json):
                problems.append(f"{label} must be one of the offered options")
        elif f.type in ("signature", "initial", "attachment") and is_image_data_url(value):
            try:
                b64png_to_bytes(value)
            except ValueError:
                problems.append(f"{label} image could not be decoded")
    return problems


def _store_value(value) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def record_signature(session: Session, token: str, values: Dict[str, object], ctx: ActorContext) -> SignatureResult:
    tc = tokens.validate(session, token)
    env = _locked(session, tc.envelope.id)
    signer = _reload_signer(session, tc.signer)
    require_active(env)
    signers = envelope_signers(session, env.id)
    if not can_sign(signer, env, signers):
        raise NotYourTurn("earlier signers have not finished yet")
    own_fields = [f for f in envelope_fields(session, env.id) if f.signer_id == signer.id]
    values = {str(k): v for k, v in (values or {}).items()}
    problems = validate_values(own_fields, values)
    if problems:
        raise ValidationError("; ".join(problems), problems)

    now = utcnow()
    written = []
    for f in own_fields:
        value = values.get(str(f.id))
        if is_empty(value):
            continue
        f.value = _store_value(value)
        f.filled_at = now
        session.add(f)
        written.append(f.id)
    signer.status = SignerStatus.COMPLETED
    signer.signed_at = now
    signer.ip_address = ctx.ip_address or signer.ip_address
    signer.user_agent = ctx.user_agent or signer.user_agent
    session.add(signer)
    if env.status == EnvelopeStatus.SENT:
        env.status = EnvelopeStatus.IN_PROGRESS
        session.add(env)
    audit.record(session, env.id, SignedData(field_ids=written, field_count=len(written)), ctx, signer_id=signer.id)
    session.flush()

    sealing_triggered = False
    if not outstanding_signers(signers):
        # exactly one submitter wins the right to trigger sealing
        result = session.exec(
            update(Envelope)
            .where(Envelope.id == env.id, Envelope.sealing_requested_at.is_(None))
            .values(sealing_requested_at=now)
        )
        sealing_triggered = result.rowcount == 1
    session.commit()
    logger.info("signer %s signed envelope %s (sealing=%s)", signer.id, env.id, sealing_triggered)

    integrations.emit(integrations.SIGNER_COMPLETED, integrations.signer_payload(env, signer))
    if sealing_triggered:
        _dispatch_sealing(env.id)
    else:
        _notify_newly_eligible(session, env)
    session.refresh(env)
    return SignatureResult(envelope=env, signer=signer, sealing_triggered=sealing_triggered)


def decline(session: Session, token: str, reason: Optional[str], ctx: ActorContext) -> Envelope:
    tc = tokens.validate(session, token)
    env = _locked(session, tc.envelope.id)
    signer = _reload_signer(session, tc.signer)
    require_active(env)
    reason = (reason or "").strip() or "No reason provided"

    signer.status = SignerStatus.DECLINED
    signer.declined_at = utcnow()
    signer.decline_reason = reason
    signer.ip_address = ctx.ip_address or signer.ip_address
    signer.user_agent = ctx.user_agent or signer.user_agent
    tokens.revoke(session, signer)
    audit.record(session, env.id, DeclinedData(reason=reason), ctx, signer_id=signer.id)
    # one refusal ends the whole ceremony
    _void(session, env, f"Declined by {signer.name}: {reason}", ctx)
    session.commit()
    logger.info("signer %s declined envelope %s; envelope voided", signer.id, env.id)

    integrations.emit(integrations.SIGNER_DECLINED, integrations.signer_payload(env, signer, reason=reason))
    integrations.emit(integrations.ENVELOPE_VOIDED, integrations.envelope_payload(env))
    session.refresh(env)
    return env


def record_view(session: Session, token: str, ctx: ActorContext, document_id: Optional[int] = None) -> Signer:
    tc = tokens.validate(session, token)
    env = _locked(session, tc.envelope.id)
    signer = _reload_signer(session, tc.signer)
    require_active(env)
    if signer.viewed_at is None:
        signer.viewed_at = utcnow()
        session.add(signer)
    audit.record(session, env.id, ViewedData(document_id=document_id), ctx, signer_id=signer.id)
    session.commit()
    return signer


def record_consent(session: Session, token: str, ctx: ActorContext) -> Signer:
    tc = tokens.validate(session, token)
    env = _locked(session, tc.envelope.id)
    signer = _reload_signer(session, tc.signer)
    require_active(env)
    signer.consented_at = utcnow()
    signer.ip_address = ctx.ip_address or signer.ip_address
    signer.user_agent = ctx.user_agent or signer.user_agent
    session.add(signer)
    audit.record(session, env.id, ConsentGivenData(
        ip_address=ctx.ip_address, user_agent=ctx.user_agent,
    ), ctx, signer_id=signer.id)
    session.commit()
    return signer


def add_comment(session: Session, token: str, body: str, field_id: Optional[int], ctx: ActorContext) -> Comment:
    tc = tokens.validate(session, token)
    env = _locked(session, tc.envelope.id)
    signer = _reload_signer(session, tc.signer)
    require_active(env)
    body = (body or "").strip()
    if not body:
        raise ValidationError("comment is empty")
    if field_id is not None:
        field = session.get(Field, field_id)
        if not field or field.envelope_id != env.id:
            raise ValidationError(f"field {field_id} does not belong to this envelope")
    comment = Comment(envelope_id=env.id, signer_id=signer.id, field_id=field_id, body=body)
    session.add(comment)
    session.flush()
    audit.record(session, env.id, CommentedData(comment_id=comment.id, field_id=field_id), ctx, signer_id=signer.id)
    session.commit()
    session.refresh(comment)
    notifications.notify_comment(comment, signer, env)
    return comment


def list_comments(session: Session, envelope_id: int) -> List[Comment]:
    return session.exec(
        select(Comment).where(Comment.envelope_id == envelope_id).order_by(Comment.id)
    ).all()


# ---------- sender actions ----------

def void_envelope(session: Session, envelope_id: int, reason: str, organization_id: Optional[int] = None, ctx: ActorContext = SYSTEM) -> Envelope:
    env = _locked(session, envelope_id, organization_id)
    if env.status not in EnvelopeStatus.VOIDABLE:
        raise InvalidStateError(f"cannot void envelope with status: {env.status}")
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("a void reason is required")
    _void(session, env, reason, ctx)
    session.commit()
    logger.info("envelope %s voided: %s", env.id, reason)
    integrations.emit(integrations.ENVELOPE_VOIDED, integrations.envelope_payload(env))
    session.refresh(env)
    return env


def correct_envelope(
    session: Session,
    envelope_id: int,
    correction: EnvelopeCorrection,
    organization_id: Optional[int] = None,
    ctx: ActorContext = SYSTEM,
) -> Envelope:
    env = _locked(session, envelope_id, organization_id)
    if env.status not in EnvelopeStatus.CORRECTABLE:
        raise InvalidStateError(f"cannot correct envelope with status: {env.status}")
    is_sent = env.status == EnvelopeStatus.SENT
    changes: Dict[str, object] = {}

    both = {u.signer_id for u in correction.update_signers} & set(correction.remove_signer_ids)
    if both:
        raise ValidationError(f"signers both updated and removed: {sorted(both)}")

    metadata = correction.model_dump(include={"subject", "message", "expires_at"}, exclude_none=True)
    if metadata:
        if is_sent:
            raise InvalidStateError("subject, message and expiry can only change while draft")
        for key, value in metadata.items():
            changes[key] = {"from": getattr(env, key), "to": value}
            setattr(env, key, value)
        session.add(env)

    signers = {s.id: s for s in envelope_signers(session, env.id)}
    rotate: List[Signer] = []

    for u in correction.update_signers:
        s = signers.get(u.signer_id)
        if not s:
            raise ValidationError(f"signer {u.signer_id} is not on this envelope")
        if s.status not in SignerStatus.AWAITING:
            raise InvalidStateError(f"signer {s.id} has already {s.status}")
        delta = {}
        if u.name and u.name != s.name:
            delta["name"] = {"from": s.name, "to": u.name}
            s.name = u.name
        if u.email and u.email != s.email:
            delta["email"] = {"from": s.email, "to": u.email}
            s.email = u.email
            if is_sent:
                rotate.append(s)
        if delta:
            session.add(s)
            changes.setdefault("updated_signers", {})[str(s.id)] = delta

    for sid in correction.remove_signer_ids:
        s = signers.get(sid)
        if not s:
            raise ValidationError(f"signer {sid} is not on this envelope")
        if s.status not in SignerStatus.AWAITING:
            raise InvalidStateError(f"signer {sid} has already {s.status}")
    remaining = len(signers) - len(set(correction.remove_signer_ids)) + len(correction.add_signers)
    if correction.remove_signer_ids and remaining < 1:
        raise ValidationError("the last signer cannot be removed")

    problems = []
    for idx, s in enumerate(correction.add_signers):
        problems.extend(_signer_problems(s, f"added signer {idx + 1}"))
    for idx, f in enumerate(correction.add_fields):
        problems.extend(_field_problems(f, f"added field {idx + 1}"))
    if problems:
        raise ValidationError("; ".join(problems), problems)

    next_order = max([s.order for s in signers.values()] or [0]) + 1
    added: Dict[str, Signer] = {}
    for idx, sc in enumerate(correction.add_signers):
        s = _new_signer(env.id, sc, next_order + idx, SignerStatus.PENDING if is_sent else SignerStatus.DRAFT)
        session.add(s)
        session.flush()
        added[sc.client_id or sc.email] = s
        if is_sent:
            tokens.mint(session, s)
    if added:
        changes["added_signers"] = [s.email for s in added.values()]

    for sid in set(correction.remove_signer_ids):
        s = signers.pop(sid)
        owned = session.exec(select(Field).where(Field.signer_id == sid)).all()
        for f in owned:
            session.delete(f)
        changes.setdefault("removed_signers", []).append(s.email)
        session.delete(s)

    new_fields = []
    for idx, fc in enumerate(correction.add_fields):
        owner = None
        if fc.signer_key:
            owner = added.get(fc.signer_key)
            if owner is None:
                raise ValidationError(f"added field {idx + 1}: unknown signer {fc.signer_key!r}")
        elif fc.signer_id is not None:
            owner = signers.get(fc.signer_id)
            if owner is None:
                raise ValidationError(f"added field {idx + 1}: signer {fc.signer_id} is not on this envelope")
            if owner.status not in SignerStatus.AWAITING:
                raise InvalidStateError(f"signer {owner.id} has already {owner.status}")
        field = _new_field(env.id, fc, owner.id if owner else None)
        session.add(field)
        new_fields.append(field)
    if new_fields:
        session.flush()
        changes["added_fields"] = [f.id for f in new_fields]

    for fid in correction.remove_field_ids:
        field = session.get(Field, fid)
        if not field or field.envelope_id != env.id:
            raise ValidationError(f"field {fid} is not on this envelope")
        if field.value is not None:
            raise InvalidStateError(f"field {fid} has already been filled")
        session.delete(field)
        changes.setdefault("removed_fields", []).append(fid)

    if not changes:
        raise ValidationError("correction contains no changes")
    session.flush()
    if is_sent:
        current = envelope_signers(session, env.id)
        missing = _missing_signature_fields(current, envelope_fields(session, env.id))
        if missing:
            names = ", ".join(f"{s.name} <{s.email}>" for s in missing)
            raise ValidationError(f"signers without a signature field: {names}")
    for s in rotate:
        tokens.mint(session, s)
        s.status = SignerStatus.PENDING
        session.add(s)

    audit.record(session, env.id, CorrectedData(changes=changes), ctx)
    session.commit()
    logger.info("envelope %s corrected: %s", env.id, sorted(changes))

    if is_sent:
        # rotated and added signers are pending again, and removals may unblock the queue
        _notify_newly_eligible(session, env)
    session.refresh(env)
    return env


def transfer_envelope(session: Session, envelope_id: int, new_owner: str, organization_id: Optional[int] = None, ctx: ActorContext = SYSTEM) -> Envelope:
    env = _locked(session, envelope_id, organization_id)
    if env.status not in EnvelopeStatus.VOIDABLE:
        raise InvalidStateError(f"cannot transfer envelope with status: {env.status}")
    new_owner = (new_owner or "").strip()
    if not new_owner:
        raise ValidationError("new owner is required")
    if new_owner == env.created_by:
        raise ValidationError("envelope already belongs to this owner")
    previous = env.created_by
    env.created_by = new_owner
    session.add(env)
    audit.record(session, env.id, TransferredData(from_owner=previous, to_owner=new_owner), ctx)
    session.commit()
    session.refresh(env)
    return env


def resend(
    session: Session,
    envelope_id: int,
    signer_id: int,
    organization_id: Optional[int] = None,
    ctx: ActorContext = SYSTEM,
    automatic: bool = False,
) -> Tuple[Signer, bool]:
    """Remind one signer, reusing their link unless it has lapsed."""
    env = _locked(session, envelope_id, organization_id)
    require_active(env)
    signers = envelope_signers(session, env.id)
    signer = next((s for s in signers if s.id == signer_id), None)
    if not signer:
        raise NotFound(f"signer {signer_id} not found")
    if signer.status not in SignerStatus.CAN_ACT:
        raise InvalidStateError(f"signer has already {signer.status}")
    if not can_sign(signer, env, signers):
        raise NotYourTurn("signer is waiting on earlier signers")
    token, rotated = tokens.ensure_token(session, signer)
    audit.record(session, env.id, RemindedData(
        channel=signer.notification_channel, recipient=signer.email, rotated=rotated, automatic=automatic,
    ), ctx, signer_id=signer.id)
    session.commit()
    notify_signers(session, env, [signer], reminder=True)
    session.refresh(signer)
    return signer, rotated


def request_sealing(session: Session, envelope_id: int, organization_id: Optional[int] = None) -> Envelope:
    env = _locked(session, envelope_id, organization_id)
    if env.status != EnvelopeStatus.IN_PROGRESS:
        raise InvalidStateError(f"envelope is {env.status}")
    if outstanding_signers(envelope_signers(session, env.id)):
        raise InvalidStateError("signers are still outstanding")
    env.sealing_requested_at = utcnow()
    session.add(env)
    session.commit()
    _dispatch_sealing(env.id)
    session.refresh(env)
    return env


# ---------- sweeps ----------

def expire_overdue(session: Session, now: Optional[datetime] = None) -> int:
    now = as_utc(now) or utcnow()
    due = session.exec(
        select(Envelope.id).where(
            Envelope.status.in_(list(EnvelopeStatus.ACTIVE)),
            Envelope.expires_at.is_not(None),
            Envelope.expires_at < now,
        )
    ).all()
    count = 0
    for envelope_id in due:
        try:
            env = _locked(session, envelope_id)
            if env.status not in EnvelopeStatus.ACTIVE:
                session.rollback()
                continue
            revoked = []
            for s in envelope_signers(session, env.id):
                if s.signing_token:
                    tokens.revoke(session, s)
                    revoked.append(s.id)
            env.status = EnvelopeStatus.EXPIRED
            session.add(env)
            audit.record(session, env.id, ExpiredData(
                expires_at=env.expires_at.isoformat() if env.expires_at else None,
                revoked_signer_ids=revoked,
            ))
            session.commit()
            count += 1
        except Exception:
            session.rollback()
            logger.exception("failed to expire envelope %s", envelope_id)
    if count:
        logger.info("expired %d envelope(s)", count)
    return count


def _last_reminded(session: Session, signer: Signer) -> Optional[datetime]:
    return session.exec(
        select(AuditEvent.created_at)
        .where(AuditEvent.signer_id == signer.id, AuditEvent.event_type == "reminded")
        .order_by(AuditEvent.id.desc())
    ).first()


def send_due_reminders(session: Session, now: Optional[datetime] = None) -> int:
    now = as_utc(now) or utcnow()
    cutoff = now - timedelta(hours=REMINDER_INTERVAL_HOURS)
    active = session.exec(select(Envelope).where(Envelope.status.in_(list(EnvelopeStatus.ACTIVE)))).all()
    due = []
    for env in active:
        for s in next_signers(env, envelope_signers(session, env.id)):
            last = _last_reminded(session, s) or env.sent_at
            if last is None or last < cutoff:
                due.append((env.id, s.id))
    count = 0
    for envelope_id, signer_id in due:
        try:
            resend(session, envelope_id, signer_id, automatic=True)
            count += 1
        except Exception:
            session.rollback()
            logger.exception("reminder for signer %s on envelope %s failed", signer_id, envelope_id)
    return count


def stalled_sealing(session: Session, now: Optional[datetime] = None) -> List[int]:
    now = as_utc(now) or utcnow()
    cutoff = now - timedelta(minutes=SEAL_STALL_MINUTES)
    return session.exec(
        select(Envelope.id).where(
            Envelope.status == EnvelopeStatus.IN_PROGRESS,
            Envelope.sealed_key.is_(None),
            Envelope.sealing_requested_at.is_not(None),
            Envelope.sealing_requested_at < cutoff,
        )
    ).all()
