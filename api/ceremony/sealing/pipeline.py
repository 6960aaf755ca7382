"""Field application and sealing.

Runs once per envelope after the last required signature, inside the worker.
Success moves the envelope to ``completed``. Any failure while building or
storing the artifacts leaves the envelope ``in_progress`` with every signer
still completed; the attempt is recorded on the envelope and ``SealingFailure``
is raised so the task can retry.
"""
import logging
from typing import List, Optional
from sqlmodel import Session, select
from .. import audit, integrations, notifications, storage
from ..audit_events import CompletedData
from ..db import lock_envelope
from ..eligibility import outstanding_signers
from ..errors import InvalidStateError, NotFound, SealingFailure
from ..models import Document, Envelope, EnvelopeStatus, Field, Signer
from ..utils import b64png_to_bytes, is_image_data_url, sha256_bytes, utcnow
from .certificate import render_certificate
from .stamping import IMAGE_TYPES, FilledField, apply_fields, concatenate, is_empty

logger = logging.getLogger(__name__)


def collect_filled_fields(fields: List[Field]) -> List[FilledField]:
    filled = []
    for f in fields:
        if is_empty(f.value):
            continue
        image = None
        if f.type in IMAGE_TYPES and is_image_data_url(f.value):
            image = b64png_to_bytes(f.value)
        filled.append(FilledField(
            field_id=f.id,
            document_id=f.document_id,
            type=f.type,
            page=f.page,
            x=f.x,
            y=f.y,
            width=f.width,
            height=f.height,
            value=None if image else f.value,
            signature_image=image,
            required=f.required,
        ))
    return sorted(filled, key=lambda f: f.page)


def sealed_key_for(envelope: Envelope) -> str:
    return f"envelopes/{envelope.id}/final/sealed.pdf"


def certificate_key_for(envelope: Envelope) -> str:
    return f"envelopes/{envelope.id}/final/certificate.pdf"


def _build_artifacts(session: Session, env: Envelope, signers: List[Signer], completed_at):
    documents = session.exec(
        select(Document).where(Document.envelope_id == env.id).order_by(Document.order, Document.id)
    ).all()
    if not documents:
        raise ValueError("envelope has no documents")
    fields = session.exec(select(Field).where(Field.envelope_id == env.id)).all()
    filled = collect_filled_fields(fields)
    primary_id = documents[0].id
    stamped = []
    for doc in documents:
        original = storage.get_bytes(doc.storage_key)
        if sha256_bytes(original) != doc.document_hash:
            raise ValueError(f"document {doc.id} no longer matches its upload hash")
        own = [f for f in filled if (f.document_id or primary_id) == doc.id]
        stamped.append(apply_fields(original, own))
    sealed = concatenate(stamped)
    sealed_hash = sha256_bytes(sealed)
    sealed_key = sealed_key_for(env)
    storage.put_bytes(sealed_key, sealed, content_type="application/pdf")

    events = audit.events_for_envelope(session, env.id)
    cert = render_certificate(
        env, documents, signers, events,
        sealed_hash=sealed_hash,
        chain_ok=audit.verify_chain(events),
        completed_at=completed_at,
    )
    cert_key = certificate_key_for(env)
    storage.put_bytes(cert_key, cert, content_type="application/pdf")
    return sealed, sealed_hash, sealed_key, cert_key


def _record_failure(session: Session, envelope_id: int, exc: Exception):
    env = session.get(Envelope, envelope_id)
    if not env:
        return
    env.sealing_attempts = (env.sealing_attempts or 0) + 1
    env.sealing_error = f"{type(exc).__name__}: {exc}"[:500]
    session.add(env)
    session.commit()


def seal_envelope(session: Session, envelope_id: int) -> Optional[Envelope]:
    env = lock_envelope(session, envelope_id)
    if not env:
        raise NotFound(f"envelope {envelope_id} not found")
    if env.status == EnvelopeStatus.COMPLETED or env.sealed_key:
        logger.info("envelope %s already sealed", env.id)
        return env
    if env.status != EnvelopeStatus.IN_PROGRESS:
        logger.info("envelope %s is %s; sealing skipped", env.id, env.status)
        return env
    signers = session.exec(select(Signer).where(Signer.envelope_id == env.id).order_by(Signer.order, Signer.id)).all()
    if outstanding_signers(signers):
        raise InvalidStateError(f"envelope {env.id} still has signers outstanding")

    completed_at = utcnow()
    try:
        sealed, sealed_hash, sealed_key, cert_key = _build_artifacts(session, env, signers, completed_at)
    except Exception as exc:
        session.rollback()
        logger.error("sealing envelope %s failed: %s", envelope_id, exc)
        _record_failure(session, envelope_id, exc)
        raise SealingFailure(f"sealing envelope {envelope_id} failed: {exc}") from exc

    env.sealed_key = sealed_key
    env.sealed_hash = sealed_hash
    env.completion_cert_key = cert_key
    env.status = EnvelopeStatus.COMPLETED
    env.completed_at = completed_at
    env.sealing_attempts = (env.sealing_attempts or 0) + 1
    env.sealing_error = None
    session.add(env)
    audit.record(session, env.id, CompletedData(
        sealed_key=sealed_key, sealed_hash=sealed_hash, completion_cert_key=cert_key,
    ))
    session.commit()
    session.refresh(env)
    logger.info("envelope %s sealed (%s)", env.id, sealed_hash)

    integrations.emit(integrations.ENVELOPE_COMPLETED, {
        **integrations.envelope_payload(env), "sealed_hash": sealed_hash,
    })
    notifications.notify_completed(env, signers, sealed, sealed_hash)
    return env
