from typing import Optional
from fastapi import APIRouter, Depends, File, HTTPException, Query, Request, Response, UploadFile
from minio.error import S3Error
from sqlmodel import Session, select
from .. import audit, lifecycle, storage, tokens
from ..audit import ActorContext
from ..audit_events import EVENT_DESCRIPTIONS, format_event_type, parse_event_data
from ..auth import AccessContext, resolve_access_context, scope_for
from ..db import get_session
from ..errors import InvalidStateError, ValidationError
from ..models import Envelope, EnvelopeStatus
from ..schemas import EnvelopeCorrection, EnvelopeCreate, EnvelopeTransfer, EnvelopeVoid
from . import client_meta

router = APIRouter()


def _actor(request: Request, access: AccessContext) -> ActorContext:
    ip, ua, geo = client_meta(request)
    return ActorContext(actor=access.actor, ip_address=ip, user_agent=ua, geolocation=geo)


def signer_view(s) -> dict:
    return {
        "id": s.id,
        "name": s.name,
        "email": s.email,
        "role": s.role,
        "order": s.order,
        "signing_group": s.signing_group,
        "status": s.status,
        "delegated_from": s.delegated_from,
        "notification_channel": s.notification_channel,
        "viewed_at": s.viewed_at,
        "consented_at": s.consented_at,
        "signed_at": s.signed_at,
        "declined_at": s.declined_at,
        "decline_reason": s.decline_reason,
    }


def envelope_view(session: Session, env: Envelope) -> dict:
    data = env.model_dump()
    data["signers"] = [signer_view(s) for s in lifecycle.envelope_signers(session, env.id)]
    data["fields"] = [f.model_dump() for f in lifecycle.envelope_fields(session, env.id)]
    data["documents"] = [d.model_dump() for d in lifecycle.envelope_documents(session, env.id)]
    return data


def _pdf_response(key: Optional[str], filename: str) -> Response:
    if not key:
        raise HTTPException(404, "not available yet")
    try:
        pdf_bytes = storage.get_bytes(key)
    except S3Error:
        raise HTTPException(404, "stored file missing for this envelope")
    return Response(
        content=pdf_bytes,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post("")
def create_envelope(
    data: EnvelopeCreate,
    request: Request,
    organization_id: Optional[int] = Query(default=None),
    session: Session = Depends(get_session),
    access: AccessContext = Depends(resolve_access_context),
):
    org_id = scope_for(access) or organization_id
    if org_id is None:
        raise ValidationError("organization_id is required for admin requests")
    env = lifecycle.create_envelope(session, org_id, data, _actor(request, access))
    return envelope_view(session, env)


@router.get("")
def list_envelopes(
    status: Optional[str] = None,
    session: Session = Depends(get_session),
    access: AccessContext = Depends(resolve_access_context),
):
    stmt = select(Envelope).order_by(Envelope.created_at.desc())
    scope = scope_for(access)
    if scope is not None:
        stmt = stmt.where(Envelope.organization_id == scope)
    if status:
        stmt = stmt.where(Envelope.status == status)
    return session.exec(stmt).all()


@router.get("/{envelope_id}")
def get_envelope(
    envelope_id: int,
    session: Session = Depends(get_session),
    access: AccessContext = Depends(resolve_access_context),
):
    env = lifecycle.get_envelope(session, envelope_id, scope_for(access))
    return envelope_view(session, env)


@router.post("/{envelope_id}/documents")
async def upload_document(
    envelope_id: int,
    request: Request,
    file: UploadFile = File(...),
    session: Session = Depends(get_session),
    access: AccessContext = Depends(resolve_access_context),
):
    data = await file.read()
    return lifecycle.add_document(
        session, envelope_id, scope_for(access),
        filename=file.filename or "document.pdf",
        content_type=file.content_type or "application/pdf",
        data=data,
        ctx=_actor(request, access),
    )


@router.post("/{envelope_id}/send")
def send_envelope(
    envelope_id: int,
    request: Request,
    session: Session = Depends(get_session),
    access: AccessContext = Depends(resolve_access_context),
):
    env = lifecycle.send_envelope(session, envelope_id, scope_for(access), _actor(request, access))
    return envelope_view(session, env)


@router.post("/{envelope_id}/void")
def void_envelope(
    envelope_id: int,
    payload: EnvelopeVoid,
    request: Request,
    session: Session = Depends(get_session),
    access: AccessContext = Depends(resolve_access_context),
):
    env = lifecycle.void_envelope(session, envelope_id, payload.reason, scope_for(access), _actor(request, access))
    return {"id": env.id, "status": env.status, "void_reason": env.void_reason}


@router.patch("/{envelope_id}/correct")
def correct_envelope(
    envelope_id: int,
    payload: EnvelopeCorrection,
    request: Request,
    session: Session = Depends(get_session),
    access: AccessContext = Depends(resolve_access_context),
):
    env = lifecycle.correct_envelope(session, envelope_id, payload, scope_for(access), _actor(request, access))
    return envelope_view(session, env)


@router.put("/{envelope_id}/transfer")
def transfer_envelope(
    envelope_id: int,
    payload: EnvelopeTransfer,
    request: Request,
    session: Session = Depends(get_session),
    access: AccessContext = Depends(resolve_access_context),
):
    env = lifecycle.transfer_envelope(session, envelope_id, payload.new_owner, scope_for(access), _actor(request, access))
    return {"id": env.id, "created_by": env.created_by}


@router.post("/{envelope_id}/signers/{signer_id}/resend")
def resend_to_signer(
    envelope_id: int,
    signer_id: int,
    request: Request,
    session: Session = Depends(get_session),
    access: AccessContext = Depends(resolve_access_context),
):
    signer, rotated = lifecycle.resend(session, envelope_id, signer_id, scope_for(access), _actor(request, access))
    return {"signer_id": signer.id, "status": signer.status, "rotated": rotated}


@router.post("/{envelope_id}/seal")
def request_sealing(
    envelope_id: int,
    session: Session = Depends(get_session),
    access: AccessContext = Depends(resolve_access_context),
):
    env = lifecycle.request_sealing(session, envelope_id, scope_for(access))
    return {"id": env.id, "status": env.status, "sealing_requested_at": env.sealing_requested_at}


@router.get("/{envelope_id}/audit")
def audit_trail(
    envelope_id: int,
    session: Session = Depends(get_session),
    access: AccessContext = Depends(resolve_access_context),
):
    env = lifecycle.get_envelope(session, envelope_id, scope_for(access))
    events = audit.events_for_envelope(session, env.id)
    return {
        "envelope_id": env.id,
        "chain_valid": audit.verify_chain(events),
        "events": [
            {
                "id": ev.id,
                "event_type": ev.event_type,
                "label": format_event_type(ev.event_type),
                "description": EVENT_DESCRIPTIONS.get(ev.event_type, ev.event_type),
                "data": parse_event_data(ev.event_data).model_dump(),
                "signer_id": ev.signer_id,
                "actor": ev.actor,
                "ip_address": ev.ip_address,
                "user_agent": ev.user_agent,
                "geolocation": ev.geolocation,
                "created_at": ev.created_at,
                "hash": ev.hash,
            }
            for ev in events
        ],
    }


@router.get("/{envelope_id}/sealed-pdf")
def download_sealed(
    envelope_id: int,
    session: Session = Depends(get_session),
    access: AccessContext = Depends(resolve_access_context),
):
    env = lifecycle.get_envelope(session, envelope_id, scope_for(access))
    return _pdf_response(env.sealed_key, f"envelope-{env.id}-sealed.pdf")


@router.get("/{envelope_id}/certificate")
def download_certificate(
    envelope_id: int,
    session: Session = Depends(get_session),
    access: AccessContext = Depends(resolve_access_context),
):
    env = lifecycle.get_envelope(session, envelope_id, scope_for(access))
    return _pdf_response(env.completion_cert_key, f"envelope-{env.id}-certificate.pdf")


@router.get("/{envelope_id}/signing-links")
def signing_links(
    envelope_id: int,
    session: Session = Depends(get_session),
    access: AccessContext = Depends(resolve_access_context),
):
    """Live links for in-person signing or manual delivery."""
    env = lifecycle.get_envelope(session, envelope_id, scope_for(access))
    if env.status == EnvelopeStatus.DRAFT:
        raise InvalidStateError("links exist only after the envelope is sent")
    return [
        {
            "signer_id": s.id,
            "name": s.name,
            "email": s.email,
            "status": s.status,
            "url": tokens.signing_url(s.signing_token) if s.signing_token else None,
            "expires_at": s.token_expires_at,
        }
        for s in lifecycle.envelope_signers(session, env.id)
    ]
