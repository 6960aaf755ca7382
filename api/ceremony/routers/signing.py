import json
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Request, Response
from minio.error import S3Error
from sqlmodel import Session
from .. import delegation, lifecycle, storage, tokens
from ..audit import signer_actor
from ..db import get_session
from ..eligibility import can_sign
from ..errors import InvalidStateError, ValidationError
from ..models import EnvelopeStatus, SignerRole, SignerStatus
from ..schemas import CommentCreate, ConsentAccept, DeclineRequest, DelegateRequest, SignSubmit
from . import client_meta

router = APIRouter()


def _ctx(request: Request, signer_id: int):
    ip, ua, geo = client_meta(request)
    return signer_actor(signer_id, ip, ua, geo)


def _pdf(key: Optional[str], filename: str) -> Response:
    if not key:
        raise HTTPException(404, "not available yet")
    try:
        pdf_bytes = storage.get_bytes(key)
    except S3Error:
        raise HTTPException(404, "stored file missing")
    return Response(
        content=pdf_bytes,
        media_type="application/pdf",
        headers={"Content-Disposition": f'inline; filename="{filename}"'},
    )


def _field_view(f, signer_id: int) -> dict:
    return {
        "id": f.id,
        "document_id": f.document_id,
        "type": f.type,
        "page": f.page,
        "x": f.x,
        "y": f.y,
        "width": f.width,
        "height": f.height,
        "required": f.required,
        "label": f.label,
        "options": json.loads(f.options_json) if f.options_json else None,
        "value": f.value,
        "editable": f.signer_id == signer_id and f.filled_at is None,
    }


@router.get("/{token}")
def load_signing_session(token: str, session: Session = Depends(get_session)):
    tc = tokens.validate(session, token, allow_completed=True)
    env, signer = tc.envelope, tc.signer
    signers = lifecycle.envelope_signers(session, env.id)
    waiting_on = [
        s.name for s in signers
        if s.id != signer.id and s.role == SignerRole.SIGNER and s.status in SignerStatus.AWAITING
    ]
    return {
        "envelope": {
            "id": env.id,
            "subject": env.subject,
            "message": env.message,
            "status": env.status,
            "signing_order": env.signing_order,
            "requester_name": env.requester_name,
            "expires_at": env.expires_at,
        },
        "signer": {
            "id": signer.id,
            "name": signer.name,
            "email": signer.email,
            "role": signer.role,
            "status": signer.status,
            "consented": signer.consented_at is not None,
        },
        "can_sign": can_sign(signer, env, signers),
        "waiting_on": waiting_on,
        "documents": [
            {"id": d.id, "filename": d.filename, "page_count": d.page_count}
            for d in lifecycle.envelope_documents(session, env.id)
        ],
        "fields": [_field_view(f, signer.id) for f in lifecycle.envelope_fields(session, env.id)],
    }


@router.get("/{token}/document")
def view_document(
    token: str,
    request: Request,
    document_id: Optional[int] = None,
    session: Session = Depends(get_session),
):
    tc = tokens.validate(session, token, allow_completed=True)
    documents = lifecycle.envelope_documents(session, tc.envelope.id)
    doc = next((d for d in documents if document_id is None or d.id == document_id), None)
    if not doc:
        raise HTTPException(404, "document not found")
    if tc.signer.status in SignerStatus.CAN_ACT:
        lifecycle.record_view(session, token, _ctx(request, tc.signer.id), document_id=doc.id)
    return _pdf(doc.storage_key, doc.filename)


@router.post("/{token}/consent")
def give_consent(token: str, payload: ConsentAccept, request: Request, session: Session = Depends(get_session)):
    if not payload.accepted:
        raise ValidationError("consent to sign electronically is required")
    tc = tokens.validate(session, token)
    signer = lifecycle.record_consent(session, token, _ctx(request, tc.signer.id))
    return {"ok": True, "consented_at": signer.consented_at}


@router.post("/{token}/complete")
def complete_signing(token: str, payload: SignSubmit, request: Request, session: Session = Depends(get_session)):
    tc = tokens.validate(session, token)
    if tc.signer.consented_at is None:
        raise InvalidStateError("consent to sign electronically before signing")
    result = lifecycle.record_signature(session, token, payload.values, _ctx(request, tc.signer.id))
    return {
        "ok": True,
        "envelope_status": result.envelope.status,
        "signer_status": result.signer.status,
        "sealing_triggered": result.sealing_triggered,
    }


@router.post("/{token}/decline")
def decline_signing(token: str, payload: DeclineRequest, request: Request, session: Session = Depends(get_session)):
    tc = tokens.validate(session, token)
    env = lifecycle.decline(session, token, payload.reason, _ctx(request, tc.signer.id))
    return {"ok": True, "envelope_status": env.status}


@router.post("/{token}/delegate")
def delegate_signing(token: str, payload: DelegateRequest, request: Request, session: Session = Depends(get_session)):
    tc = tokens.validate(session, token)
    substitute = delegation.delegate(
        session, token, payload.delegate_name, payload.delegate_email, _ctx(request, tc.signer.id),
    )
    return {"ok": True, "delegate": {"id": substitute.id, "name": substitute.name, "email": substitute.email}}


@router.get("/{token}/comments")
def list_comments(token: str, session: Session = Depends(get_session)):
    tc = tokens.validate(session, token, allow_completed=True)
    return lifecycle.list_comments(session, tc.envelope.id)


@router.post("/{token}/comments")
def post_comment(token: str, payload: CommentCreate, request: Request, session: Session = Depends(get_session)):
    tc = tokens.validate(session, token)
    return lifecycle.add_comment(session, token, payload.body, payload.field_id, _ctx(request, tc.signer.id))


@router.get("/{token}/signed-document")
def download_signed(token: str, session: Session = Depends(get_session)):
    tc = tokens.validate(session, token, allow_completed=True)
    if tc.envelope.status != EnvelopeStatus.COMPLETED:
        raise InvalidStateError("the document is not sealed yet")
    return _pdf(tc.envelope.sealed_key, f"envelope-{tc.envelope.id}-signed.pdf")


@router.get("/{token}/certificate")
def download_certificate(token: str, session: Session = Depends(get_session)):
    tc = tokens.validate(session, token, allow_completed=True)
    if tc.envelope.status != EnvelopeStatus.COMPLETED:
        raise InvalidStateError("the certificate is issued once sealing finishes")
    return _pdf(tc.envelope.completion_cert_key, f"envelope-{tc.envelope.id}-certificate.pdf")
