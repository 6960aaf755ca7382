"""Typed audit event payloads.

Every event type has its own payload schema; ``event_type`` is the tag. New
kinds of history get a new class and a new tag, existing tags are never
repurposed.
"""
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from pydantic import BaseModel, Field, TypeAdapter


class CreatedData(BaseModel):
    event_type: Literal["created"] = "created"
    subject: str
    signer_count: int
    signing_order: str


class SentData(BaseModel):
    event_type: Literal["sent"] = "sent"
    signer_count: int
    notified_signer_ids: List[int] = []


class DocumentAddedData(BaseModel):
    event_type: Literal["document_added"] = "document_added"
    document_id: int
    filename: str
    document_hash: str


class ViewedData(BaseModel):
    event_type: Literal["viewed"] = "viewed"
    document_id: Optional[int] = None


class ConsentGivenData(BaseModel):
    event_type: Literal["consent_given"] = "consent_given"
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class SignedData(BaseModel):
    event_type: Literal["signed"] = "signed"
    field_ids: List[int]
    field_count: int


class DeclinedData(BaseModel):
    event_type: Literal["declined"] = "declined"
    reason: str


class DelegatedData(BaseModel):
    event_type: Literal["delegated"] = "delegated"
    from_signer_id: int
    from_name: str
    from_email: str
    to_signer_id: int
    to_name: str
    to_email: str
    reassigned_field_ids: List[int] = []


class RemindedData(BaseModel):
    event_type: Literal["reminded"] = "reminded"
    channel: str = "email"
    recipient: str
    rotated: bool = False
    automatic: bool = False


class CorrectedData(BaseModel):
    event_type: Literal["corrected"] = "corrected"
    changes: Dict[str, Any]


class TransferredData(BaseModel):
    event_type: Literal["transferred"] = "transferred"
    from_owner: str
    to_owner: str


class VoidedData(BaseModel):
    event_type: Literal["voided"] = "voided"
    reason: str
    revoked_signer_ids: List[int] = []


class CompletedData(BaseModel):
    event_type: Literal["completed"] = "completed"
    sealed_key: str
    sealed_hash: str
    completion_cert_key: str


class CommentedData(BaseModel):
    event_type: Literal["commented"] = "commented"
    comment_id: int
    field_id: Optional[int] = None


class ExpiredData(BaseModel):
    event_type: Literal["expired"] = "expired"
    expires_at: Optional[str] = None
    revoked_signer_ids: List[int] = []


EventData = Annotated[
    Union[
        CreatedData,
        SentData,
        DocumentAddedData,
        ViewedData,
        ConsentGivenData,
        SignedData,
        DeclinedData,
        DelegatedData,
        RemindedData,
        CorrectedData,
        TransferredData,
        VoidedData,
        CompletedData,
        CommentedData,
        ExpiredData,
    ],
    Field(discriminator="event_type"),
]

event_data_adapter = TypeAdapter(EventData)

EVENT_DESCRIPTIONS = {
    "created": "Envelope was created",
    "sent": "Envelope was sent to signers",
    "document_added": "Document was attached to the envelope",
    "viewed": "Signer viewed the document",
    "consent_given": "Signer consented to sign electronically",
    "signed": "Signer completed signing",
    "declined": "Signer declined to sign",
    "delegated": "Signer delegated signing to another person",
    "reminded": "Reminder sent to signer",
    "corrected": "Envelope was corrected",
    "transferred": "Envelope ownership was transferred",
    "voided": "Envelope was voided",
    "completed": "Document was sealed and the envelope completed",
    "commented": "Signer left a comment",
    "expired": "Envelope expired without completion",
}


def parse_event_data(raw: str) -> BaseModel:
    return event_data_adapter.validate_json(raw)


def format_event_type(event_type: str) -> str:
    # 'consent_given' -> 'Consent Given'
    return " ".join(word.capitalize() for word in event_type.split("_"))
