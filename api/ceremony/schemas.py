from datetime import datetime
from pydantic import BaseModel, field_validator
from typing import Any, Dict, List, Optional
from .utils import as_utc

class SignerCreate(BaseModel):
    client_id: Optional[str] = None
    name: str
    email: str
    role: str = "signer"
    order: Optional[int] = None
    signing_group: Optional[int] = None
    notification_channel: str = "email"
    phone: Optional[str] = None

class FieldCreate(BaseModel):
    page: int = 1
    x: float
    y: float
    width: float
    height: float
    type: str
    required: bool = True
    label: Optional[str] = None
    options: Optional[List[str]] = None
    signer_key: Optional[str] = None  # client_id or email of a signer in the same payload
    signer_id: Optional[int] = None  # existing signer, used by corrections
    document_id: Optional[int] = None

class EnvelopeCreate(BaseModel):
    subject: str = "Please sign"
    message: str = ""
    signing_order: str = "sequential"
    expires_at: Optional[datetime] = None
    requester_name: Optional[str] = None
    requester_email: Optional[str] = None
    signers: List[SignerCreate]
    fields: List[FieldCreate] = []

    @field_validator("expires_at")
    @classmethod
    def expiry_in_utc(cls, v):
        return as_utc(v)

class EnvelopeVoid(BaseModel):
    reason: str

class SignerUpdate(BaseModel):
    signer_id: int
    name: Optional[str] = None
    email: Optional[str] = None

class EnvelopeCorrection(BaseModel):
    subject: Optional[str] = None
    message: Optional[str] = None
    expires_at: Optional[datetime] = None
    update_signers: List[SignerUpdate] = []
    add_signers: List[SignerCreate] = []
    remove_signer_ids: List[int] = []
    add_fields: List[FieldCreate] = []
    remove_field_ids: List[int] = []

    @field_validator("expires_at")
    @classmethod
    def expiry_in_utc(cls, v):
        return as_utc(v)

class EnvelopeTransfer(BaseModel):
    new_owner: str

class SignSubmit(BaseModel):
    values: Dict[str, Any]  # field_id -> value (text/date/checkbox/signature data URL)

class DeclineRequest(BaseModel):
    reason: Optional[str] = None

class DelegateRequest(BaseModel):
    delegate_name: str
    delegate_email: str

class ConsentAccept(BaseModel):
    accepted: bool

class CommentCreate(BaseModel):
    body: str
    field_id: Optional[int] = None
