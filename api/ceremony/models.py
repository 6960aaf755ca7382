from typing import Optional
from datetime import datetime
from sqlalchemy import DateTime, event
from sqlalchemy.types import TypeDecorator
from sqlmodel import SQLModel, Field as ORMField
from .utils import as_utc, utcnow


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC timestamps, also on backends that drop the offset (SQLite)."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return as_utc(value)

    def process_result_value(self, value, dialect):
        return as_utc(value)


class EnvelopeStatus:
    DRAFT = "draft"
    SENT = "sent"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    VOIDED = "voided"
    EXPIRED = "expired"

    ACTIVE = frozenset({SENT, IN_PROGRESS})
    VOIDABLE = frozenset({DRAFT, SENT, IN_PROGRESS})
    CORRECTABLE = frozenset({DRAFT, SENT})
    TERMINAL = frozenset({COMPLETED, VOIDED, EXPIRED})


class SignerStatus:
    DRAFT = "draft"
    PENDING = "pending"
    NOTIFIED = "notified"
    COMPLETED = "completed"
    DECLINED = "declined"
    DELEGATED = "delegated"

    # hasn't acted yet
    AWAITING = frozenset({DRAFT, PENDING, NOTIFIED})
    CAN_ACT = frozenset({PENDING, NOTIFIED})


class SignerRole:
    SIGNER = "signer"
    CC = "cc"
    APPROVER = "approver"
    WITNESS = "witness"

    ALL = frozenset({SIGNER, CC, APPROVER, WITNESS})


class SigningOrder:
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"

    ALL = frozenset({SEQUENTIAL, PARALLEL})


FIELD_TYPES = frozenset({
    "signature", "initial", "date", "text", "checkbox", "radio",
    "dropdown", "number", "currency", "calculated", "attachment",
})


class Organization(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    name: str
    access_token: Optional[str] = ORMField(default=None, index=True)
    created_at: datetime = ORMField(default_factory=utcnow, sa_type=UTCDateTime)


class Envelope(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    organization_id: int = ORMField(index=True)
    created_by: str = "system"
    subject: str = "Please sign"
    message: str = ""
    status: str = ORMField(default=EnvelopeStatus.DRAFT, index=True)
    signing_order: str = SigningOrder.SEQUENTIAL
    requester_name: Optional[str] = None
    requester_email: Optional[str] = None
    document_key: Optional[str] = None
    sealed_key: Optional[str] = None
    sealed_hash: Optional[str] = None
    completion_cert_key: Optional[str] = None
    created_at: datetime = ORMField(default_factory=utcnow, sa_type=UTCDateTime)
    sent_at: Optional[datetime] = ORMField(default=None, sa_type=UTCDateTime)
    completed_at: Optional[datetime] = ORMField(default=None, sa_type=UTCDateTime)
    expires_at: Optional[datetime] = ORMField(default=None, sa_type=UTCDateTime)
    voided_at: Optional[datetime] = ORMField(default=None, sa_type=UTCDateTime)
    void_reason: Optional[str] = None
    sealing_requested_at: Optional[datetime] = ORMField(default=None, sa_type=UTCDateTime)
    sealing_attempts: int = 0
    sealing_error: Optional[str] = None


class Signer(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    envelope_id: int = ORMField(index=True)
    name: str
    email: str
    role: str = SignerRole.SIGNER
    order: int = 1
    signing_group: Optional[int] = None
    status: str = SignerStatus.DRAFT
    signing_token: Optional[str] = ORMField(default=None, index=True)
    token_expires_at: Optional[datetime] = ORMField(default=None, sa_type=UTCDateTime)
    # plain id, never a foreign key: removing the original must not touch the delegate
    delegated_from: Optional[int] = None
    notification_channel: str = "email"
    phone: Optional[str] = None
    viewed_at: Optional[datetime] = ORMField(default=None, sa_type=UTCDateTime)
    consented_at: Optional[datetime] = ORMField(default=None, sa_type=UTCDateTime)
    signed_at: Optional[datetime] = ORMField(default=None, sa_type=UTCDateTime)
    declined_at: Optional[datetime] = ORMField(default=None, sa_type=UTCDateTime)
    decline_reason: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class Document(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    envelope_id: int = ORMField(index=True)
    filename: str
    content_type: str = "application/pdf"
    storage_key: str
    document_hash: str
    page_count: int = 1
    order: int = 0
    created_at: datetime = ORMField(default_factory=utcnow, sa_type=UTCDateTime)


class Field(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    envelope_id: int = ORMField(index=True)
    document_id: Optional[int] = None  # None means the envelope's primary document
    signer_id: Optional[int] = ORMField(default=None, index=True)
    type: str
    page: int = 1
    # percentages of the page, origin top-left
    x: float
    y: float
    width: float
    height: float
    required: bool = True
    label: Optional[str] = None
    options_json: Optional[str] = None
    value: Optional[str] = None
    filled_at: Optional[datetime] = ORMField(default=None, sa_type=UTCDateTime)


class AuditEvent(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    envelope_id: int = ORMField(index=True)
    signer_id: Optional[int] = None
    event_type: str
    event_data: str = "{}"
    actor: str  # system|signer:<id>|user:<id>
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    geolocation: Optional[str] = None
    created_at: datetime = ORMField(default_factory=utcnow, sa_type=UTCDateTime)
    prev_hash: Optional[str] = None
    hash: Optional[str] = None


class Comment(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    envelope_id: int = ORMField(index=True)
    signer_id: int
    field_id: Optional[int] = None
    body: str
    created_at: datetime = ORMField(default_factory=utcnow, sa_type=UTCDateTime)


class AuditLogImmutable(Exception):
    pass


@event.listens_for(AuditEvent, "before_update")
def _reject_audit_update(mapper, connection, target):
    raise AuditLogImmutable(f"audit event {target.id} cannot be modified")


@event.listens_for(AuditEvent, "before_delete")
def _reject_audit_delete(mapper, connection, target):
    raise AuditLogImmutable(f"audit event {target.id} cannot be deleted")
