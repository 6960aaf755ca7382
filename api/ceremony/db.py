from sqlmodel import SQLModel, create_engine, Session, select
from .config import DATABASE_URL
from .models import Envelope

_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(DATABASE_URL, echo=False, pool_pre_ping=True, connect_args=_connect_args)

def init_db():
    from .models import Organization, Envelope, Signer, Document, Field, AuditEvent, Comment  # noqa: F401
    SQLModel.metadata.create_all(engine)

def get_session():
    with Session(engine) as session:
        yield session

def lock_envelope(session: Session, envelope_id: int, organization_id: int | None = None):
    """Load the envelope row with a row lock held until the session commits.

    Every mutation touching an envelope's signers or fields goes through here, so
    the envelope row is the serialization point for one ceremony. Dialects without
    row locks (SQLite) ignore FOR UPDATE and rely on their database-level lock.
    """
    stmt = (
        select(Envelope)
        .where(Envelope.id == envelope_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    if organization_id is not None:
        stmt = stmt.where(Envelope.organization_id == organization_id)
    return session.exec(stmt).first()
