import os
from io import BytesIO
from typing import Dict

import pytest
from fastapi.testclient import TestClient
from reportlab.lib.pagesizes import letter
from reportlab.pdfgen import canvas
from sqlmodel import SQLModel, Session, create_engine

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("ADMIN_ACCESS_TOKEN", "admin-test-token")

from ceremony.main import app  # noqa: E402
from ceremony import db as db_module  # noqa: E402
from ceremony import email as email_module  # noqa: E402
from ceremony import integrations, lifecycle, storage  # noqa: E402
from ceremony.audit import ActorContext  # noqa: E402
from ceremony.db import get_session  # noqa: E402
from ceremony.models import Organization  # noqa: E402
from ceremony.schemas import EnvelopeCreate, FieldCreate, SignerCreate  # noqa: E402

ORG_TOKEN = "org-test-token"
ADMIN_HEADERS = {"X-Access-Token": os.environ["ADMIN_ACCESS_TOKEN"]}
ORG_HEADERS = {"X-Access-Token": ORG_TOKEN}
SENDER = ActorContext(actor="user:test")
PNG_DATA_URL = (
    "data:image/png;base64,"
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
)


def make_pdf(pages: int = 2, title: str = "Agreement") -> bytes:
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=letter)
    for n in range(pages):
        c.drawString(72, 720, f"{title} page {n + 1}")
        c.showPage()
    c.save()
    return buf.getvalue()


def make_form_pdf(value: str = "") -> bytes:
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=letter)
    c.drawString(72, 720, "Form")
    c.acroForm.textfield(name="full_name", value=value, x=72, y=600, width=200, height=20)
    c.acroForm.checkbox(name="agree", x=72, y=560, size=14)
    c.showPage()
    c.save()
    return buf.getvalue()


@pytest.fixture(scope="session")
def test_engine(tmp_path_factory):
    db_path = tmp_path_factory.mktemp("data") / "test.db"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )
    return engine


@pytest.fixture
def setup_db(test_engine, monkeypatch):
    monkeypatch.setattr(db_module, "engine", test_engine)
    SQLModel.metadata.drop_all(test_engine)
    SQLModel.metadata.create_all(test_engine)
    yield
    SQLModel.metadata.drop_all(test_engine)


@pytest.fixture
def session(test_engine, setup_db):
    with Session(test_engine) as s:
        yield s


@pytest.fixture
def mock_storage(monkeypatch) -> Dict[str, bytes]:
    store: Dict[str, bytes] = {}

    def fake_put_bytes(key: str, data: bytes, content_type: str = "application/octet-stream"):
        store[key] = bytes(data)

    def fake_get_bytes(key: str) -> bytes:
        if key not in store:
            raise KeyError(key)
        return store[key]

    monkeypatch.setattr(storage, "put_bytes", fake_put_bytes)
    monkeypatch.setattr(storage, "get_bytes", fake_get_bytes)
    return store


@pytest.fixture
def sent_emails(monkeypatch):
    messages = []

    def fake_send_email(to, subject, body, html_body=None, attachments=None, sender_name=None, reply_to=None):
        messages.append(
            {
                "to": to,
                "subject": subject,
                "text": body,
                "html": html_body,
                "attachments": attachments or [],
            }
        )

    monkeypatch.setattr(email_module, "send_email", fake_send_email)
    return messages


@pytest.fixture
def sealing_queue(monkeypatch):
    queued = []
    monkeypatch.setattr(lifecycle, "enqueue_sealing", queued.append)
    return queued


@pytest.fixture
def emitted():
    events = []

    def listener(name, payload):
        events.append((name, payload))

    names = (
        integrations.ENVELOPE_SENT, integrations.SIGNER_COMPLETED, integrations.SIGNER_DECLINED,
        integrations.SIGNER_DELEGATED, integrations.ENVELOPE_VOIDED, integrations.ENVELOPE_COMPLETED,
    )
    for name in names:
        integrations.register(name, listener)
    yield events
    for name in names:
        integrations.unregister(name, listener)


@pytest.fixture
def org(session):
    organization = Organization(name="Acme Realty", access_token=ORG_TOKEN)
    session.add(organization)
    session.commit()
    session.refresh(organization)
    return organization


@pytest.fixture
def build_envelope(session, org, mock_storage, sent_emails, sealing_queue):
    """Create (and by default send) an envelope with one signature field per signer."""

    def _build(signers, signing_order="sequential", send=True, extra_fields=(), pages=2, **kwargs):
        signer_payloads = [SignerCreate(**s) for s in signers]
        fields = [
            FieldCreate(page=1, x=10, y=70 + idx, width=30, height=5, type="signature", signer_key=s.email)
            for idx, s in enumerate(signer_payloads)
            if s.role == "signer"
        ]
        fields.extend(FieldCreate(**f) for f in extra_fields)
        data = EnvelopeCreate(
            subject="Purchase agreement",
            signing_order=signing_order,
            requester_name="Riley Agent",
            requester_email="agent@example.com",
            signers=signer_payloads,
            fields=fields,
            **kwargs,
        )
        env = lifecycle.create_envelope(session, org.id, data, SENDER)
        lifecycle.add_document(session, env.id, org.id, "agreement.pdf", "application/pdf", make_pdf(pages), SENDER)
        if send:
            env = lifecycle.send_envelope(session, env.id, org.id, SENDER)
        return env

    return _build


def signer_ctx(signer) -> ActorContext:
    return ActorContext(actor=f"signer:{signer.id}", ip_address="203.0.113.7", user_agent="pytest")


def signature_values(session, signer) -> dict:
    fields = [f for f in lifecycle.envelope_fields(session, signer.envelope_id) if f.signer_id == signer.id]
    return {str(f.id): PNG_DATA_URL for f in fields if f.type == "signature"}


def sign(session, signer, values=None):
    return lifecycle.record_signature(
        session, signer.signing_token,
        values if values is not None else signature_values(session, signer),
        signer_ctx(signer),
    )


@pytest.fixture
def client(test_engine, setup_db, mock_storage, sent_emails, sealing_queue):
    def override_session():
        with Session(test_engine) as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
